"""
Error types raised by the lab alert pipeline.
Every error names the pipeline stage it came from so a failed run can be attributed.
"""

from typing import Optional


class LabAlertError(Exception):
    """Base class for all pipeline errors."""

    stage = "pipeline"


class ConfigError(LabAlertError):
    stage = "config"


class KeyLoadError(LabAlertError):
    """The key store is unreadable or holds no signing-capable key."""

    stage = "signing"


class SigningError(LabAlertError):
    stage = "signing"


class AuthError(LabAlertError):
    """The token endpoint refused the client assertion or returned no access token."""

    stage = "token"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class KickoffError(LabAlertError):
    stage = "kickoff"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ExportFailed(LabAlertError):
    """The status endpoint answered with something other than 202 or 200."""

    stage = "poll"

    def __init__(self, status: Optional[int], detail: str = ""):
        message = f"Bulk export failed with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status
        self.detail = detail


class ExportTimeout(LabAlertError):
    stage = "poll"

    def __init__(self, polls: int, elapsed: float):
        super().__init__(f"Bulk export still in progress after {polls} polls ({elapsed:.0f}s)")
        self.polls = polls
        self.elapsed = elapsed


class ExportCancelled(LabAlertError):
    stage = "poll"


class IngestError(LabAlertError):
    """An export file could not be downloaded."""

    stage = "ingest"

    def __init__(self, url: str, status: Optional[int] = None, detail: str = ""):
        message = f"Failed to download {url}"
        if status is not None:
            message = f"{message} (HTTP {status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(LabAlertError):
    """A line of an NDJSON file is not a JSON object."""

    stage = "ingest"

    def __init__(self, url: str, line_number: int, detail: str = ""):
        message = f"Malformed NDJSON at {url} line {line_number}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url
        self.line_number = line_number
