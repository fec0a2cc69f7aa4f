"""
FHIR Bulk Data export: kickoff, status polling and NDJSON download.

The status URL returned by the kickoff request is polled until the server reports
completion (200) with a manifest of NDJSON files. Each file in the manifest is then
streamed and parsed line by line; files are fetched in parallel.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests

from fhir_auth import AccessToken
from lab_alert_errors import (
    ExportCancelled,
    ExportFailed,
    ExportTimeout,
    IngestError,
    KickoffError,
    ParseError,
)

logger = logging.getLogger(__name__)

EXPORT_RESOURCE_TYPES = "Patient,Observation"
DEFAULT_TYPE_FILTER = "Observation?category=laboratory"
NDJSON_FORMAT = "application/fhir+ndjson"


@dataclass(frozen=True)
class ManifestEntry:
    type: str
    url: str
    count: Optional[int] = None


@dataclass(frozen=True)
class ExportManifest:
    """Body of a completed export job."""
    output: List[ManifestEntry]
    error: List[ManifestEntry] = field(default_factory=list)
    transaction_time: Optional[str] = None
    request: Optional[str] = None
    requires_access_token: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportManifest":
        def entries(key: str) -> List[ManifestEntry]:
            return [
                ManifestEntry(type=item.get("type", ""), url=item["url"], count=item.get("count"))
                for item in data.get(key) or []
                if isinstance(item, dict) and item.get("url")
            ]

        return cls(
            output=entries("output"),
            error=entries("error"),
            transaction_time=data.get("transactionTime"),
            request=data.get("request"),
            requires_access_token=data.get("requiresAccessToken", True) is not False
        )


@dataclass(frozen=True)
class IngestedFile:
    url: str
    type: str
    resources: List[Dict[str, Any]]
    skipped_lines: List[int] = field(default_factory=list)


class BulkExportClient:
    """Runs one Group-level bulk export job against a FHIR server."""

    def __init__(self, session: requests.Session, fhir_base_url: str,
                 poll_interval: float = 5.0, max_polls: int = 720,
                 timeout_seconds: Optional[float] = None, max_workers: int = 4,
                 skip_malformed_lines: bool = False, request_timeout: float = 30,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 session_factory: Optional[Callable[[], requests.Session]] = None):
        """
        Args:
            session: HTTP session used for kickoff and polling, and for file
                downloads when no session_factory is given (it is then shared
                across download threads and must tolerate concurrent use)
            session_factory: builds a separate session for each downloaded file,
                closed once the file is consumed
            fhir_base_url: FHIR API base URL
            poll_interval: seconds to wait after each 202 from the status endpoint
            max_polls: status checks allowed before giving up with ExportTimeout
            timeout_seconds: optional wall-clock limit on polling
            max_workers: concurrent NDJSON downloads
            skip_malformed_lines: skip bad NDJSON lines instead of aborting with ParseError
            request_timeout: per-request timeout passed to requests
            sleep: wait function used between polls when no cancel event is given
            clock: monotonic clock used for the polling deadline
        """
        self.session = session
        self.fhir_base_url = fhir_base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self.skip_malformed_lines = skip_malformed_lines
        self.request_timeout = request_timeout
        self._sleep = sleep
        self._clock = clock
        self._session_factory = session_factory

    def kickoff(self, access_token: AccessToken, group_id: str,
                type_filter: str = DEFAULT_TYPE_FILTER) -> str:
        """
        Start a bulk export for a Group.

        Returns:
            The status URL from the Content-Location header.

        Raises:
            KickoffError: the server did not accept the job or sent no Content-Location
        """
        export_url = f"{self.fhir_base_url}/Group/{group_id}/$export"

        params = {
            "_outputFormat": NDJSON_FORMAT,
            "_type": EXPORT_RESOURCE_TYPES,
            "_typeFilter": type_filter
        }

        headers = {
            "Authorization": access_token.authorization,
            "Accept": "application/fhir+json",
            "Prefer": "respond-async"
        }

        logger.info(f"Starting bulk export for Group {group_id}...")
        try:
            response = self.session.get(export_url, headers=headers, params=params, timeout=self.request_timeout)
        except requests.exceptions.RequestException as e:
            raise KickoffError(f"Bulk export kickoff failed: {e}") from e

        if response.status_code != 202:
            logger.error(f"Failed to start bulk export: {response.status_code} - {response.text}")
            raise KickoffError(f"Bulk export kickoff returned {response.status_code}", status=response.status_code)

        status_url = response.headers.get("Content-Location")
        if not status_url:
            raise KickoffError("Bulk export accepted, but missing Content-Location header", status=202)

        status_url = urljoin(export_url, status_url)
        logger.info(f"Bulk export job started. Status URL: {status_url}")
        return status_url

    def await_completion(self, status_url: str, access_token: AccessToken,
                         cancel_event: Optional[threading.Event] = None) -> ExportManifest:
        """
        Poll the status URL until the job completes.

        202 means in progress: wait poll_interval and check again. 200 means complete:
        the body is the manifest. Any other status ends the job.

        Raises:
            ExportFailed: non-202/200 status, transport failure, or unreadable manifest
            ExportTimeout: max_polls or timeout_seconds exhausted
            ExportCancelled: cancel_event was set
        """
        headers = {
            "Authorization": access_token.authorization,
            "Accept": "application/json"
        }
        started = self._clock()

        for poll in range(1, self.max_polls + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise ExportCancelled(f"Bulk export polling cancelled after {poll - 1} polls")

            try:
                response = self.session.get(status_url, headers=headers, timeout=self.request_timeout)
            except requests.exceptions.RequestException as e:
                raise ExportFailed(None, str(e)) from e

            if response.status_code == 200:
                logger.info("Bulk export job status: Complete (200 OK)")
                return self._parse_manifest(response)

            if response.status_code != 202:
                logger.error(f"Bulk export status check failed: {response.status_code} - {response.text}")
                raise ExportFailed(response.status_code, response.text[:500])

            progress = response.headers.get("X-Progress")
            if progress:
                logger.info(f"Bulk export job status: In progress ({progress})")
            else:
                logger.info("Bulk export job status: In progress (202 Accepted)")

            elapsed = self._clock() - started
            if poll == self.max_polls or (self.timeout_seconds is not None and elapsed >= self.timeout_seconds):
                raise ExportTimeout(poll, elapsed)

            self._wait(cancel_event)

        # max_polls < 1: nothing was ever checked
        raise ExportTimeout(0, self._clock() - started)

    def _wait(self, cancel_event: Optional[threading.Event]):
        if cancel_event is None:
            self._sleep(self.poll_interval)
        elif cancel_event.wait(self.poll_interval):
            raise ExportCancelled("Bulk export polling cancelled")

    @staticmethod
    def _parse_manifest(response: requests.Response) -> ExportManifest:
        try:
            body = response.json()
        except ValueError as e:
            raise ExportFailed(200, "completion manifest is not JSON") from e
        if not isinstance(body, dict):
            raise ExportFailed(200, "completion manifest is not a JSON object")

        manifest = ExportManifest.from_dict(body)
        logger.info(f"Export manifest lists {len(manifest.output)} output files and {len(manifest.error)} error files")
        return manifest

    def ingest(self, manifest: ExportManifest, access_token: AccessToken) -> List[IngestedFile]:
        """
        Download and parse every output file in the manifest.

        Files are streamed concurrently; lines within a file are parsed in order.
        All downloads finish before this returns or raises. Results follow manifest
        order; on failure the error of the first failing file (manifest order) is raised.

        Raises:
            IngestError: a file could not be downloaded
            ParseError: a malformed line, unless skip_malformed_lines is set
        """
        for error_entry in manifest.error:
            logger.warning(f"Export reported errors for {error_entry.type or 'unknown type'}: {error_entry.url}")

        if not manifest.output:
            logger.info("Export manifest has no output files")
            return []

        headers = {"Accept": NDJSON_FORMAT}
        if manifest.requires_access_token:
            headers["Authorization"] = access_token.authorization

        workers = max(1, min(self.max_workers, len(manifest.output)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ndjson-ingest") as executor:
            futures = [executor.submit(self._ingest_file, entry, headers) for entry in manifest.output]

        return [future.result() for future in futures]

    def _ingest_file(self, entry: ManifestEntry, headers: Dict[str, str]) -> IngestedFile:
        if self._session_factory is None:
            return self._read_file(self.session, entry, headers)
        with self._session_factory() as session:
            return self._read_file(session, entry, headers)

    def _read_file(self, session: requests.Session, entry: ManifestEntry,
                   headers: Dict[str, str]) -> IngestedFile:
        logger.info(f"Downloading {entry.type} file from {entry.url}...")
        resources: List[Dict[str, Any]] = []
        skipped_lines: List[int] = []

        try:
            response = session.get(entry.url, headers=headers, stream=True, timeout=self.request_timeout)
        except requests.exceptions.RequestException as e:
            raise IngestError(entry.url, detail=str(e)) from e

        with response:
            if response.status_code != 200:
                raise IngestError(entry.url, status=response.status_code)

            try:
                # Split on LF only; a trailing CR is stripped by json.loads
                for line_number, line in enumerate(response.iter_lines(delimiter=b"\n"), start=1):
                    if not line.strip():
                        continue

                    try:
                        resource = json.loads(line)
                        detail = "" if isinstance(resource, dict) else "line is not a JSON object"
                    except ValueError as e:
                        resource, detail = None, str(e)

                    if detail:
                        if not self.skip_malformed_lines:
                            raise ParseError(entry.url, line_number, detail)
                        logger.warning(f"Skipping malformed line {line_number} in {entry.url}: {detail}")
                        skipped_lines.append(line_number)
                        continue

                    resources.append(resource)
            except requests.exceptions.RequestException as e:
                raise IngestError(entry.url, detail=str(e)) from e

        logger.info(f"Successfully processed {len(resources)} resources from {entry.type} file {entry.url}")
        return IngestedFile(url=entry.url, type=entry.type, resources=resources, skipped_lines=skipped_lines)
