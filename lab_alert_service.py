"""
FHIR Lab Alert Service
Exports lab results for a patient Group through FHIR Bulk Data, flags results
outside their reference range and emails a summary per patient.
Runs on start-up and then every `schedule_hours` hours.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
import schedule

from bulk_export import DEFAULT_TYPE_FILTER, BulkExportClient, ExportManifest, IngestedFile
from fhir_auth import DEFAULT_ALGORITHM, AccessToken, AssertionSigner, TokenClient
from lab_alert_errors import ConfigError, LabAlertError
from lab_reports import DispatchOutcome, EmailSender, LabResult, aggregate, build_directory, dispatch

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _require(section: Dict[str, Any], key: str, section_name: str) -> Any:
    value = section.get(key)
    if value in (None, ""):
        raise ConfigError(f"Missing {section_name}.{key} in config")
    return value


@dataclass(frozen=True)
class FhirConfig:
    client_id: str
    private_key_path: str
    token_url: str
    fhir_base_url: str
    key_id: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM
    scope: Optional[str] = None

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "FhirConfig":
        return cls(
            client_id=_require(section, "client_id", "fhir"),
            private_key_path=_require(section, "private_key_path", "fhir"),
            token_url=_require(section, "token_url", "fhir"),
            fhir_base_url=_require(section, "fhir_base_url", "fhir"),
            key_id=section.get("key_id"),
            algorithm=section.get("algorithm", DEFAULT_ALGORITHM),
            scope=section.get("scope")
        )


@dataclass(frozen=True)
class EmailConfig:
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    from_email: str
    to_email: str

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "EmailConfig":
        return cls(
            smtp_host=_require(section, "smtp_host", "email"),
            smtp_port=int(_require(section, "smtp_port", "email")),
            smtp_user=_require(section, "smtp_user", "email"),
            smtp_password=_require(section, "smtp_password", "email"),
            from_email=_require(section, "from_email", "email"),
            to_email=_require(section, "to_email", "email")
        )


@dataclass(frozen=True)
class ExportConfig:
    group_id: str
    type_filter: str = DEFAULT_TYPE_FILTER
    poll_interval_seconds: float = 5.0
    max_polls: int = 720
    timeout_seconds: Optional[float] = None
    max_workers: int = 4
    skip_malformed_lines: bool = False

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "ExportConfig":
        timeout = section.get("timeout_seconds")
        skip_malformed_lines = section.get("skip_malformed_lines", False)
        if not isinstance(skip_malformed_lines, bool):
            raise ConfigError(f"export.skip_malformed_lines must be true or false, got {skip_malformed_lines!r}")
        return cls(
            group_id=_require(section, "group_id", "export"),
            type_filter=section.get("type_filter", DEFAULT_TYPE_FILTER),
            poll_interval_seconds=float(section.get("poll_interval_seconds", 5.0)),
            max_polls=int(section.get("max_polls", 720)),
            timeout_seconds=float(timeout) if timeout is not None else None,
            max_workers=int(section.get("max_workers", 4)),
            skip_malformed_lines=skip_malformed_lines
        )


@dataclass(frozen=True)
class LabAlertConfig:
    fhir: FhirConfig
    email: EmailConfig
    export: ExportConfig
    schedule_hours: float = 24
    log_file: Optional[str] = "lab_alerts.log"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> "LabAlertConfig":
        """Build the config; CLIENT_ID and TOKEN_ENDPOINT in `environ` override the file."""
        environ = os.environ if environ is None else environ
        fhir_section = dict(data.get("fhir") or {})
        if environ.get("CLIENT_ID"):
            fhir_section["client_id"] = environ["CLIENT_ID"]
        if environ.get("TOKEN_ENDPOINT"):
            fhir_section["token_url"] = environ["TOKEN_ENDPOINT"]

        return cls(
            fhir=FhirConfig.from_dict(fhir_section),
            email=EmailConfig.from_dict(data.get("email") or {}),
            export=ExportConfig.from_dict(data.get("export") or {}),
            schedule_hours=float(data.get("schedule_hours", 24)),
            log_file=data.get("log_file", "lab_alerts.log")
        )


def load_config(config_path: Optional[str] = None) -> LabAlertConfig:
    """Load configuration from a JSON file (LAB_ALERTS_CONFIG or config.json)."""
    config_path = config_path or os.environ.get("LAB_ALERTS_CONFIG", DEFAULT_CONFIG_PATH)
    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
    return LabAlertConfig.from_dict(data)


def configure_logging(log_file: Optional[str] = None, level: int = logging.INFO):
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


@dataclass
class PipelineResult:
    manifest: ExportManifest
    files: List[IngestedFile]
    report: Dict[str, List[LabResult]]
    directory: Dict[str, str]
    outcomes: List[DispatchOutcome] = field(default_factory=list)

    @property
    def failed_deliveries(self) -> List[DispatchOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.delivered]


class LabAlertPipeline:
    """Token -> kickoff -> poll -> ingest -> aggregate -> dispatch, one run at a time."""

    def __init__(self, config: LabAlertConfig, session: requests.Session, notifier,
                 signer: Optional[AssertionSigner] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 session_factory: Optional[Callable[[], requests.Session]] = None):
        self.config = config
        self.notifier = notifier
        self.signer = signer or AssertionSigner(
            config.fhir.private_key_path,
            key_id=config.fhir.key_id,
            algorithm=config.fhir.algorithm
        )
        self.token_client = TokenClient(
            session,
            client_id=config.fhir.client_id,
            token_url=config.fhir.token_url,
            scope=config.fhir.scope
        )
        self.export_client = BulkExportClient(
            session,
            config.fhir.fhir_base_url,
            poll_interval=config.export.poll_interval_seconds,
            max_polls=config.export.max_polls,
            timeout_seconds=config.export.timeout_seconds,
            max_workers=config.export.max_workers,
            skip_malformed_lines=config.export.skip_malformed_lines,
            sleep=sleep,
            session_factory=session_factory
        )

    def authenticate(self) -> AccessToken:
        return self.token_client.acquire_token(self.signer)

    def export(self, access_token: AccessToken,
               cancel_event: Optional[threading.Event] = None) -> ExportManifest:
        status_url = self.export_client.kickoff(
            access_token, self.config.export.group_id, self.config.export.type_filter
        )
        return self.export_client.await_completion(status_url, access_token, cancel_event)

    def ingest(self, manifest: ExportManifest, access_token: AccessToken) -> List[IngestedFile]:
        return self.export_client.ingest(manifest, access_token)

    @staticmethod
    def summarize(files: List[IngestedFile]):
        resources = [resource for ingested in files for resource in ingested.resources]
        return aggregate(resources), build_directory(resources)

    def notify(self, report: Dict[str, List[LabResult]], directory: Dict[str, str]) -> List[DispatchOutcome]:
        return dispatch(report, directory, self.notifier, self.config.email.to_email)

    def run(self, cancel_event: Optional[threading.Event] = None) -> PipelineResult:
        """
        Run every stage once. Stage errors (LabAlertError subclasses) propagate;
        per-patient delivery failures are reported in the result's outcomes.
        """
        logger.info("Starting lab alert run using Bulk Data Access...")
        access_token = self.authenticate()
        manifest = self.export(access_token, cancel_event)

        logger.info("Downloading and processing NDJSON files...")
        files = self.ingest(manifest, access_token)
        report, directory = self.summarize(files)
        logger.info(f"Found lab results for {len(report)} patients ({len(directory)} patients named)")

        outcomes = self.notify(report, directory)
        result = PipelineResult(manifest, files, report, directory, outcomes)
        if result.failed_deliveries:
            logger.warning(f"{len(result.failed_deliveries)} of {len(outcomes)} notifications failed")
        else:
            logger.info(f"Sent {len(outcomes)} lab result notifications")
        return result


def run_scheduled_job(pipeline: LabAlertPipeline) -> Optional[PipelineResult]:
    """Run the pipeline, logging a stage failure instead of raising so the scheduler keeps going."""
    logger.info("Running scheduled lab alert job...")
    try:
        result = pipeline.run()
    except LabAlertError as e:
        logger.error(f"Lab alert run aborted during {e.stage}: {e}")
        return None
    logger.info("Scheduled job completed")
    return result


def main():
    """Main entry point for the application."""
    try:
        config = load_config()
    except ConfigError as e:
        configure_logging()
        logger.error(f"{e}. Please create it from config.example.json")
        return

    configure_logging(config.log_file)
    logger.info("FHIR Lab Alert Service Starting...")
    logger.info(f"Using Group ID for Bulk Export: {config.export.group_id}")

    email_sender = EmailSender(
        config.email.smtp_host,
        config.email.smtp_port,
        config.email.smtp_user,
        config.email.smtp_password,
        config.email.from_email
    )
    pipeline = LabAlertPipeline(config, requests.Session(), email_sender, session_factory=requests.Session)

    logger.info("Running initial report...")
    run_scheduled_job(pipeline)

    if config.schedule_hours <= 0:
        return

    schedule.every(config.schedule_hours).hours.do(run_scheduled_job, pipeline=pipeline)
    logger.info(f"Scheduler started. Running every {config.schedule_hours} hours...")

    while True:
        schedule.run_pending()
        time.sleep(60)


if __name__ == "__main__":
    main()
