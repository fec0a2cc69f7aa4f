"""
Lab result aggregation and alert delivery.
Classifies Observation resources against their reference ranges, groups them by
patient and sends one plain-text summary per patient to a notifier.
"""

import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from email.mime.text import MIMEText
from numbers import Real
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PATIENT_REFERENCE_PREFIX = "Patient/"
UNKNOWN_PATIENT = "Unknown Patient"
UNKNOWN_TEST = "Unknown Test"
RANGE_NOT_AVAILABLE = "not available"
ABNORMAL_MARKER = "! ABNORMAL"


@dataclass(frozen=True)
class LabResult:
    test_name: str
    value: float
    unit: str
    reference_range: str
    abnormal: bool


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


@dataclass(frozen=True)
class DispatchOutcome:
    patient_id: str
    recipient: str
    subject: str
    delivered: bool
    error: Optional[str] = None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _test_name(observation: Dict[str, Any]) -> str:
    code_info = _as_dict(observation.get("code"))
    if code_info.get("text"):
        return code_info["text"]
    for coding in _as_list(code_info.get("coding")):
        if isinstance(coding, dict) and coding.get("display"):
            return coding["display"]
    return UNKNOWN_TEST


def _bound(range_info: Dict[str, Any], side: str) -> Optional[float]:
    value = _as_dict(range_info.get(side)).get("value")
    if isinstance(value, Real) and not isinstance(value, bool):
        return value
    return None


def _reference_text(range_info: Dict[str, Any], low: Optional[float], high: Optional[float]) -> str:
    if low is not None and high is not None:
        return f"{low} - {high}"
    if range_info.get("text"):
        return range_info["text"]
    if low is not None:
        return f">= {low}"
    if high is not None:
        return f"<= {high}"
    return RANGE_NOT_AVAILABLE


def patient_id_from_reference(reference: Optional[str]) -> Optional[str]:
    """'Patient/123' -> '123'; None for anything that is not a Patient reference."""
    if not isinstance(reference, str) or not reference.startswith(PATIENT_REFERENCE_PREFIX):
        return None
    return reference[len(PATIENT_REFERENCE_PREFIX):] or None


def classify(observation: Dict[str, Any]) -> Optional[LabResult]:
    """
    Turn an Observation into a LabResult, or None when it cannot be classified.

    Observations without subject.reference or a numeric valueQuantity.value are
    skipped. A missing reference range is tolerated: the result is not abnormal and
    its range text is "not available". Bounds are inclusive; a missing bound is never
    violated.
    """
    if not _as_dict(observation.get("subject")).get("reference"):
        return None

    quantity = _as_dict(observation.get("valueQuantity"))
    if not quantity:
        return None
    value = quantity.get("value")
    if not isinstance(value, Real) or isinstance(value, bool):
        return None

    ranges = _as_list(observation.get("referenceRange"))
    range_info = _as_dict(ranges[0]) if ranges else {}
    low = _bound(range_info, "low")
    high = _bound(range_info, "high")

    abnormal = (low is not None and value < low) or (high is not None and value > high)

    return LabResult(
        test_name=_test_name(observation),
        value=value,
        unit=quantity.get("unit") or "",
        reference_range=_reference_text(range_info, low, high),
        abnormal=abnormal
    )


def aggregate(resources: Iterable[Dict[str, Any]]) -> Dict[str, List[LabResult]]:
    """Group classified Observations by patient id, keeping observation order."""
    report: Dict[str, List[LabResult]] = {}
    skipped = 0

    for resource in resources:
        if resource.get("resourceType") != "Observation":
            continue
        patient_id = patient_id_from_reference(_as_dict(resource.get("subject")).get("reference"))
        result = classify(resource) if patient_id else None
        if result is None:
            skipped += 1
            continue
        report.setdefault(patient_id, []).append(result)

    if skipped:
        logger.info(f"Skipped {skipped} observations without a patient subject or numeric value")
    return report


def build_directory(resources: Iterable[Dict[str, Any]]) -> Dict[str, str]:
    """Map patient id to "given... family" from the first name entry of each Patient."""
    directory: Dict[str, str] = {}

    for resource in resources:
        if resource.get("resourceType") != "Patient" or not resource.get("id"):
            continue
        names = _as_list(resource.get("name"))
        if not names or not isinstance(names[0], dict):
            continue

        name_parts = names[0]
        parts = list(_as_list(name_parts.get("given")))
        if name_parts.get("family"):
            parts.append(name_parts["family"])
        full_name = " ".join(part for part in parts if isinstance(part, str) and part)
        if full_name:
            directory[resource["id"]] = full_name

    return directory


def format_result_line(result: LabResult) -> str:
    value = f"{result.value} {result.unit}".strip()
    line = f"{result.test_name}: {value} (Ref: {result.reference_range})"
    if result.abnormal:
        line = f"{line} {ABNORMAL_MARKER}"
    return line


def build_notification(patient_id: str, patient_name: str, results: List[LabResult],
                       recipient: str) -> Notification:
    lines = [f"Lab results for {patient_name} ({patient_id})", ""]
    lines.extend(format_result_line(result) for result in results)
    return Notification(
        recipient=recipient,
        subject=f"Lab Results for {patient_name} {patient_id}",
        body="\n".join(lines)
    )


def _deliver(notifier, patient_id: str, notification: Notification) -> DispatchOutcome:
    try:
        notifier.send(notification)
    except Exception as e:
        # One patient's failed delivery must not stop the others
        logger.exception(f"Failed to send lab results for patient {patient_id}")
        return DispatchOutcome(patient_id, notification.recipient, notification.subject, False, str(e))

    logger.info(f"Lab results for patient {patient_id} sent to {notification.recipient}")
    return DispatchOutcome(patient_id, notification.recipient, notification.subject, True)


def dispatch(report: Dict[str, List[LabResult]], directory: Dict[str, str], notifier,
             recipient: str, max_workers: int = 1) -> List[DispatchOutcome]:
    """
    Send one summary per patient, in report order.

    Args:
        report: patient id -> lab results
        directory: patient id -> display name; missing ids use "Unknown Patient"
        notifier: object with send(Notification) that raises on failure
        recipient: address every summary goes to
        max_workers: parallel deliveries; 1 sends sequentially

    Returns:
        One outcome per patient, in report order. Failures are recorded, not raised.
    """
    notifications = [
        (patient_id, build_notification(patient_id, directory.get(patient_id, UNKNOWN_PATIENT), results, recipient))
        for patient_id, results in report.items()
    ]

    if max_workers <= 1 or len(notifications) <= 1:
        return [_deliver(notifier, patient_id, notification) for patient_id, notification in notifications]

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lab-alert") as executor:
        futures = [executor.submit(_deliver, notifier, patient_id, notification)
                   for patient_id, notification in notifications]
    return [future.result() for future in futures]


class EmailSender:
    """Handles sending lab result notifications via SMTP."""

    def __init__(self, smtp_host: str, smtp_port: int, smtp_user: str, smtp_password: str,
                 from_email: str, timeout: float = 30):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.timeout = timeout

    def send(self, notification: Notification):
        """Send a plain-text email. SMTP errors propagate to the caller."""
        msg = MIMEText(notification.body, "plain")
        msg["Subject"] = notification.subject
        msg["From"] = self.from_email
        msg["To"] = notification.recipient

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [notification.recipient], msg.as_string())

        logger.info(f"Email sent successfully to {notification.recipient}")
