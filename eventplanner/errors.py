"""Error taxonomy for the discovery-to-registration pipeline."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    CANDIDATE_REJECTED = "CANDIDATE_REJECTED"
    COLLABORATOR_UNAVAILABLE = "COLLABORATOR_UNAVAILABLE"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    PAYMENT_VIOLATION = "PAYMENT_VIOLATION"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    NOTIFICATION_NOT_FOUND = "NOTIFICATION_NOT_FOUND"
    CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
    RUN_IN_PROGRESS = "RUN_IN_PROGRESS"
    AUTOMATION_FAILED = "AUTOMATION_FAILED"


class EventPlannerError(Exception):
    """Base error with a machine-readable code and a message safe to show a human."""

    code: ErrorCode = ErrorCode.COLLABORATOR_UNAVAILABLE
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# --- Data errors ---

class CandidateRejectedError(EventPlannerError):
    """A raw candidate could not be mapped or fingerprinted. Dropped, never retried."""
    code = ErrorCode.CANDIDATE_REJECTED

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.source = source


# --- Advisory collaborator failures (fail open / fail neutral) ---

class CollaboratorUnavailableError(EventPlannerError):
    code = ErrorCode.COLLABORATOR_UNAVAILABLE


class WeatherUnavailableError(CollaboratorUnavailableError):
    pass


class ClassifierUnavailableError(CollaboratorUnavailableError):
    pass


class CalendarUnavailableError(CollaboratorUnavailableError):
    pass


class PreferenceModelUnavailableError(CollaboratorUnavailableError):
    pass


# --- Transient infrastructure failures ---

class TransientCollaboratorError(EventPlannerError):
    """Network timeout, 5xx or rate limit. Retried with backoff at the call site."""
    code = ErrorCode.TRANSIENT_FAILURE
    retryable = True


class AutomationError(EventPlannerError):
    """Ordinary registration automation failure (missing form, submit failed)."""
    code = ErrorCode.AUTOMATION_FAILED


class TransientAutomationError(AutomationError):
    retryable = True


# --- Safety ---

class PaymentViolationError(EventPlannerError):
    """
    Payment signal detected or automation attempted on a paid event.
    Never retryable; always aborts the registration attempt.
    """
    code = ErrorCode.PAYMENT_VIOLATION
    retryable = False

    def __init__(self, message: str, violation=None, attempt=None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.violation = violation
        self.attempt = attempt


class EmergencyStopError(EventPlannerError):
    """Automation is halted process-wide until an operator clears the stop flag."""
    code = ErrorCode.EMERGENCY_STOP


# --- State ---

class IllegalTransitionError(EventPlannerError):
    code = ErrorCode.ILLEGAL_TRANSITION

    def __init__(self, entity_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Illegal status transition {from_status} -> {to_status} for {entity_id}",
            {"entity_id": entity_id, "from": from_status, "to": to_status},
        )
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status


class NotificationNotFoundError(EventPlannerError):
    code = ErrorCode.NOTIFICATION_NOT_FOUND

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


class CredentialsMissingError(EventPlannerError):
    code = ErrorCode.CREDENTIALS_MISSING


class DiscoveryRunInProgressError(EventPlannerError):
    code = ErrorCode.RUN_IN_PROGRESS
