"""
Error taxonomy for enrolment commands.

Every failure a command can return is one of the classes below. Each carries
a machine-readable ``kind`` and the status code an API layer should map it to.
"""

from typing import Any


class EnrolmentError(Exception):
    """Base class for all enrolment command failures."""

    kind = "EnrolmentError"
    status_code = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured form returned to command callers."""
        payload = {
            "error": self.kind,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(EnrolmentError):
    """Registration id does not exist."""

    kind = "NotFound"
    status_code = 404


class PreconditionFailed(EnrolmentError):
    """
    Command issued against a record that is not in the required source status.

    Also raised when a concurrent actor won the conditional write. Callers
    must re-fetch the record before retrying.
    """

    kind = "PreconditionFailed"
    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        status_code: int | None = None,
        **details: Any,
    ):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status
        if status_code is not None:
            self.status_code = status_code


class ValidationError(EnrolmentError):
    """Malformed command payload."""

    kind = "ValidationError"
    status_code = 400


class ServiceUnavailable(EnrolmentError):
    """Quality or identification service unreachable, timed out or unusable."""

    kind = "ServiceUnavailable"
    status_code = 503
    retryable = True

    def __init__(self, service: str, message: str, **details: Any):
        super().__init__(f"{service}: {message}", service=service, **details)
        self.service = service


class DuplicateIdentityConflict(EnrolmentError):
    """Generated identity number collided with one already issued."""

    kind = "DuplicateIdentityConflict"
    status_code = 409
    retryable = True


class AuditUnavailable(EnrolmentError):
    """No queryable audit sink is configured."""

    kind = "AuditUnavailable"
    status_code = 501


class StoreConflict(Exception):
    """
    Raised by a record store when a conditional update loses.

    Internal to the store boundary; the state machine translates it into
    PreconditionFailed.
    """

    def __init__(self, registration_id: str, expected_status: str, actual_status: str | None,
                 expected_version: int | None = None, actual_version: int | None = None):
        self.registration_id = registration_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Conditional update on {registration_id} lost: expected status "
            f"{expected_status} (version {expected_version}), found "
            f"{actual_status} (version {actual_version})"
        )
