"""Error taxonomy shared by the server, the importer and the client."""

from typing import Optional


class StudentTrackerError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class AuthorizationDenied(StudentTrackerError):
    """Role is denied, or the target lies outside the caller's scope.

    Deliberately does not say whether a hidden record exists.
    """

    status_code = 403

    def __init__(self, message: str = "Access denied.", field: Optional[str] = None):
        super().__init__(message, field)


class ValidationFailed(StudentTrackerError):
    """A field is missing or out of range."""

    status_code = 422


class NotFound(StudentTrackerError):
    status_code = 404


class Conflict(StudentTrackerError):
    """Duplicate business key on create."""

    status_code = 409


class TransientUnavailable(StudentTrackerError):
    """Connectivity failure or timeout; safe to retry."""

    status_code = 503


class RateLimited(StudentTrackerError):
    """Explicit rate-limit signal, retryable after ``retry_after`` seconds."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded.", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


RETRYABLE_ERRORS = (TransientUnavailable, RateLimited)

STATUS_TO_ERROR = {
    403: AuthorizationDenied,
    404: NotFound,
    409: Conflict,
    422: ValidationFailed,
    400: ValidationFailed,
    503: TransientUnavailable,
}
