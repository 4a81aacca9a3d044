"""
Error taxonomy for the webinar sync engine.

Every error carries `operation` and `recoverable` like the rest of the
service's error classes. `describe_failure` turns whatever ended a job into
the message stored on the job row; it never includes tracebacks.
"""

from app.db.helpers import DatabaseError


class WebinarSyncError(Exception):
    """Base class for sync engine errors."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ConnectionInvalid(WebinarSyncError):
    """The connection does not exist, is inactive, or its credentials cannot be read."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"Connection {connection_id} is not usable: {reason}", "validate_connection")
        self.connection_id = connection_id
        self.reason = reason


class AlreadyRunning(WebinarSyncError):
    """Another job for the same connection is pending or running."""

    def __init__(self, job_id: str, age_minutes: float):
        super().__init__(
            f"Sync job {job_id} is already active ({age_minutes:.1f} minutes since last activity)",
            "create_job",
            recoverable=True,
        )
        self.job_id = job_id
        self.age_minutes = age_minutes


class JobNotFound(WebinarSyncError):
    def __init__(self, job_id: str):
        super().__init__(f"Sync job {job_id} not found", "load_job")
        self.job_id = job_id


class AuthInvalid(WebinarSyncError):
    """The provider rejected the bearer credential. Never retried."""

    def __init__(self, message: str = "Provider rejected the access token"):
        super().__init__(message, "provider_request")


class RateLimited(WebinarSyncError):
    def __init__(self, retry_after: float | None):
        super().__init__(
            f"Provider rate limit hit (retry after {retry_after}s)",
            "provider_request",
            recoverable=True,
        )
        self.retry_after = retry_after


class Transient(WebinarSyncError):
    def __init__(self, reason: str):
        super().__init__(f"Transient provider failure: {reason}", "provider_request", recoverable=True)
        self.reason = reason


class Fatal(WebinarSyncError):
    """Unrecoverable provider failure, including an exhausted retry budget."""

    def __init__(self, reason: str, retries_exhausted: bool = False):
        super().__init__(f"Provider request failed: {reason}", "provider_request")
        self.reason = reason
        self.retries_exhausted = retries_exhausted


class ResourceUnavailable(WebinarSyncError):
    """A child resource is not available for this webinar (e.g. no report yet)."""

    def __init__(self, path: str, status_code: int, reason: str = ""):
        super().__init__(
            f"Resource {path} unavailable (HTTP {status_code}) {reason}".strip(),
            "provider_request",
            recoverable=True,
        )
        self.path = path
        self.status_code = status_code


class ValidationError(WebinarSyncError):
    """A provider record is missing a field needed to identify it."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid record: {field} {reason}", "transform", recoverable=True)
        self.field = field
        self.reason = reason


AUTH_INVALID_MESSAGE = (
    "Your webinar provider credentials are invalid or expired. Please reconnect your account."
)
PROVIDER_UNAVAILABLE_MESSAGE = (
    "The webinar provider is temporarily unavailable. Please try again later."
)
STORAGE_FAILURE_MESSAGE = "Synced data could not be saved. Please retry the sync."
UNEXPECTED_FAILURE_MESSAGE = "Sync failed due to an unexpected error."


def describe_failure(exc: BaseException) -> str:
    """Human-readable job error message for the status UI."""
    if isinstance(exc, AuthInvalid):
        return AUTH_INVALID_MESSAGE
    if isinstance(exc, Fatal):
        if exc.retries_exhausted:
            return PROVIDER_UNAVAILABLE_MESSAGE
        return f"The webinar provider rejected the sync request: {exc.reason}"
    if isinstance(exc, DatabaseError):
        return STORAGE_FAILURE_MESSAGE
    if isinstance(exc, ConnectionInvalid):
        return str(exc)
    return UNEXPECTED_FAILURE_MESSAGE
