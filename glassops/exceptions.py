"""
Error taxonomy for the fulfillment pipeline.

ValidationError and ConfigurationError are terminal. TransientDependencyError
is retried up to the configured limit. CapacityError only re-runs assignment.
"""
import httpx


class GlassOpsError(Exception):
    """Base application error with an HTTP mapping."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details or None,
            },
        }


class ValidationError(GlassOpsError):
    """Missing or malformed required field. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, *, errors: list[str] | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.errors = errors or []
        if self.errors:
            self.details.setdefault("errors", self.errors)


class TransientDependencyError(GlassOpsError):
    """Timeout, 5xx or network failure talking to an external system."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        dependency_status: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details=details)
        self.service = service
        self.dependency_status = dependency_status
        if service:
            self.details.setdefault("service", service)
        if dependency_status is not None:
            self.details.setdefault("status_code", dependency_status)


class CapacityError(GlassOpsError):
    """Subcontractor day is full at assignment time."""

    code = "CAPACITY_EXHAUSTED"
    status_code = 409


class ConfigurationError(GlassOpsError):
    """Missing credentials or endpoint; retrying cannot help."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


class NotFoundError(GlassOpsError):
    """Requested entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message)


class InvalidTransitionError(GlassOpsError):
    """Status change not allowed by the transition table."""

    code = "INVALID_TRANSITION"
    status_code = 409


class ConflictError(GlassOpsError):
    """Concurrent modification lost the race."""

    code = "CONFLICT"
    status_code = 409


def classify_error(exc: BaseException) -> GlassOpsError:
    """
    Map any exception onto the taxonomy.

    Known application errors pass through unchanged; timeouts, transport
    errors and anything unrecognised become TransientDependencyError.
    """
    if isinstance(exc, GlassOpsError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TransientDependencyError(f"Request timed out: {exc}" if str(exc) else "Request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        return TransientDependencyError(
            f"HTTP {exc.response.status_code}",
            dependency_status=exc.response.status_code,
        )
    if isinstance(exc, httpx.RequestError):
        return TransientDependencyError(f"Network error: {exc}")
    return TransientDependencyError(str(exc) or exc.__class__.__name__)
