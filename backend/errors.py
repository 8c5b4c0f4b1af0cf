"""
Error taxonomy for the storyboard service.

Provides structured error handling with:
- Categorized error codes mapped to HTTP status codes
- Per-field detail for validation failures
- Retry logic determination for external collaborators
- Bounded exponential backoff helpers
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

T = TypeVar("T")


class ErrorCode(Enum):
    """
    Enumeration of all error codes surfaced by the API.

    - Client errors: user-correctable input or state problems
    - External errors: generator/renderer/storage failures (retryable)
    - System errors: unexpected failures
    """

    # Client errors (4xx)
    VALIDATION_FAILED = "VALIDATION_FAILED"
    SCHEMA_VALIDATION_FAILED = "SCHEMA_VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"

    # External service errors (retryable)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    EXTERNAL_TIMEOUT = "EXTERNAL_TIMEOUT"

    # System errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_CODES = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.SCHEMA_VALIDATION_FAILED: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.EXTERNAL_TIMEOUT: 504,
    ErrorCode.INTERNAL_ERROR: 500,
}


class AppError(Exception):
    """
    Base exception for all domain errors.

    Carries an error code, a message for logs and clients, and a details
    dictionary. ``status_code`` is derived from the code.

    Example:
        >>> raise AppError(ErrorCode.CONFLICT, "Render job already finished")
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for API responses.

        Returns:
            Dictionary with error information
        """
        return {
            "error": self.message,
            "code": self.code.value,
            "details": self.details or None,
        }

    def log_error(self, **context) -> None:
        """Log client errors as warnings and everything else as errors"""
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            **context,
        }
        if self.status_code < 500:
            logger.warning("client_error", **log_data)
        else:
            logger.error("server_error", **log_data)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(AppError):
    """
    Malformed or missing fields.

    ``field_errors`` maps a dotted field path to the list of problems found
    at that path, e.g. ``{"scenes.0.duration": ["must be greater than 0"]}``.
    """

    code_for_class = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None):
        self.field_errors = field_errors or {}
        super().__init__(self.code_for_class, message, {"fields": self.field_errors})


class SchemaValidationError(ValidationError):
    """Message payload does not match the schema selected by its type"""

    code_for_class = ErrorCode.SCHEMA_VALIDATION_FAILED


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(ErrorCode.UNAUTHORIZED, message)


class NotFoundError(AppError):
    """Referenced project, checkpoint, scene or render job is absent"""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        self.resource = resource
        details = {"resource": resource}
        if resource_id:
            details["id"] = resource_id
        super().__init__(ErrorCode.NOT_FOUND, f"{resource} not found", details)


class ForbiddenError(AppError):
    """Authenticated user does not own the resource"""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(ErrorCode.FORBIDDEN, message)


class ConflictError(AppError):
    """Illegal state transition or concurrent modification"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        details = {"status": current_status} if current_status else None
        super().__init__(ErrorCode.CONFLICT, message, details)


class RateLimitError(AppError):
    """Per-user quota exceeded"""

    def __init__(self, operation: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            ErrorCode.RATE_LIMITED,
            "Rate limit exceeded",
            {"operation": operation, "retryAfter": retry_after},
        )


class ExternalServiceError(AppError):
    """Generator, renderer or storage unavailable after bounded retries"""

    def __init__(self, service: str, message: str, timeout: bool = False):
        self.service = service
        code = ErrorCode.EXTERNAL_TIMEOUT if timeout else ErrorCode.EXTERNAL_SERVICE_ERROR
        super().__init__(code, message, {"service": service})


class InternalError(AppError):
    """Unexpected, unclassified failure"""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(ErrorCode.INTERNAL_ERROR, message)


def field_errors_from_pydantic(exc, prefix: str = "") -> Dict[str, List[str]]:
    """
    Flatten a pydantic ``ValidationError`` into ``{path: [messages]}``.

    Args:
        exc: pydantic.ValidationError
        prefix: Optional path prefix (e.g. "storyboard")

    Returns:
        Mapping of dotted field path to error messages
    """
    field_errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ())]
        if prefix:
            parts.insert(0, prefix)
        path = ".".join(parts) or prefix or "__root__"
        field_errors.setdefault(path, []).append(error.get("msg", "invalid"))
    return field_errors


def should_retry(error: Exception) -> bool:
    """
    Determines if an error is transient and should be retried.

    Domain validation failures are never retried.

    Example:
        >>> should_retry(ExternalServiceError("renderer", "503"))
        True
        >>> should_retry(ValidationError("bad input"))
        False
    """
    if isinstance(error, ExternalServiceError):
        return True

    if isinstance(error, AppError):
        return False

    # Transport-level failures from HTTP clients
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


def get_retry_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """
    Calculate exponential backoff delay for retry attempts.

    Uses formula: min(base_delay * (2 ** attempt), max_delay)

    Example:
        >>> get_retry_delay(0)
        1.0
        >>> get_retry_delay(2)
        4.0
        >>> get_retry_delay(10)
        30.0
    """
    delay = base_delay * (2 ** attempt)
    return min(delay, max_delay)


def _log_retry(service: str, max_retries: int):
    def before_sleep(retry_state) -> None:
        logger.warning(
            "external_call_retry_scheduled",
            service=service,
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            retry_delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(retry_state.outcome.exception()),
        )
    return before_sleep


def call_with_retry(
    fn: Callable[[], T],
    service: str,
    max_retries: int = 2,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` with bounded exponential backoff.

    The call is attempted at most ``max_retries + 1`` times. Non-retryable
    errors propagate immediately. When retries are exhausted the last error
    is surfaced as an ``ExternalServiceError``.

    Args:
        fn: Zero-argument callable performing the external call
        service: Collaborator name for logs and error details
        max_retries: Retries after the first attempt
        base_delay: Base backoff delay in seconds
        sleep: Sleep function (injectable for tests)
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, max=30),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry(service, max_retries),
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(fn)
    except Exception as e:
        if not should_retry(e):
            raise

        logger.error(
            "external_call_failed",
            service=service,
            attempts=max_retries + 1,
            error=str(e),
        )
        if isinstance(e, ExternalServiceError):
            raise
        raise ExternalServiceError(
            service,
            f"{service} unavailable: {e}",
            timeout=isinstance(e, TimeoutError),
        ) from e
