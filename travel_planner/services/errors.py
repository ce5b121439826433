"""
Service layer exceptions.

Every failure coming out of a Service Client Adapter is a ServiceError carrying
an ErrorKind. The class attributes tell the resilience stages what to do:

- retryable: the RetryExecutor may attempt the call again
- counts_as_failure: the CircuitBreaker counts it towards its threshold
- fallback_eligible: the pipeline hands it to the FallbackRegistry
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a dependency failure."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    UNAVAILABLE = "unavailable"
    PERMANENT = "permanent"
    BREAKER_OPEN = "breaker_open"
    TIMEOUT = "timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    CACHE = "cache"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: ErrorKind = ErrorKind.PERMANENT
    retryable: bool = False
    counts_as_failure: bool = True
    fallback_eligible: bool = True
    status_code: int | None = None  # HTTP status, when the dependency answered with one

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class ValidationError(ServiceError):
    """Request rejected as invalid. A caller fault, never retried."""

    kind = ErrorKind.VALIDATION
    counts_as_failure = False
    fallback_eligible = False


class NotFoundError(ValidationError):
    """The dependency has nothing for this request (HTTP 404)."""

    kind = ErrorKind.NOT_FOUND


class RateLimitError(ServiceError):
    """Rate limit exceeded."""

    kind = ErrorKind.RATE_LIMIT
    retryable = True

    def __init__(self, service_id: str | None = None, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id)


class TransientNetworkError(ServiceError):
    """Network timeout or connection failure."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class ServiceUnavailableError(ServiceError):
    """Service is temporarily unavailable (5xx)."""

    kind = ErrorKind.UNAVAILABLE
    retryable = True


class PermanentServiceError(ServiceError):
    """Service answered but the result is unusable. Not retried."""

    kind = ErrorKind.PERMANENT


class BreakerOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    kind = ErrorKind.BREAKER_OPEN
    counts_as_failure = False

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class OperationTimeoutError(ServiceError):
    """The operation deadline passed before a result was available."""

    kind = ErrorKind.TIMEOUT
    counts_as_failure = False
    fallback_eligible = False

    def __init__(self, service_id: str | None, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Operation on service '{service_id}' timed out after {timeout:.2f}s",
            service_id=service_id,
        )


class UpstreamUnavailableError(ServiceError):
    """An upstream the dependency relies on is unhealthy; the call is skipped."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    counts_as_failure = False

    def __init__(self, service_id: str, upstreams: list[str]):
        self.upstreams = upstreams
        super().__init__(
            f"Service '{service_id}' skipped, unhealthy upstream: {', '.join(upstreams)}",
            service_id=service_id,
        )


class CacheError(ServiceError):
    """Cache operation failed. Never escapes the ResponseCache."""

    kind = ErrorKind.CACHE
    counts_as_failure = False
    fallback_eligible = False


def classify_http_status(
    status_code: int,
    service_id: str | None = None,
    detail: str = "",
    retry_after: float | None = None,
) -> ServiceError:
    """Map an HTTP error status to the matching ServiceError."""
    msg = f"HTTP {status_code}: {detail[:200]}" if detail else f"HTTP {status_code}"

    error: ServiceError
    if status_code in (400, 422):
        error = ValidationError(msg, service_id=service_id)
    elif status_code == 404:
        error = NotFoundError(msg, service_id=service_id)
    elif status_code == 429:
        error = RateLimitError(service_id, retry_after=retry_after)
    elif status_code >= 500:
        error = ServiceUnavailableError(msg, service_id=service_id)
    else:
        error = PermanentServiceError(msg, service_id=service_id)
    error.status_code = status_code
    return error


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def as_service_error(error: Exception, service_id: str) -> ServiceError:
    """Classify an arbitrary adapter exception; unknown ones are permanent."""
    if isinstance(error, ServiceError):
        if error.service_id is None:
            error.service_id = service_id
        return error
    wrapped = PermanentServiceError(
        f"Unexpected adapter error: {type(error).__name__}: {error}",
        service_id=service_id,
    )
    wrapped.__cause__ = error
    return wrapped
