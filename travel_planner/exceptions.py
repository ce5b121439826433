"""
HTTP exceptions and the mapping from service errors to them
"""

from fastapi import HTTPException, status

from travel_planner.services.errors import (
    NotFoundError,
    OperationTimeoutError,
    ServiceError,
    ValidationError,
)


class RequestValidationFailed(HTTPException):
    """Validation error exception"""

    def __init__(self, detail: str = "Validation error"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail
        )


class ResourceNotFound(HTTPException):
    """Not found error exception"""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class DependencyUnavailable(HTTPException):
    """A dependency failed and no fallback could be served"""

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class DeadlineExceeded(HTTPException):
    """Operation deadline reached"""

    def __init__(self, detail: str = "Operation timed out"):
        super().__init__(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=detail)


def to_http_exception(error: ServiceError) -> HTTPException:
    """Map a ServiceError that escaped the orchestrator to an HTTP error."""
    if isinstance(error, NotFoundError):
        return ResourceNotFound(str(error))
    if isinstance(error, ValidationError):
        return RequestValidationFailed(str(error))
    if isinstance(error, OperationTimeoutError):
        return DeadlineExceeded(str(error))
    return DependencyUnavailable(str(error))
