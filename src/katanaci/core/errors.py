"""Error handling module for katana-ci.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Usage:
    from katanaci.core.errors import InstanceNotFoundError, UnauthorizedError

    # Raise with default message
    raise InstanceNotFoundError()

    # Raise with custom message
    raise UnauthorizedError("Invalid API key")

Domain errors that never reach a client directly (e.g. registry conflicts)
do not inherit from KatanaCIError; the service layer translates them.
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    UNAUTHORIZED = "UNAUTHORIZED"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class KatanaCIError(Exception):
    """Base exception for katana-ci.

    Every client-facing failure inherits from this class so that a single
    FastAPI exception handler can render it.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class UnauthorizedError(KatanaCIError):
    """401 Unauthorized - Missing, malformed or unknown API key."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class InstanceNotFoundError(KatanaCIError):
    """404 Not Found - Instance does not exist or belongs to another tenant.

    Foreign instances are reported as missing so that names owned by other
    tenants are not disclosed.
    """

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class InvalidArgumentError(KatanaCIError):
    """400 Bad Request - Malformed request parameter."""

    def __init__(self, message: str = "Invalid argument") -> None:
        super().__init__(ErrorCode.INVALID_ARGUMENT, message, 400)


class ResourceExhaustedError(KatanaCIError):
    """503 Service Unavailable - No free port or instance name."""

    def __init__(self, message: str = "No capacity for a new instance") -> None:
        super().__init__(ErrorCode.RESOURCE_EXHAUSTED, message, 503)


class UpstreamUnavailableError(KatanaCIError):
    """502 Bad Gateway - Container engine or instance unreachable."""

    def __init__(self, message: str = "Upstream service unavailable") -> None:
        super().__init__(ErrorCode.UPSTREAM_UNAVAILABLE, message, 502)


class InternalError(KatanaCIError):
    """500 Internal Server Error - Unexpected failure."""

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(ErrorCode.INTERNAL_ERROR, message, 500)


# =============================================================================
# Domain errors (translated by the service layer)
# =============================================================================


class InstanceAlreadyExistsError(Exception):
    """Registry insert lost a race on instance name or proxied port."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Instance {name!r} conflicts with an existing row")


class TenantAlreadyExistsError(Exception):
    """A tenant with the same API key is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"API key for tenant {name!r} is already registered")


class TenantHasInstancesError(Exception):
    """Tenant still owns live instances and cannot be removed."""

    def __init__(self, name: str, count: int) -> None:
        self.name = name
        self.count = count
        super().__init__(f"Tenant {name!r} still owns {count} instance(s)")
