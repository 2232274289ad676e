"""Tests for error handling classes."""

import pytest

from katanaci.core.errors import (
    ErrorCode,
    InstanceNotFoundError,
    InternalError,
    InvalidArgumentError,
    KatanaCIError,
    ResourceExhaustedError,
    UnauthorizedError,
    UpstreamUnavailableError,
)


@pytest.mark.parametrize(
    ("error_cls", "code", "status"),
    [
        (UnauthorizedError, ErrorCode.UNAUTHORIZED, 401),
        (InstanceNotFoundError, ErrorCode.INSTANCE_NOT_FOUND, 404),
        (InvalidArgumentError, ErrorCode.INVALID_ARGUMENT, 400),
        (ResourceExhaustedError, ErrorCode.RESOURCE_EXHAUSTED, 503),
        (UpstreamUnavailableError, ErrorCode.UPSTREAM_UNAVAILABLE, 502),
        (InternalError, ErrorCode.INTERNAL_ERROR, 500),
    ],
)
def test_error_taxonomy(error_cls, code, status) -> None:
    exc = error_cls()
    assert isinstance(exc, KatanaCIError)
    assert exc.code == code
    assert exc.status_code == status


class TestToResponse:
    """KatanaCIError.to_response() tests."""

    def test_default_message(self) -> None:
        response = InstanceNotFoundError().to_response()
        assert response.model_dump() == {
            "error": {"code": "INSTANCE_NOT_FOUND", "message": "Instance not found"}
        }

    def test_custom_message(self) -> None:
        exc = UnauthorizedError("Invalid API key")
        assert exc.message == "Invalid API key"
        assert str(exc) == "Invalid API key"
        assert exc.to_response().error.message == "Invalid API key"
