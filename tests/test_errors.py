"""
Tests for the error taxonomy.
"""
import pytest

from llm_gateway.errors import (
    # Base
    ErrorCode,
    ErrorContext,
    GatewayError,
    # Request errors
    InvalidRequestError,
    UnknownModelError,
    # Backend process errors
    ProcessError,
    ProcessSpawnError,
    ProcessTimeoutError,
    ProcessFailedError,
    DecodeError,
    # Session store errors
    SessionStoreError,
)


class TestErrorCodes:
    """Test error code enumeration."""

    def test_error_codes_are_strings(self):
        """Test that error codes are strings."""
        assert ErrorCode.INVALID_REQUEST.value.startswith("ERR_")
        assert ErrorCode.PROCESS_TIMEOUT.value.startswith("ERR_")

    def test_error_codes_unique(self):
        """Test that all error codes are unique."""
        values = [e.value for e in ErrorCode]
        assert len(values) == len(set(values))


class TestErrorContext:
    """Test error context."""

    def test_to_dict(self):
        """Test context serialization."""
        ctx = ErrorContext(
            request_id="req_456",
            protocol="anthropic",
            pid=1234,
            extra={"custom": "data"},
        )

        d = ctx.to_dict()

        assert d["request_id"] == "req_456"
        assert d["protocol"] == "anthropic"
        assert d["pid"] == 1234
        assert d["custom"] == "data"


class TestGatewayError:
    """Test the base gateway error."""

    def test_create_error(self):
        """Test creating base error."""
        error = GatewayError("Something went wrong")

        assert error.message == "Something went wrong"
        assert error.code == ErrorCode.INTERNAL_ERROR
        assert error.http_status == 500
        assert not error.is_client_error

    def test_overrides(self):
        """Test per-instance code and status overrides."""
        error = GatewayError("Teapot", code=ErrorCode.INVALID_REQUEST, http_status=418)

        assert error.code == ErrorCode.INVALID_REQUEST
        assert error.http_status == 418
        assert GatewayError("x").http_status == 500

    def test_error_str_includes_code_and_request(self):
        """Test string representation."""
        error = GatewayError("Test error", context=ErrorContext(request_id="req_1"))
        s = str(error)

        assert "ERR_" in s
        assert "Test error" in s
        assert "req_1" in s

    def test_to_dict(self):
        """Test error serialization."""
        cause = OSError("pipe closed")
        error = GatewayError("Test error", context=ErrorContext(model="claude-opus-4"), cause=cause)

        d = error.to_dict()

        assert d["error_type"] == "GatewayError"
        assert d["message"] == "Test error"
        assert d["context"]["model"] == "claude-opus-4"
        assert d["cause"] == "pipe closed"


class TestRequestErrors:
    """Test caller-side errors."""

    def test_invalid_request(self):
        error = InvalidRequestError("messages: required", param="messages")

        assert error.code == ErrorCode.INVALID_REQUEST
        assert error.http_status == 400
        assert error.is_client_error
        assert error.param == "messages"

    def test_unknown_model(self):
        error = UnknownModelError(model="gpt-9")

        assert "gpt-9" in error.message
        assert error.model == "gpt-9"
        assert error.http_status == 404
        assert error.is_client_error


class TestProcessErrors:
    """Test backend process errors."""

    @pytest.mark.parametrize(
        "error_class,code",
        [
            (ProcessSpawnError, ErrorCode.PROCESS_SPAWN_FAILED),
            (ProcessTimeoutError, ErrorCode.PROCESS_TIMEOUT),
            (ProcessFailedError, ErrorCode.PROCESS_FAILED),
            (DecodeError, ErrorCode.DECODE_ERROR),
        ],
    )
    def test_hierarchy(self, error_class, code):
        error = error_class()

        assert isinstance(error, ProcessError)
        assert isinstance(error, GatewayError)
        assert error.code == code
        assert not error.is_client_error

    def test_spawn_error_default_message(self):
        error = ProcessSpawnError()

        assert error.message == "Backend process could not be started"
        assert error.http_status == 500

    def test_timeout_is_gateway_timeout(self):
        error = ProcessTimeoutError(timeout=30.0)

        assert error.http_status == 504
        assert error.timeout == 30.0

    def test_failed_carries_exit_details(self):
        error = ProcessFailedError("exited", exit_code=2, stderr_tail="boom")

        assert error.exit_code == 2
        assert error.stderr_tail == "boom"
        assert error.context.exit_code == 2

    def test_decode_error_keeps_line(self):
        assert DecodeError(line="{bad").line == "{bad"


class TestSessionStoreError:
    def test_is_server_side(self):
        error = SessionStoreError("disk full")

        assert error.code == ErrorCode.SESSION_STORE_ERROR
        assert not error.is_client_error
