"""Exception types raised by the proxy and their JSON-RPC error codes.

Every proxy error carries a JSON-RPC error code so it can be reported to the
client as an error response without tearing down the session.
"""

from typing import Any


class ErrorCode:
    """JSON-RPC error codes used by the proxy."""

    # Standard JSON-RPC codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Proxy-specific codes (implementation-defined server error range)
    CHILD_UNAVAILABLE = -32000
    REQUEST_TIMEOUT = -32001
    RESTART_FAILED = -32002
    INVALID_RESTART_CONFIG = -32003
    DISCONNECTED = -32004
    RESTART_IN_PROGRESS = -32005
    RESTART_LIMIT_EXCEEDED = -32006
    SPAWN_FAILED = -32007


class ProxyError(Exception):
    """Base class for all proxy errors."""

    code: int = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, data: Any = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error_object(self) -> dict[str, Any]:
        """Render the error as a JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class SpawnError(ProxyError):
    """Child executable missing, not executable, or failed to launch."""

    code = ErrorCode.SPAWN_FAILED


class RestartLimitExceeded(ProxyError):
    """Consecutive restart attempts reached the configured limit."""

    code = ErrorCode.RESTART_LIMIT_EXCEEDED


class RestartInProgress(ProxyError):
    """A restart was requested while another one is running."""

    code = ErrorCode.RESTART_IN_PROGRESS


class RestartFailed(ProxyError):
    """The child restarted but could not be brought back to a ready state."""

    code = ErrorCode.RESTART_FAILED


class InvalidRestartConfig(ProxyError):
    """Arguments passed to the restart tool failed validation."""

    code = ErrorCode.INVALID_RESTART_CONFIG


class ChildUnavailable(ProxyError):
    """A request arrived while no ready child is attached."""

    code = ErrorCode.CHILD_UNAVAILABLE


class RequestTimeout(ProxyError):
    """A forwarded request did not receive a response before its deadline."""

    code = ErrorCode.REQUEST_TIMEOUT


class Disconnected(ProxyError):
    """The connection closed while a request was pending."""

    code = ErrorCode.DISCONNECTED


class MalformedMessage(ProxyError):
    """A line could not be parsed as a JSON-RPC message."""

    code = ErrorCode.PARSE_ERROR


class RemoteError(ProxyError):
    """The peer answered a request with a JSON-RPC error object.

    The original error object is kept verbatim so it can be relayed to the
    client unchanged.
    """

    def __init__(self, error: dict[str, Any]):
        message = str(error.get("message", "Unknown error"))
        super().__init__(message, data=error.get("data"))
        self.error = error
        code = error.get("code")
        self.code = code if isinstance(code, int) else ErrorCode.INTERNAL_ERROR

    @classmethod
    def from_error_object(cls, error: Any) -> "RemoteError":
        """Build from whatever the peer put in the ``error`` member."""
        if isinstance(error, dict):
            return cls(error)
        return cls({"code": ErrorCode.INTERNAL_ERROR, "message": str(error)})

    def to_error_object(self) -> dict[str, Any]:
        return dict(self.error)


class ConfigError(ValueError):
    """Proxy configuration is missing or invalid."""


def error_object_for(exc: BaseException) -> dict[str, Any]:
    """Map any exception to a JSON-RPC error object.

    Args:
        exc: Exception raised while handling a request

    Returns:
        JSON-RPC error object with ``code`` and ``message``
    """
    if isinstance(exc, ProxyError):
        return exc.to_error_object()
    return {
        "code": ErrorCode.INTERNAL_ERROR,
        "message": f"Internal proxy error: {exc}",
    }
