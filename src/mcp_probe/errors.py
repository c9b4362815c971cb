"""Error taxonomy for MCP sessions.

Transport and protocol errors end a run. Application errors are JSON-RPC
``error`` objects returned by the server and leave the session usable.
"""

from __future__ import annotations

from typing import Any, Optional


class ProbeError(Exception):
    """Base class for every error raised by the probe."""


class McpConnectionError(ProbeError, ConnectionError):
    """The server could not be reached or the connection dropped."""


class ProtocolError(ProbeError):
    """The server broke the expected exchange (missing endpoint, id mismatch...)."""


class SessionStateError(ProbeError):
    """The caller used a session out of order or after it was closed."""


class ApplicationError(ProbeError):
    """A JSON-RPC error object returned for a request."""

    def __init__(
        self,
        code: int,
        message: str,
        data: Any = None,
        *,
        request_id: Any = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data
        self.request_id = request_id
        self.http_status = http_status

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class SessionNotFoundError(ApplicationError):
    """The server no longer knows the session id we sent."""


class ExpectationError(ProbeError):
    """The server answered, but not with what the scenario expected."""
