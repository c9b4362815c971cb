"""Client harness for exercising MCP servers over HTTP+SSE and Streamable HTTP."""

__version__ = "0.1.0"

from .channels import DetachedLegacyChannel, LegacySseChannel, StreamableHttpChannel  # noqa: E402
from .driver import McpDriver, RpcExchange  # noqa: E402
from .errors import (  # noqa: E402
    ApplicationError,
    McpConnectionError,
    ProtocolError,
    SessionNotFoundError,
    SessionStateError,
)
from .session import Session, TransportKind  # noqa: E402
from .sse import SSEDecoder, SSEEvent  # noqa: E402

__all__ = [
    "ApplicationError",
    "DetachedLegacyChannel",
    "LegacySseChannel",
    "McpConnectionError",
    "McpDriver",
    "ProtocolError",
    "RpcExchange",
    "SSEDecoder",
    "SSEEvent",
    "Session",
    "SessionNotFoundError",
    "SessionStateError",
    "StreamableHttpChannel",
    "TransportKind",
]
