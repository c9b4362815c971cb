"""Session model and negotiation for both MCP HTTP transports."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional
from urllib.parse import parse_qs, urljoin, urlparse

from .errors import ProtocolError
from .logging import get_logger
from .sse import SSEEvent

LOGGER = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
SESSION_QUERY_KEYS = ("sessionId", "session_id")


class TransportKind(str, enum.Enum):
    SSE_LEGACY = "sse"
    STREAMABLE_HTTP = "streamable"


@dataclass(frozen=True, slots=True)
class Session:
    session_id: str
    transport: TransportKind
    message_endpoint: Optional[str] = None


def session_from_endpoint(data: str, stream_url: str) -> Session:
    """Build a legacy session from the endpoint path announced by ``/sse``.

    ``data`` is normally ``/message?sessionId=<id>``; it is resolved against
    the stream URL and must stay on the same origin.
    """
    path = data.strip()
    if not path:
        raise ProtocolError("endpoint event carried no data")

    endpoint = urljoin(stream_url, path)
    stream_parts = urlparse(stream_url)
    endpoint_parts = urlparse(endpoint)
    if (stream_parts.scheme, stream_parts.netloc) != (endpoint_parts.scheme, endpoint_parts.netloc):
        raise ProtocolError(f"endpoint origin does not match connection origin: {endpoint}")

    query = parse_qs(endpoint_parts.query)
    for key in SESSION_QUERY_KEYS:
        values = query.get(key)
        if values and values[0]:
            return Session(
                session_id=values[0],
                transport=TransportKind.SSE_LEGACY,
                message_endpoint=endpoint,
            )
    raise ProtocolError(f"no session id in endpoint {path!r}")


async def negotiate_legacy(
    events: AsyncIterator[SSEEvent],
    stream_url: str,
    timeout: float = 10.0,
) -> Session:
    """Read the first event of a ``/sse`` stream and turn it into a Session."""
    try:
        event = await asyncio.wait_for(events.__anext__(), timeout)
    except asyncio.TimeoutError as exc:
        raise ProtocolError(f"no endpoint event from {stream_url} within {timeout:g}s") from exc
    except StopAsyncIteration as exc:
        raise ProtocolError(f"{stream_url} closed before sending an endpoint event") from exc

    LOGGER.debug("endpoint_event_received", sse_event=event.event, data=event.data)
    session = session_from_endpoint(event.data, stream_url)
    LOGGER.info(
        "session_negotiated",
        transport=session.transport.value,
        session_id=session.session_id,
        endpoint=session.message_endpoint,
    )
    return session


def session_from_headers(headers: Mapping[str, str], endpoint: str) -> Optional[Session]:
    """Return the streamable session announced in a response, if any."""
    session_id = headers.get(SESSION_HEADER) or headers.get(SESSION_HEADER.lower())
    if not session_id:
        return None
    return Session(
        session_id=session_id.strip(),
        transport=TransportKind.STREAMABLE_HTTP,
        message_endpoint=endpoint,
    )


def session_from_message_url(message_url: str) -> Session:
    """Adopt a legacy session whose endpoint was printed by another process."""
    parts = urlparse(message_url)
    if not parts.scheme or not parts.netloc:
        raise ProtocolError(f"message URL must be absolute: {message_url!r}")
    origin = f"{parts.scheme}://{parts.netloc}/"
    return session_from_endpoint(message_url, origin)
