"""JSON-RPC 2.0 envelopes used by MCP."""

from __future__ import annotations

import itertools
import json
from typing import Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ProtocolError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
METHOD_RESOURCES_LIST = "resources/list"
METHOD_RESOURCES_READ = "resources/read"
METHOD_PROMPTS_LIST = "prompts/list"
METHOD_PROMPTS_GET = "prompts/get"
METHOD_ROOTS_LIST = "roots/list"
METHOD_PROGRESS = "notifications/progress"

METHOD_NOT_FOUND = -32601


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class JSONRPCRequest(_Envelope):
    id: RequestId
    method: str
    params: Optional[Dict[str, Any]] = None

    @property
    def progress_token(self) -> Optional[RequestId]:
        meta = (self.params or {}).get("_meta") or {}
        return meta.get("progressToken")


class JSONRPCNotification(_Envelope):
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCErrorObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any = None


class JSONRPCResponse(_Envelope):
    id: Optional[RequestId] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[JSONRPCErrorObject] = None


JSONRPCMessage = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse]


def parse_message(payload: Any) -> JSONRPCMessage:
    """Classify one decoded JSON object as a request, notification or response."""
    if not isinstance(payload, dict):
        raise ProtocolError(f"JSON-RPC message must be an object, got {type(payload).__name__}")
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError(f"invalid JSON-RPC version: {payload.get('jsonrpc')!r}")

    try:
        if "method" in payload:
            if "id" in payload:
                return JSONRPCRequest.model_validate(payload)
            return JSONRPCNotification.model_validate(payload)
        if "result" in payload or "error" in payload:
            if "result" in payload and "error" in payload:
                raise ProtocolError("response carries both result and error")
            return JSONRPCResponse.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(f"malformed JSON-RPC message: {exc}") from exc
    raise ProtocolError(f"not a JSON-RPC message: {payload!r}")


def parse_batch(payload: Any) -> List[JSONRPCMessage]:
    """Parse either a single message or a JSON array of messages."""
    if isinstance(payload, list):
        return [parse_message(item) for item in payload]
    return [parse_message(payload)]


def parse_data(data: str) -> List[JSONRPCMessage]:
    """Parse the ``data`` field of an SSE event."""
    try:
        payload = json.loads(data)
    except ValueError as exc:
        raise ProtocolError(f"event data is not JSON: {data[:80]!r}") from exc
    return parse_batch(payload)


class RequestIdAllocator:
    """Hands out increasing integer ids and tracks which are still outstanding."""

    def __init__(self, start: int = 1) -> None:
        self._counter: Iterator[int] = itertools.count(start)
        self._outstanding: set[RequestId] = set()

    def allocate(self) -> int:
        request_id = next(self._counter)
        while request_id in self._outstanding:
            request_id = next(self._counter)
        self._outstanding.add(request_id)
        return request_id

    def release(self, request_id: RequestId) -> None:
        self._outstanding.discard(request_id)

    @property
    def outstanding(self) -> frozenset[RequestId]:
        return frozenset(self._outstanding)


def error_response(request_id: Optional[RequestId], code: int, message: str) -> JSONRPCResponse:
    return JSONRPCResponse(id=request_id, error=JSONRPCErrorObject(code=code, message=message))
