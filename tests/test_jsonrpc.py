import pytest

from mcp_probe.errors import ProtocolError
from mcp_probe.jsonrpc import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestIdAllocator,
    error_response,
    parse_batch,
    parse_data,
    parse_message,
)


def test_messages_are_classified_by_shape() -> None:
    request = parse_message({"jsonrpc": "2.0", "id": "srv-1", "method": "roots/list"})
    notification = parse_message({"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}})
    response = parse_message({"jsonrpc": "2.0", "id": 7, "result": {}})

    assert isinstance(request, JSONRPCRequest)
    assert isinstance(notification, JSONRPCNotification)
    assert isinstance(response, JSONRPCResponse)
    assert response.result == {}


def test_error_response_keeps_code_and_message() -> None:
    response = parse_message({"jsonrpc": "2.0", "id": 3, "error": {"code": -32602, "message": "Unknown tool: x"}})
    assert isinstance(response, JSONRPCResponse)
    assert response.error is not None
    assert (response.error.code, response.error.message) == (-32602, "Unknown tool: x")


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"id": 1, "method": "ping"},
        {"jsonrpc": "1.0", "id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": 1},
        {"jsonrpc": "2.0", "id": 1, "result": {}, "error": {"code": 1, "message": "x"}},
        {"jsonrpc": "2.0", "id": 1, "error": {"message": "no code"}},
    ],
)
def test_malformed_messages_are_protocol_errors(payload) -> None:
    with pytest.raises(ProtocolError):
        parse_message(payload)


def test_batches_and_event_data() -> None:
    batch = parse_batch(
        [
            {"jsonrpc": "2.0", "method": "notifications/message"},
            {"jsonrpc": "2.0", "id": 1, "result": {"tools": []}},
        ]
    )
    assert [type(message) for message in batch] == [JSONRPCNotification, JSONRPCResponse]
    assert len(parse_data('{"jsonrpc": "2.0", "id": 2, "result": {}}')) == 1
    with pytest.raises(ProtocolError, match="not JSON"):
        parse_data("/message?sessionId=abc123")


def test_wire_form_drops_unset_fields() -> None:
    assert JSONRPCRequest(id=1, method="ping").to_wire() == {"jsonrpc": "2.0", "id": 1, "method": "ping"}
    assert error_response(4, -32601, "Method not found").to_wire() == {
        "jsonrpc": "2.0",
        "id": 4,
        "error": {"code": -32601, "message": "Method not found"},
    }


def test_progress_token_is_read_from_meta() -> None:
    request = JSONRPCRequest(
        id=5,
        method="tools/call",
        params={"name": "longRunningOperation", "_meta": {"progressToken": "op-1234"}},
    )
    assert request.progress_token == "op-1234"
    assert JSONRPCRequest(id=6, method="tools/call", params={}).progress_token is None


def test_allocator_skips_outstanding_ids() -> None:
    allocator = RequestIdAllocator()
    assert [allocator.allocate(), allocator.allocate()] == [1, 2]
    allocator.release(1)
    assert allocator.outstanding == frozenset({2})

    resumed = RequestIdAllocator(start=2)
    assert resumed.allocate() == 2
