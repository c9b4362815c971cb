"""Tests for the Server-Sent Events decoder."""

import pytest

from mcp_probe.sse import SSEDecoder, SSEEvent, aiter_events, decode_text, iter_events

STREAM = (
    ": keep-alive comment\n"
    "event: endpoint\n"
    "data: /message?sessionId=abc123\n"
    "\n"
    "id: 7\n"
    "data: {\"jsonrpc\": \"2.0\",\n"
    "data:  \"id\": 1}\n"
    "\n"
    "retry: 1500\n"
    "data: third\r\n"
    "\r\n"
    "garbage line without colon\n"
    "data: fourth\r"
    "\r"
)

EXPECTED = [
    SSEEvent(data="/message?sessionId=abc123", event="endpoint"),
    SSEEvent(data='{"jsonrpc": "2.0",\n "id": 1}', id="7"),
    SSEEvent(data="third", retry=1500),
    SSEEvent(data="fourth"),
]


def test_decode_text_reconstructs_events() -> None:
    assert decode_text(STREAM) == EXPECTED


@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 16, 64])
def test_decoding_is_independent_of_chunk_boundaries(size: int) -> None:
    decoder = SSEDecoder()
    events = []
    for start in range(0, len(STREAM), size):
        events.extend(decoder.feed(STREAM[start : start + size]))
    events.extend(decoder.close())
    assert events == EXPECTED


def test_crlf_split_across_chunks_is_one_line_end() -> None:
    decoder = SSEDecoder()
    assert decoder.feed("data: a\r") == []
    assert decoder.feed("\n\r") == []
    assert decoder.feed("\n") == [SSEEvent(data="a")]


def test_default_event_type_is_message() -> None:
    (event,) = decode_text("data: hello\n\n")
    assert event.event == "message"
    assert event.id is None


def test_id_does_not_carry_over_to_next_event() -> None:
    first, second = decode_text("id: 1\ndata: a\n\ndata: b\n\n")
    assert first.id == "1"
    assert second.id is None


def test_blank_lines_without_data_emit_nothing() -> None:
    assert decode_text("\n\nevent: ping\n\n: comment\n\n") == []


def test_only_one_leading_space_is_stripped() -> None:
    (event,) = decode_text("data:  two spaces\n\n")
    assert event.data == " two spaces"


def test_unterminated_event_is_dropped() -> None:
    assert decode_text("data: complete\n\ndata: partial\n") == [SSEEvent(data="complete")]


def test_iter_events_accepts_lines_with_terminators() -> None:
    lines = ["event: endpoint\n", "data: /message?sessionId=x\r\n", "\n"]
    assert list(iter_events(lines)) == [SSEEvent(data="/message?sessionId=x", event="endpoint")]


@pytest.mark.asyncio
async def test_aiter_events_is_lazy_over_async_lines() -> None:
    async def lines():
        for line in ["data: one", "", "data: two", ""]:
            yield line

    events = [event async for event in aiter_events(lines())]
    assert [event.data for event in events] == ["one", "two"]
