"""Server-Sent Events decoding.

Lines are accumulated into a pending event until a blank line dispatches it.
``feed`` takes raw text in arbitrary chunks, so the events produced do not
depend on where the network happened to split the body.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

DEFAULT_EVENT_TYPE = "message"

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True, slots=True)
class SSEEvent:
    data: str
    event: str = DEFAULT_EVENT_TYPE
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    def __init__(self) -> None:
        self._buffer = ""
        self._reset()

    def _reset(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None

    def decode_line(self, line: str) -> Optional[SSEEvent]:
        """Consume one line (without its terminator); return an event on dispatch."""
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if not sep:
            return None
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\0" not in value:
                self._id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def feed(self, chunk: str) -> List[SSEEvent]:
        """Consume an arbitrary slice of the stream body."""
        self._buffer += chunk
        events: List[SSEEvent] = []
        while True:
            match = _LINE_END.search(self._buffer)
            if match is None:
                break
            # A lone trailing \r may be the first half of \r\n.
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            line = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end() :]
            event = self.decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> List[SSEEvent]:
        """Flush a trailing line at end of stream; an unterminated event is dropped."""
        events: List[SSEEvent] = []
        if self._buffer:
            line = self._buffer.rstrip("\r")
            self._buffer = ""
            event = self.decode_line(line)
            if event is not None:
                events.append(event)
        self._reset()
        return events

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data:
            self._reset()
            return None
        event = SSEEvent(
            data="\n".join(self._data),
            event=self._event or DEFAULT_EVENT_TYPE,
            id=self._id,
            retry=self._retry,
        )
        self._reset()
        return event


def iter_events(lines: Iterable[str]) -> Iterator[SSEEvent]:
    decoder = SSEDecoder()
    for line in lines:
        event = decoder.decode_line(line.rstrip("\r\n"))
        if event is not None:
            yield event


async def aiter_events(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.decode_line(line.rstrip("\r\n"))
        if event is not None:
            yield event


def decode_text(text: str) -> List[SSEEvent]:
    """Decode a complete SSE body held in memory."""
    decoder = SSEDecoder()
    return decoder.feed(text) + decoder.close()
