"""Server-Sent Events framing for chat streams."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from fastapi.responses import StreamingResponse

DONE_MARKER = "[DONE]"
ERROR_MARKER = "[ERROR]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class StreamSentinel(str, Enum):
    """In-band markers signalling how a stream terminated."""

    DONE = DONE_MARKER
    ERROR = ERROR_MARKER


@dataclass
class SSEEvent:
    """A single data-only SSE record."""

    data: str

    def encode(self) -> str:
        """Encode as SSE format.

        Each line of the payload gets its own ``data:`` field so embedded
        newlines cannot end the record early.
        """
        lines = [f"data: {line}" for line in self.data.split("\n")]
        lines.append("")  # Empty line to end the event
        return "\n".join(lines) + "\n"


def encode_chunk(text: str) -> str:
    """Encode a reply chunk."""
    return SSEEvent(data=text).encode()


def encode_sentinel(sentinel: StreamSentinel) -> str:
    """Encode a terminal marker."""
    return SSEEvent(data=sentinel.value).encode()


def create_sse_response(generator: AsyncIterator[str]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
