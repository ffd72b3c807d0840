"""Line framing for SSE and JSON-lines response bodies."""

from __future__ import annotations

import codecs


class LineFramer:
    """Split an incoming byte stream into complete text lines.

    Bytes are decoded incrementally so multi-byte UTF-8 sequences split
    across reads survive.  The trailing partial line is kept until the next
    ``feed()``; empty lines are dropped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return [line.rstrip("\r") for line in parts if line.strip()]

    def finish(self) -> list[str]:
        """Return whatever is left once the body is exhausted."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return [rest] if rest.strip() else []


DONE_SENTINEL = "[DONE]"


def sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or ``None``.

    ``event:``, ``id:`` and comment lines are not payloads.
    """
    if not line.startswith("data:"):
        return None
    return line[5:].strip()
