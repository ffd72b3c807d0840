"""Inline ``<think>...</think>`` extraction over a stream of text chunks."""

from __future__ import annotations

from typing import Literal

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"

SegmentKind = Literal["text", "thinking", "end"]
Segment = tuple[SegmentKind, str]


def _partial_tag_len(text: str, tag: str) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of *tag*."""
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:n]):
            return n
    return 0


class InlineThinkScanner:
    """Route text inside ``<think>`` tags to the reasoning channel.

    ``feed()`` returns ``("text", s)``, ``("thinking", s)`` and ``("end", "")``
    segments in order.  A tag fragment at the end of a chunk is held back
    until the next chunk decides whether it is a tag.
    """

    def __init__(self) -> None:
        self.in_think = False
        self._buffer = ""

    def feed(self, chunk: str) -> list[Segment]:
        self._buffer += chunk
        out: list[Segment] = []
        while self._buffer:
            tag = CLOSE_TAG if self.in_think else OPEN_TAG
            kind: SegmentKind = "thinking" if self.in_think else "text"
            idx = self._buffer.find(tag)
            if idx >= 0:
                if idx > 0:
                    out.append((kind, self._buffer[:idx]))
                self._buffer = self._buffer[idx + len(tag):]
                if self.in_think:
                    out.append(("end", ""))
                self.in_think = not self.in_think
                continue
            held = _partial_tag_len(self._buffer, tag)
            emit = self._buffer[: len(self._buffer) - held]
            if emit:
                out.append((kind, emit))
            self._buffer = self._buffer[len(emit):]
            break
        return out

    def finish(self) -> list[Segment]:
        """Flush the held fragment to whichever channel is current."""
        rest, self._buffer = self._buffer, ""
        if not rest:
            return []
        return [("thinking" if self.in_think else "text", rest)]
