"""Streaming tool-call argument buffering.

Providers send tool calls as incremental chunks keyed by a stream index:
the first chunk usually carries the id and name, later chunks carry
argument fragments that must be concatenated.  A call is emitted as soon as
its arguments parse as a JSON object; afterwards its index is completed and
any further chunk for it (typically a trailing "done" event repeating the
full argument string) is ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from llm_relay.errors import DecodeError
from llm_relay.types import ToolCallPart, synthesize_call_id

_logger = logging.getLogger(__name__)


@dataclass
class ToolCallBuffer:
    id: str | None = None
    name: str | None = None
    args: str = ""


def parse_json_object(raw: str) -> dict[str, Any] | None:
    """Parse *raw* as a JSON object, ``None`` if incomplete or not an object."""
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


class ToolCallBuffers:
    """Per-response tool-call buffers and the set of completed indices."""

    def __init__(self) -> None:
        self._buffers: dict[int, ToolCallBuffer] = {}
        self._completed: set[int] = set()

    def is_completed(self, index: int) -> bool:
        return index in self._completed

    def has_pending(self) -> bool:
        return bool(self._buffers)

    def feed(
        self,
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        args: str | None = None,
        replace: bool = False,
    ) -> ToolCallPart | None:
        """Apply one delta to buffer *index* and emit the call if complete.

        ``replace=True`` swaps the accumulator wholesale (for events that
        carry the full argument string).  Id and name are set once.
        """
        if index in self._completed:
            return None
        buf = self._buffers.setdefault(index, ToolCallBuffer())
        if call_id and not buf.id:
            buf.id = call_id
        if name and not buf.name:
            buf.name = name
        if args is not None:
            if replace:
                buf.args = args
            else:
                buf.args += args
        return self.try_emit(index)

    def try_emit(self, index: int) -> ToolCallPart | None:
        buf = self._buffers.get(index)
        if buf is None or not buf.name or not buf.args.strip():
            return None
        parsed = parse_json_object(buf.args)
        if parsed is None:
            return None
        return self._complete(index, buf, parsed)

    def flush(self, *, strict: bool) -> list[ToolCallPart]:
        """Emit every buffered call that has not been emitted yet.

        With ``strict=True`` an unparseable accumulator raises
        ``DecodeError``; otherwise it is dropped.  Empty arguments count
        as ``{}``.
        """
        out: list[ToolCallPart] = []
        for index in sorted(self._buffers):
            part = self.flush_index(index, strict=strict)
            if part is not None:
                out.append(part)
        return out

    def flush_index(self, index: int, *, strict: bool) -> ToolCallPart | None:
        buf = self._buffers.get(index)
        if buf is None or index in self._completed:
            return None
        if not buf.name:
            _logger.debug("Dropping tool call buffer %d without a name", index)
            del self._buffers[index]
            return None
        parsed = parse_json_object(buf.args) if buf.args.strip() else {}
        if parsed is None:
            if strict:
                raise DecodeError(
                    f"Invalid JSON arguments for tool call {buf.name!r}: {buf.args[:200]}"
                )
            _logger.debug("Dropping incomplete tool call %s (index %d)", buf.name, index)
            del self._buffers[index]
            return None
        return self._complete(index, buf, parsed)

    def _complete(
        self, index: int, buf: ToolCallBuffer, arguments: dict[str, Any],
    ) -> ToolCallPart:
        del self._buffers[index]
        self._completed.add(index)
        return ToolCallPart(
            call_id=buf.id or synthesize_call_id("call"),
            name=buf.name or "",
            arguments=arguments,
        )
