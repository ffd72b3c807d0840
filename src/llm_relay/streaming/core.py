"""Decoder state shared by every provider and the cancellable pull loop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Protocol

from llm_relay.streaming.framing import DONE_SENTINEL, LineFramer, sse_data
from llm_relay.streaming.think_tags import InlineThinkScanner
from llm_relay.streaming.tool_buffer import ToolCallBuffers
from llm_relay.types import (
    ResponseEnd,
    ResponseEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingEnd,
    ToolCallPart,
)

_logger = logging.getLogger(__name__)

Framing = Literal["sse", "jsonl"]


@dataclass
class ReasoningState:
    pending_text: str = ""
    pending_signature: str | None = None
    active: bool = False

    def reset(self) -> None:
        self.pending_text = ""
        self.pending_signature = None
        self.active = False


class DecoderCore:
    """Event sink plus the per-response state every decoder needs.

    Reasoning and answer text are mutually exclusive: emitting text or a
    tool call closes any open reasoning segment first.
    """

    def __init__(self) -> None:
        self.events: list[ResponseEvent] = []
        self.reasoning = ReasoningState()
        self.tools = ToolCallBuffers()
        self.think_tags = InlineThinkScanner()
        self.has_emitted_text = False
        self._tool_emitted = False

    # -- emission --------------------------------------------------------

    def emit_text(self, text: str) -> None:
        if not text:
            return
        self.end_thinking()
        self.events.append(TextDelta(text))
        self.has_emitted_text = True

    def emit_thinking(self, text: str, signature: str | None = None) -> None:
        if signature:
            self.reasoning.pending_signature = signature
        if not text:
            return
        self.events.append(ThinkingDelta(text))
        self.reasoning.pending_text += text
        self.reasoning.active = True

    def end_thinking(self, signature: str | None = None) -> None:
        """Close the open reasoning segment, if any."""
        signature = signature or self.reasoning.pending_signature
        if self.reasoning.active or signature:
            self.events.append(ThinkingEnd(signature=signature))
        self.reasoning.reset()

    def emit_tool_call(self, part: ToolCallPart) -> None:
        self.end_thinking()
        if self.has_emitted_text and not self._tool_emitted:
            self.events.append(TextDelta(" "))
        self._tool_emitted = True
        self.events.append(part)

    def emit_content(self, text: str) -> None:
        """Emit answer text, splitting out inline ``<think>`` sections."""
        if text:
            self._route(self.think_tags.feed(text))

    def _route(self, segments: list[tuple[str, str]]) -> None:
        for kind, value in segments:
            if kind == "text":
                self.emit_text(value)
            elif kind == "thinking":
                self.emit_thinking(value)
            else:
                self.end_thinking()

    # -- tool buffers ----------------------------------------------------

    def feed_tool(self, index: int, **delta: Any) -> None:
        part = self.tools.feed(index, **delta)
        if part is not None:
            self.emit_tool_call(part)

    def flush_tools(self, *, strict: bool) -> None:
        for part in self.tools.flush(strict=strict):
            self.emit_tool_call(part)

    def flush_tool(self, index: int, *, strict: bool) -> None:
        part = self.tools.flush_index(index, strict=strict)
        if part is not None:
            self.emit_tool_call(part)

    # -- lifecycle -------------------------------------------------------

    def finish(self) -> None:
        """End of body: flush held tag fragments and tool buffers leniently."""
        self._route(self.think_tags.finish())
        self.flush_tools(strict=False)
        self.end_thinking()

    def drain(self) -> list[ResponseEvent]:
        events, self.events = self.events, []
        return events


class StreamDecoder(Protocol):
    """What the pull loop needs from a provider decoder."""

    framing: Framing
    core: DecoderCore

    def handle(self, payload: dict[str, Any]) -> None: ...

    def on_done(self) -> None: ...

    def finish(self) -> None: ...


def _dispatch_line(decoder: StreamDecoder, line: str) -> None:
    if decoder.framing == "sse":
        data = sse_data(line)
        if data is None:
            return
        if data == DONE_SENTINEL:
            decoder.on_done()
            return
    else:
        data = line.strip()
    try:
        payload = json.loads(data)
    except ValueError:
        _logger.debug("Skipping malformed stream line: %.200s", line)
        return
    if not isinstance(payload, dict):
        _logger.debug("Skipping non-object stream payload: %.200s", line)
        return
    decoder.handle(payload)


_CANCELLED = object()
_EXHAUSTED = object()


async def _next_chunk(it: AsyncIterator[bytes], cancel: asyncio.Event | None) -> Any:
    if cancel is None:
        try:
            return await it.__anext__()
        except StopAsyncIteration:
            return _EXHAUSTED
    if cancel.is_set():
        return _CANCELLED

    read = asyncio.ensure_future(it.__anext__())
    waiter = asyncio.ensure_future(cancel.wait())
    done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if read in done:
        waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await waiter
        try:
            return read.result()
        except StopAsyncIteration:
            return _EXHAUSTED
    read.cancel()
    try:
        await read
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    return _CANCELLED


async def decode_stream(
    chunks: AsyncIterator[bytes],
    decoder: StreamDecoder,
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[ResponseEvent]:
    """Pull bytes from *chunks*, feed them to *decoder* and yield events.

    The stream always ends with ``ResponseEnd``: ``"cancelled"`` when
    *cancel* is set while waiting for bytes (reading stops, open reasoning
    is closed), otherwise ``"stop"``.
    """
    framer = LineFramer()
    it = chunks.__aiter__()
    while True:
        chunk = await _next_chunk(it, cancel)
        if chunk is _CANCELLED:
            _logger.debug("Stream cancelled by caller")
            decoder.core.end_thinking()
            for event in decoder.core.drain():
                yield event
            yield ResponseEnd("cancelled")
            return
        if chunk is _EXHAUSTED:
            break
        for line in framer.feed(chunk):
            _dispatch_line(decoder, line)
        for event in decoder.core.drain():
            yield event

    for line in framer.finish():
        _dispatch_line(decoder, line)
    decoder.finish()
    for event in decoder.core.drain():
        yield event
    yield ResponseEnd("stop")


async def decode_bytes(
    body: bytes | list[bytes], decoder: StreamDecoder,
) -> list[ResponseEvent]:
    """Decode a complete body in one go."""
    parts = [body] if isinstance(body, bytes) else body

    async def _iter() -> AsyncIterator[bytes]:
        for part in parts:
            yield part

    return [event async for event in decode_stream(_iter(), decoder)]
