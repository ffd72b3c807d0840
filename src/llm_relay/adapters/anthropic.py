"""Anthropic Messages protocol (``/v1/messages``)."""

from __future__ import annotations

import json
import logging
from typing import Any

from llm_relay.adapters.base import (
    WireConversation,
    apply_sampling,
    b64,
    bucket_parts,
    empty_schema,
    group_tool_results,
    join_url,
    json_headers,
    merge_extra,
    pair_tool_results,
)
from llm_relay.config import ModelConfig
from llm_relay.streaming.core import DecoderCore
from llm_relay.types import CallOptions, Message, Role, ToolCallPart, ToolMode

_logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_THINKING_BUDGET = 1024


class AnthropicAdapter:
    mode = "anthropic"

    def endpoint(self, base_url: str, model_id: str) -> str:
        base = base_url.rstrip("/")
        if base.endswith("/v1"):
            return f"{base}/messages"
        return join_url(base, "v1/messages")

    def headers(self, api_key: str, custom: dict[str, str] | None = None) -> dict[str, str]:
        return json_headers(
            {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}, custom,
        )

    def convert_messages(
        self, messages: list[Message], include_reasoning: bool = False,
    ) -> WireConversation:
        conv = WireConversation()
        out = conv.messages
        pending_calls: list[ToolCallPart] = []

        for m in group_tool_results(messages):
            b = bucket_parts(m)
            text = b.text

            if m.role == Role.SYSTEM:
                if text:
                    conv.system = f"{conv.system}\n{text}" if conv.system else text
                continue

            if m.role == Role.ASSISTANT:
                blocks: list[dict[str, Any]] = []
                if include_reasoning and b.thinking_text:
                    block: dict[str, Any] = {"type": "thinking", "thinking": b.thinking_text}
                    if b.thinking_signature:
                        block["signature"] = b.thinking_signature
                    blocks.append(block)
                if text:
                    blocks.append({"type": "text", "text": text})
                for tc in b.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.call_id,
                        "name": tc.name,
                        "input": tc.arguments or {},
                    })
                pending_calls = list(b.tool_calls)
                if blocks:
                    out.append({"role": "assistant", "content": blocks})
                continue

            blocks = []
            if b.tool_results or pending_calls:
                for r in pair_tool_results(pending_calls, b.tool_results):
                    blocks.append({
                        "type": "tool_result",
                        "tool_use_id": r.call_id,
                        "content": r.text or "",
                    })
                pending_calls = []
            if text:
                blocks.append({"type": "text", "text": text})
            for img in b.images:
                blocks.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": img.mime_type, "data": b64(img.data)},
                })
            if blocks:
                out.append({"role": "user", "content": blocks})
        return conv

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]:
        body["max_tokens"] = model.max_tokens or model.max_completion_tokens or DEFAULT_MAX_TOKENS
        apply_sampling(body, model, ("temperature", "top_p", "top_k"))

        thinking_type = model.thinking.type if model.thinking is not None else None
        if model.enable_thinking or thinking_type == "enabled":
            body["thinking"] = {
                "type": "enabled",
                "budget_tokens": model.thinking_budget or DEFAULT_THINKING_BUDGET,
            }

        if options is not None:
            if options.stop:
                body["stop_sequences"] = [options.stop] if isinstance(options.stop, str) else options.stop
            if options.tools:
                body["tools"] = [
                    {
                        "name": t.name,
                        "description": t.description,
                        "input_schema": t.parameters or empty_schema(),
                    }
                    for t in options.tools
                ]
                if options.tool_mode == ToolMode.REQUIRED:
                    body["tool_choice"] = (
                        {"type": "tool", "name": options.tools[0].name}
                        if len(options.tools) == 1
                        else {"type": "any"}
                    )
                elif options.tool_mode == ToolMode.NONE:
                    body["tool_choice"] = {"type": "none"}
                else:
                    body["tool_choice"] = {"type": "auto"}

        merge_extra(body, model.extra)
        # Messages only accepts max_tokens.
        completion = body.pop("max_completion_tokens", None)
        if completion is not None and "max_tokens" not in model.extra:
            body["max_tokens"] = completion
        return body

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]:
        conv = self.convert_messages(messages, model.include_reasoning_in_request)
        body: dict[str, Any] = {"model": model.id, "messages": conv.messages, "stream": True}
        if conv.system:
            body["system"] = conv.system
        return self.build_body(body, model, options)

    def new_decoder(self) -> AnthropicDecoder:
        return AnthropicDecoder()


class AnthropicDecoder:
    """Decode Messages API SSE events (``content_block_*``, ``message_*``)."""

    framing = "sse"

    def __init__(self) -> None:
        self.core = DecoderCore()
        self._block_types: dict[int, str] = {}

    def handle(self, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        index = payload.get("index") if isinstance(payload.get("index"), int) else 0

        if kind == "content_block_start":
            block = payload.get("content_block")
            if isinstance(block, dict):
                self._start_block(index, block)
        elif kind == "content_block_delta":
            delta = payload.get("delta")
            if isinstance(delta, dict):
                self._block_delta(index, delta)
        elif kind == "content_block_stop":
            block_type = self._block_types.pop(index, None)
            if block_type == "tool_use":
                self.core.flush_tool(index, strict=True)
            elif block_type == "thinking":
                self.core.end_thinking()
        elif kind == "message_delta":
            delta = payload.get("delta")
            if isinstance(delta, dict) and delta.get("stop_reason"):
                self.core.flush_tools(strict=True)
        elif kind == "message_stop":
            self.core.flush_tools(strict=False)
            self.core.end_thinking()
        elif kind == "error":
            _logger.error("Anthropic stream reported an error: %s", payload.get("error"))

    def _start_block(self, index: int, block: dict[str, Any]) -> None:
        block_type = block.get("type")
        if not isinstance(block_type, str):
            return
        self._block_types[index] = block_type
        if block_type == "text":
            self.core.emit_text(block.get("text") or "")
        elif block_type == "thinking":
            self.core.emit_thinking(block.get("thinking") or "", block.get("signature"))
        elif block_type == "tool_use":
            initial = block.get("input")
            self.core.end_thinking()
            self.core.feed_tool(
                index,
                call_id=block.get("id"),
                name=block.get("name"),
                args=json.dumps(initial) if isinstance(initial, dict) and initial else None,
            )

    def _block_delta(self, index: int, delta: dict[str, Any]) -> None:
        kind = delta.get("type")
        if kind == "text_delta":
            self.core.emit_text(delta.get("text") or "")
        elif kind == "thinking_delta":
            self.core.emit_thinking(delta.get("thinking") or "")
        elif kind == "signature_delta":
            self.core.emit_thinking("", delta.get("signature"))
        elif kind == "input_json_delta":
            partial = delta.get("partial_json")
            if isinstance(partial, str):
                self.core.feed_tool(index, args=partial)

    def on_done(self) -> None:
        self.core.flush_tools(strict=False)

    def finish(self) -> None:
        self.core.finish()
