"""Ollama native chat protocol (``/api/chat``, JSON lines)."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.adapters.base import (
    WireConversation,
    b64,
    bucket_parts,
    call_names,
    group_tool_results,
    join_url,
    json_headers,
    merge_extra,
    openai_function,
)
from llm_relay.config import ModelConfig
from llm_relay.streaming.core import DecoderCore
from llm_relay.streaming.tool_buffer import parse_json_object
from llm_relay.types import CallOptions, Message, Role, ToolCallPart, synthesize_call_id

_logger = logging.getLogger(__name__)

# ModelConfig field -> Ollama ``options`` key
OPTION_FIELDS = (
    ("temperature", "temperature"),
    ("top_p", "top_p"),
    ("top_k", "top_k"),
    ("min_p", "min_p"),
    ("frequency_penalty", "frequency_penalty"),
    ("presence_penalty", "presence_penalty"),
    ("repetition_penalty", "repeat_penalty"),
)


class OllamaAdapter:
    mode = "ollama"

    def endpoint(self, base_url: str, model_id: str) -> str:
        return join_url(base_url, "api/chat")

    def headers(self, api_key: str, custom: dict[str, str] | None = None) -> dict[str, str]:
        auth = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        return json_headers(auth, custom)

    def convert_messages(
        self, messages: list[Message], include_reasoning: bool = False,
    ) -> WireConversation:
        conv = WireConversation()
        out = conv.messages
        names = call_names(messages)

        for m in group_tool_results(messages):
            b = bucket_parts(m)
            text = b.text

            for tr in b.tool_results:
                out.append({
                    "role": "tool",
                    "content": tr.text,
                    "tool_name": names.get(tr.call_id) or tr.name or "unknown",
                })

            if not (text or b.images or b.tool_calls):
                continue
            role = "user" if m.role == Role.TOOL else m.role.value
            if m.role == Role.SYSTEM:
                conv.system = f"{conv.system}\n{text}" if conv.system else text
            msg: dict[str, Any] = {"role": role, "content": text}
            if b.images:
                msg["images"] = [b64(img.data) for img in b.images]
            if m.role == Role.ASSISTANT:
                if include_reasoning and b.thinking_text:
                    msg["thinking"] = b.thinking_text
                if b.tool_calls:
                    msg["tool_calls"] = [
                        {"function": {"name": tc.name, "arguments": tc.arguments or {}}}
                        for tc in b.tool_calls
                    ]
            out.append(msg)
        return conv

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]:
        opts: dict[str, Any] = {}
        for src, dst in OPTION_FIELDS:
            value = getattr(model, src)
            if value is not None:
                opts[dst] = value
        max_output = model.max_tokens if model.max_tokens is not None else model.max_completion_tokens
        if max_output is not None:
            opts["num_predict"] = max_output
        if options is not None and options.stop:
            opts["stop"] = [options.stop] if isinstance(options.stop, str) else options.stop
        if opts:
            body["options"] = opts

        if model.enable_thinking is not None:
            body["think"] = model.enable_thinking

        if options is not None and options.tools:
            body["tools"] = [openai_function(t) for t in options.tools]

        return merge_extra(body, model.extra)

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]:
        conv = self.convert_messages(messages, model.include_reasoning_in_request)
        body: dict[str, Any] = {"model": model.id, "messages": conv.messages, "stream": True}
        return self.build_body(body, model, options)

    def new_decoder(self) -> OllamaDecoder:
        return OllamaDecoder()


class OllamaDecoder:
    """Decode one JSON chat chunk per line."""

    framing = "jsonl"

    def __init__(self) -> None:
        self.core = DecoderCore()

    def handle(self, payload: dict[str, Any]) -> None:
        message = payload.get("message")
        if isinstance(message, dict):
            thinking = message.get("thinking")
            if isinstance(thinking, str) and thinking:
                self.core.emit_thinking(thinking)

            tool_calls = message.get("tool_calls")
            if isinstance(tool_calls, list):
                for tc in tool_calls:
                    part = self._tool_call(tc)
                    if part is not None:
                        self.core.emit_tool_call(part)

            content = message.get("content")
            if isinstance(content, str) and content:
                self.core.emit_content(content)

        if payload.get("done") is True:
            self.core.end_thinking()

    @staticmethod
    def _tool_call(tc: Any) -> ToolCallPart | None:
        fn = tc.get("function") if isinstance(tc, dict) else None
        if not isinstance(fn, dict) or not isinstance(fn.get("name"), str):
            return None
        args = fn.get("arguments")
        if isinstance(args, str):
            args = parse_json_object(args) if args.strip() else {}
            if args is None:
                _logger.debug("Dropping tool call %s with invalid arguments", fn["name"])
                return None
        elif not isinstance(args, dict):
            args = {}
        return ToolCallPart(synthesize_call_id("ollama_tc"), fn["name"], args)

    def on_done(self) -> None:
        self.core.flush_tools(strict=False)

    def finish(self) -> None:
        self.core.finish()
