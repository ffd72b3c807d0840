"""OpenAI Responses protocol (``/responses``)."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.adapters.base import (
    WireConversation,
    apply_sampling,
    apply_stop,
    bucket_parts,
    data_url,
    dump_args,
    empty_schema,
    enforce_single_max_tokens,
    group_tool_results,
    join_url,
    json_headers,
    merge_extra,
    tool_choice,
)
from llm_relay.config import ModelConfig
from llm_relay.streaming.core import DecoderCore
from llm_relay.streaming.reconcile import CumulativeText
from llm_relay.types import CallOptions, Message, Role, synthesize_call_id

_logger = logging.getLogger(__name__)

MAX_TOKEN_FIELDS = ("max_output_tokens", "max_completion_tokens", "max_tokens")

REASONING_FAMILIES = (
    "reasoning",
    "reasoning_text",
    "reasoning_summary",
    "reasoning_summary_text",
    "thinking",
    "thinking_summary",
    "thought",
    "thought_summary",
)
REASONING_DELTA_EVENTS = frozenset(f"response.{f}.delta" for f in REASONING_FAMILIES)
REASONING_DONE_EVENTS = frozenset(f"response.{f}.done" for f in REASONING_FAMILIES)

# Values some gateways echo in reasoning events that are settings, not text.
REASONING_CONFIG_VALUES = frozenset(
    {"high", "medium", "low", "minimal", "auto", "none", "detailed", "concise"}
)


class OpenAIResponsesAdapter:
    mode = "openai-responses"

    def endpoint(self, base_url: str, model_id: str) -> str:
        return join_url(base_url, "responses")

    def headers(self, api_key: str, custom: dict[str, str] | None = None) -> dict[str, str]:
        return json_headers({"Authorization": f"Bearer {api_key}"}, custom)

    def convert_messages(
        self, messages: list[Message], include_reasoning: bool = False,
    ) -> WireConversation:
        conv = WireConversation()
        out = conv.messages
        for m in group_tool_results(messages):
            b = bucket_parts(m)
            text = b.text

            if m.role == Role.SYSTEM:
                if text:
                    conv.system = f"{conv.system}\n{text}" if conv.system else text
                continue

            if m.role == Role.ASSISTANT:
                if text:
                    out.append({
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": text}],
                        "type": "message",
                        "id": synthesize_call_id("msg"),
                        "status": "completed",
                    })
                if include_reasoning and b.thinking_text:
                    out.append({
                        "type": "reasoning",
                        "summary": [{"type": "summary_text", "text": b.thinking_text}],
                        "id": synthesize_call_id("tk"),
                        "status": "completed",
                    })
                for tc in b.tool_calls:
                    out.append({
                        "type": "function_call",
                        "id": f"fc_{tc.call_id}",
                        "call_id": tc.call_id,
                        "name": tc.name,
                        "arguments": dump_args(tc.arguments),
                        "status": "completed",
                    })

            for tr in b.tool_results:
                if not tr.call_id:
                    continue
                out.append({
                    "type": "function_call_output",
                    "call_id": tr.call_id,
                    "output": tr.text or "",
                    "id": synthesize_call_id("fco"),
                    "status": "completed",
                })

            if m.role == Role.USER:
                content: list[dict[str, Any]] = []
                if text:
                    content.append({"type": "input_text", "text": text})
                for img in b.images:
                    content.append({"type": "input_image", "image_url": data_url(img), "detail": "auto"})
                if content:
                    out.append({
                        "role": "user",
                        "content": content,
                        "type": "message",
                        "status": "completed",
                    })

        if out and out[-1].get("type") == "message" and out[-1].get("role") == "user":
            out[-1]["status"] = "incomplete"
        return conv

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]:
        apply_sampling(body, model, ("temperature", "top_p"))

        if model.max_completion_tokens is not None:
            body["max_output_tokens"] = model.max_completion_tokens
        elif model.max_tokens is not None:
            body["max_output_tokens"] = model.max_tokens

        if model.reasoning_effort is not None:
            existing = body.get("reasoning") if isinstance(body.get("reasoning"), dict) else {}
            body["reasoning"] = {**existing, "effort": model.reasoning_effort}
        if model.thinking is not None and model.thinking.type is not None:
            body["thinking"] = {"type": model.thinking.type}

        apply_stop(body, options)
        if options is not None and options.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters or empty_schema(),
                }
                for t in options.tools
            ]
            body["tool_choice"] = tool_choice(
                options, {"type": "function", "name": options.tools[0].name},
            )

        merge_extra(body, model.extra, deep_keys=("reasoning",))
        enforce_single_max_tokens(body, model.extra, MAX_TOKEN_FIELDS)
        return body

    def body_for(
        self,
        model: ModelConfig,
        system: str,
        items: list[dict[str, Any]],
        options: CallOptions | None = None,
        previous_response_id: str | None = None,
    ) -> dict[str, Any]:
        """Assemble a request body from already converted input items."""
        body: dict[str, Any] = {"model": model.id, "input": items, "stream": True}
        if system:
            body["instructions"] = system
        if previous_response_id:
            body["previous_response_id"] = previous_response_id
        return self.build_body(body, model, options)

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]:
        conv = self.convert_messages(messages, model.include_reasoning_in_request)
        return self.body_for(model, conv.system, conv.messages, options)

    def new_decoder(self) -> OpenAIResponsesDecoder:
        return OpenAIResponsesDecoder()


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "thinking", "reasoning", "summary", "value"):
            if isinstance(value.get(key), str):
                return value[key]
    return ""


def _call_id(obj: dict[str, Any]) -> str | None:
    for key in ("call_id", "callId", "id", "item_id"):
        if isinstance(obj.get(key), str) and obj[key]:
            return obj[key]
    return None


class OpenAIResponsesDecoder:
    """Decode Responses API SSE events.

    ``response_id`` is captured from the first event that carries one so
    the caller can record a continuity marker.
    """

    framing = "sse"

    def __init__(self) -> None:
        self.core = DecoderCore()
        self.response_id: str | None = None
        self._text = CumulativeText()
        self._refusal = CumulativeText()
        self._reasoning = CumulativeText()

    def handle(self, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        if not isinstance(kind, str) or not kind:
            return
        self._capture_response_id(payload)

        if kind == "error":
            _logger.error("Responses stream reported an error: %s", payload)
        elif kind in ("response.output_text.delta", "response.refusal.delta"):
            delta = _coerce_text(payload.get("delta"))
            tracker = self._text if kind == "response.output_text.delta" else self._refusal
            tracker.extend(delta)
            self.core.emit_content(delta)
        elif kind in ("response.output_text.done", "response.refusal.done"):
            tracker = self._text if kind == "response.output_text.done" else self._refusal
            field = "text" if kind == "response.output_text.done" else "refusal"
            self.core.emit_content(tracker.update(_coerce_text(payload.get(field))))
            tracker.reset()
        elif kind in REASONING_DELTA_EVENTS:
            text = self._reasoning_text(payload)
            self._reasoning.extend(text)
            self.core.emit_thinking(text)
        elif kind in REASONING_DONE_EVENTS:
            self.core.emit_thinking(self._reasoning.update(self._reasoning_text(payload)))
            self._reasoning.reset()
            self.core.end_thinking()
        elif kind in ("response.function_call_arguments.delta", "response.function_call_arguments.done"):
            self._handle_arguments(kind, payload)
        elif kind in ("response.output_item.added", "response.output_item.done"):
            self._handle_output_item(kind, payload)
        elif kind in ("response.completed", "response.done"):
            self.core.flush_tools(strict=False)
            self.core.end_thinking()

    def _capture_response_id(self, payload: dict[str, Any]) -> None:
        if self.response_id:
            return
        rid = payload.get("response_id")
        if isinstance(rid, str) and rid.strip():
            self.response_id = rid
            return
        response = payload.get("response")
        if isinstance(response, dict):
            rid = response.get("id")
            if isinstance(rid, str) and rid.strip():
                self.response_id = rid

    def _reasoning_text(self, payload: dict[str, Any]) -> str:
        for key in ("delta", "text", "reasoning", "summary"):
            text = _coerce_text(payload.get(key))
            if text and text.strip().lower() not in REASONING_CONFIG_VALUES:
                return text
        return ""

    def _handle_arguments(self, kind: str, payload: dict[str, Any]) -> None:
        self.core.end_thinking()
        idx = payload.get("output_index") if isinstance(payload.get("output_index"), int) else 0
        done = kind.endswith(".done")
        chunk = payload.get("arguments" if done else "delta")
        self.core.feed_tool(
            idx,
            call_id=_call_id(payload),
            name=payload.get("name") if isinstance(payload.get("name"), str) else None,
            args=chunk if isinstance(chunk, str) else None,
            replace=done,
        )
        if done:
            self.core.flush_tool(idx, strict=True)

    def _handle_output_item(self, kind: str, payload: dict[str, Any]) -> None:
        item = payload.get("item")
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return
        self.core.end_thinking()
        idx = payload.get("output_index") if isinstance(payload.get("output_index"), int) else 0
        fn = item.get("function") if isinstance(item.get("function"), dict) else {}
        name = item.get("name") or fn.get("name")
        args = item.get("arguments") or fn.get("arguments")
        self.core.feed_tool(
            idx,
            call_id=_call_id(item),
            name=name if isinstance(name, str) else None,
            args=args if isinstance(args, str) and args else None,
            replace=True,
        )
        if kind.endswith(".done"):
            self.core.flush_tool(idx, strict=True)

    def on_done(self) -> None:
        self.core.flush_tools(strict=False)

    def finish(self) -> None:
        self.core.finish()
