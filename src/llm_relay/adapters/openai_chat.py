"""OpenAI Chat Completions protocol (``/chat/completions``)."""

from __future__ import annotations

import json
from typing import Any

from llm_relay.adapters.base import (
    WireConversation,
    apply_sampling,
    apply_stop,
    bucket_parts,
    data_url,
    dump_args,
    enforce_single_max_tokens,
    group_tool_results,
    join_url,
    json_headers,
    merge_extra,
    openai_function,
    set_if,
    tool_choice,
)
from llm_relay.config import ModelConfig
from llm_relay.streaming.core import DecoderCore
from llm_relay.types import CallOptions, Message, Role


REASONING_PLACEHOLDER = "Next step."
MAX_TOKEN_FIELDS = ("max_completion_tokens", "max_tokens")


class OpenAIChatAdapter:
    mode = "openai"

    def endpoint(self, base_url: str, model_id: str) -> str:
        return join_url(base_url, "chat/completions")

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
                    out.append({"role": "system", "content": text})
                continue

            if m.role == Role.ASSISTANT:
                msg: dict[str, Any] = {"role": "assistant"}
                if text:
                    msg["content"] = text
                if include_reasoning:
                    msg["reasoning_content"] = b.thinking_text or REASONING_PLACEHOLDER
                if b.tool_calls:
                    msg["tool_calls"] = [
                        {
                            "id": tc.call_id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": dump_args(tc.arguments)},
                        }
                        for tc in b.tool_calls
                    ]
                if len(msg) > 1:
                    out.append(msg)

            for tr in b.tool_results:
                out.append({"role": "tool", "tool_call_id": tr.call_id, "content": tr.text or ""})

            if m.role == Role.USER:
                if b.images:
                    content: list[dict[str, Any]] = []
                    if text:
                        content.append({"type": "text", "text": text})
                    for img in b.images:
                        content.append({"type": "image_url", "image_url": {"url": data_url(img)}})
                    out.append({"role": "user", "content": content})
                elif text:
                    out.append({"role": "user", "content": text})
        return conv

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]:
        apply_sampling(body, model, ("temperature", "top_p"))

        if model.max_completion_tokens is not None:
            body["max_completion_tokens"] = model.max_completion_tokens
        elif model.max_tokens is not None:
            body["max_tokens"] = model.max_tokens

        set_if(body, "reasoning_effort", model.reasoning_effort)
        if model.enable_thinking is not None:
            body["enable_thinking"] = model.enable_thinking
            set_if(body, "thinking_budget", model.thinking_budget)
        if model.thinking is not None and model.thinking.type is not None:
            body["thinking"] = {"type": model.thinking.type}
        if model.reasoning is not None and model.reasoning.enabled:
            r = model.reasoning
            reasoning: dict[str, Any] = {}
            if r.effort and r.effort != "auto":
                reasoning["effort"] = r.effort
            else:
                reasoning["max_tokens"] = r.max_tokens or 2000
            set_if(reasoning, "exclude", r.exclude)
            body["reasoning"] = reasoning

        apply_stop(body, options)
        if options is not None and options.tools:
            body["tools"] = [openai_function(t) for t in options.tools]
            body["tool_choice"] = tool_choice(
                options,
                {"type": "function", "function": {"name": options.tools[0].name}},
            )

        apply_sampling(
            body, model,
            ("top_k", "min_p", "frequency_penalty", "presence_penalty", "repetition_penalty"),
        )
        merge_extra(body, model.extra)
        enforce_single_max_tokens(body, model.extra, MAX_TOKEN_FIELDS)
        return body

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]:
        conv = self.convert_messages(messages, model.include_reasoning_in_request)
        body: dict[str, Any] = {"model": model.id, "messages": conv.messages, "stream": True}
        return self.build_body(body, model, options)

    def new_decoder(self) -> OpenAIChatDecoder:
        return OpenAIChatDecoder()


def _reasoning_detail_text(detail: Any) -> str:
    if not isinstance(detail, dict):
        return ""
    kind = detail.get("type")
    if kind == "reasoning.summary":
        return str(detail.get("summary") or "")
    if kind == "reasoning.text":
        return str(detail.get("text") or "")
    if kind == "reasoning.encrypted":
        return "[REDACTED]"
    return json.dumps(detail)


class OpenAIChatDecoder:
    """Decode ``chat.completion.chunk`` SSE payloads."""

    framing = "sse"

    def __init__(self) -> None:
        self.core = DecoderCore()

    def handle(self, payload: dict[str, Any]) -> None:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        self._handle_reasoning(choice, delta)

        content = delta.get("content")
        if content:
            self.core.emit_content(str(content))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            self.core.end_thinking()
            for tc in tool_calls:
                if not isinstance(tc, dict):
                    continue
                fn = tc.get("function") if isinstance(tc.get("function"), dict) else {}
                args = fn.get("arguments")
                self.core.feed_tool(
                    tc.get("index") if isinstance(tc.get("index"), int) else 0,
                    call_id=tc.get("id") if isinstance(tc.get("id"), str) else None,
                    name=fn.get("name") if isinstance(fn.get("name"), str) else None,
                    args=args if isinstance(args, str) else None,
                )

        if choice.get("finish_reason") in ("tool_calls", "stop"):
            self.core.flush_tools(strict=True)

    def _handle_reasoning(self, choice: dict[str, Any], delta: dict[str, Any]) -> None:
        details = delta.get("reasoning_details") or choice.get("reasoning_details")
        if isinstance(details, list) and details:
            ordered = sorted(
                details,
                key=lambda d: d.get("index", 0) if isinstance(d, dict) else 0,
            )
            for detail in ordered:
                self.core.emit_thinking(_reasoning_detail_text(detail))
            return

        value = choice.get("thinking")
        for key in ("thinking", "reasoning_content", "reasoning"):
            if value is not None:
                break
            value = delta.get(key)
        if isinstance(value, dict):
            text = value["text"] if isinstance(value.get("text"), str) else json.dumps(value)
        elif isinstance(value, str):
            text = value
        else:
            return
        self.core.emit_thinking(text)

    def on_done(self) -> None:
        self.core.flush_tools(strict=False)

    def finish(self) -> None:
        self.core.finish()
