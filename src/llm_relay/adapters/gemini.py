"""Google Gemini ``generateContent`` protocol."""

from __future__ import annotations

import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from llm_relay.adapters.base import (
    WireConversation,
    b64,
    bucket_parts,
    group_tool_results,
    json_headers,
    merge_extra,
    pair_tool_results,
)
from llm_relay.adapters.gemini_schema import to_gemini_schema
from llm_relay.config import ModelConfig
from llm_relay.errors import ConfigError
from llm_relay.streaming.core import DecoderCore
from llm_relay.streaming.reconcile import CumulativeText
from llm_relay.streaming.tool_buffer import parse_json_object
from llm_relay.types import (
    CallOptions,
    Message,
    Role,
    ToolCallPart,
    ToolMode,
    ToolResultPart,
    synthesize_call_id,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool call metadata cache
# ---------------------------------------------------------------------------

@dataclass
class ToolCallMeta:
    name: str
    signature: str | None = None
    thought: str | None = None
    created_at: float = field(default_factory=time.time)


class ToolCallMetaCache:
    """Bounded ``call_id -> ToolCallMeta`` map shared across requests.

    Thinking models require the ``thoughtSignature`` returned with a
    function call to be echoed back with that call on the next turn.  When
    the cache grows past *max_entries* the oldest inserted entries are
    dropped until *prune_to* remain.
    """

    def __init__(self, max_entries: int = 2000, prune_to: int = 1500) -> None:
        self.max_entries = max_entries
        self.prune_to = prune_to
        self._entries: OrderedDict[str, ToolCallMeta] = OrderedDict()

    def get(self, call_id: str) -> ToolCallMeta | None:
        return self._entries.get(call_id)

    def put(self, call_id: str, meta: ToolCallMeta) -> None:
        self._entries[call_id] = meta
        if len(self._entries) > self.max_entries:
            while len(self._entries) > self.prune_to:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._entries


DEFAULT_META_CACHE = ToolCallMetaCache()


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

_METHOD_RE = re.compile(r":(streamGenerateContent|generateContent)$", re.IGNORECASE)


def gemini_model_path(model_id: str) -> str:
    raw = (model_id or "").strip()
    if raw.startswith(("models/", "tunedModels/")):
        return raw
    last = [seg for seg in raw.split("/") if seg]
    name = last[-1] if last else ""
    if not name or ".." in name or "?" in name or "&" in name:
        raise ConfigError(f"Invalid Gemini model id: {model_id!r}")
    return f"models/{name}"


def gemini_generate_url(base_url: str, model_id: str, stream: bool = True) -> str:
    """Build the generateContent URL.

    Accepts a bare domain, a base already ending in ``/v1beta`` (or
    ``/v1beta/models``) and a full ``...:generateContent`` endpoint.
    """
    value = (base_url or "").strip()
    if not value:
        raise ConfigError("Invalid base URL configuration.")
    if not re.match(r"^https?://", value, re.IGNORECASE):
        value = f"https://{value}"
    parts = urlsplit(value)
    path = parts.path.rstrip("/")
    method = "streamGenerateContent" if stream else "generateContent"

    if _METHOD_RE.search(path):
        path = _METHOD_RE.sub(f":{method}", path)
    else:
        if path.endswith("/models"):
            path = path[: -len("/models")]
        if "/v1beta/" not in f"{path}/".lower():
            path = f"{path}/v1beta"
        path = f"{path}/{gemini_model_path(model_id)}:{method}"

    return urlunsplit((parts.scheme, parts.netloc, path, "alt=sse" if stream else "", ""))


def gemini_models_url(base_url: str) -> str:
    trimmed = base_url.rstrip("/")
    if trimmed.endswith("/v1beta/models"):
        return trimmed
    if trimmed.endswith("/v1beta"):
        return f"{trimmed}/models"
    return f"{trimmed}/v1beta/models"


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class GeminiAdapter:
    mode = "gemini"

    def __init__(self, meta: ToolCallMetaCache | None = None) -> None:
        self.meta = meta if meta is not None else DEFAULT_META_CACHE

    def endpoint(self, base_url: str, model_id: str) -> str:
        return gemini_generate_url(base_url, model_id, stream=True)

    def headers(self, api_key: str, custom: dict[str, str] | None = None) -> dict[str, str]:
        return json_headers({"x-goog-api-key": api_key}, custom)

    def _function_response(
        self, result: ToolResultPart, names: dict[str, str],
    ) -> dict[str, Any]:
        meta = self.meta.get(result.call_id)
        name = names.get(result.call_id) or (meta.name if meta else "") or result.name or result.call_id
        parsed = parse_json_object(result.text) if result.text else None
        response = parsed if parsed is not None else {"output": result.text or ""}
        return {"functionResponse": {"name": name, "response": response}}

    def _function_call(self, call: ToolCallPart) -> dict[str, Any]:
        part: dict[str, Any] = {"functionCall": {"name": call.name, "args": call.arguments or {}}}
        meta = self.meta.get(call.call_id)
        if meta is not None:
            if meta.signature:
                part["thoughtSignature"] = meta.signature
            if meta.thought:
                part["thought"] = meta.thought
        return part

    def convert_messages(
        self, messages: list[Message], include_reasoning: bool = False,
    ) -> WireConversation:
        conv = WireConversation()
        out = conv.messages
        names: dict[str, str] = {}
        pending_calls: list[ToolCallPart] = []

        for m in group_tool_results(messages):
            b = bucket_parts(m)
            text = b.text

            if m.role == Role.SYSTEM:
                if text:
                    conv.system = f"{conv.system}\n{text}" if conv.system else text
                continue

            if m.role == Role.ASSISTANT:
                parts: list[dict[str, Any]] = []
                if text:
                    parts.append({"text": text})
                for tc in b.tool_calls:
                    names[tc.call_id] = tc.name
                    parts.append(self._function_call(tc))
                pending_calls = list(b.tool_calls)
                if parts:
                    out.append({"role": "model", "parts": parts})
                continue

            parts = []
            if b.tool_results or pending_calls:
                for r in pair_tool_results(pending_calls, b.tool_results):
                    parts.append(self._function_response(r, names))
                pending_calls = []
            if text:
                parts.append({"text": text})
            for img in b.images:
                parts.append({"inlineData": {"mimeType": img.mime_type, "data": b64(img.data)}})
            if parts:
                out.append({"role": "user", "parts": parts})
        return conv

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]:
        gen: dict[str, Any] = dict(body.get("generationConfig") or {})
        for src, dst in (
            ("temperature", "temperature"),
            ("top_p", "topP"),
            ("top_k", "topK"),
            ("presence_penalty", "presencePenalty"),
            ("frequency_penalty", "frequencyPenalty"),
        ):
            value = getattr(model, src)
            if value is not None:
                gen[dst] = value

        max_output = model.max_completion_tokens if model.max_completion_tokens is not None else model.max_tokens
        if max_output is not None:
            gen["maxOutputTokens"] = max_output

        if options is not None and options.stop:
            stops = [options.stop] if isinstance(options.stop, str) else options.stop
            gen["stopSequences"] = [s for s in stops if isinstance(s, str) and s]

        if model.enable_thinking is not None or model.thinking_budget is not None:
            thinking: dict[str, Any] = {"includeThoughts": model.enable_thinking is not False}
            if model.thinking_budget is not None:
                thinking["thinkingBudget"] = model.thinking_budget
            gen["thinkingConfig"] = thinking

        if gen:
            body["generationConfig"] = gen

        if options is not None and options.tools:
            decls = []
            for t in options.tools:
                if not t.name.strip():
                    continue
                decl: dict[str, Any] = {"name": t.name}
                if t.description.strip():
                    decl["description"] = t.description
                if t.parameters:
                    decl["parameters"] = to_gemini_schema(t.parameters)
                decls.append(decl)
            if decls:
                body["tools"] = [{"functionDeclarations": decls}]
                body["toolConfig"] = {"functionCallingConfig": self._calling_config(options)}

        return merge_extra(body, model.extra)

    @staticmethod
    def _calling_config(options: CallOptions) -> dict[str, Any]:
        if options.tool_mode == ToolMode.NONE:
            return {"mode": "NONE"}
        if options.tool_mode == ToolMode.REQUIRED:
            if len(options.tools) == 1:
                return {"mode": "ANY", "allowedFunctionNames": [options.tools[0].name]}
            return {"mode": "ANY"}
        return {"mode": "AUTO"}

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]:
        conv = self.convert_messages(messages, model.include_reasoning_in_request)
        body: dict[str, Any] = {"contents": conv.messages}
        if conv.system:
            body["systemInstruction"] = {"role": "user", "parts": [{"text": conv.system}]}
        return self.build_body(body, model, options)

    def new_decoder(self) -> GeminiDecoder:
        return GeminiDecoder(self.meta)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

def _signature(*objs: dict[str, Any]) -> str:
    for obj in objs:
        for key in ("thoughtSignature", "thought_signature"):
            if isinstance(obj.get(key), str) and obj[key]:
                return obj[key]
    return ""


class GeminiDecoder:
    """Decode ``streamGenerateContent?alt=sse`` payloads.

    Gemini may resend text and thoughts cumulatively and may repeat a
    function call in later chunks, so calls are deduplicated by name and
    arguments within the response.
    """

    framing = "sse"

    def __init__(self, meta: ToolCallMetaCache) -> None:
        self.core = DecoderCore()
        self.meta = meta
        self._text = CumulativeText()
        self._thought = CumulativeText()
        self._summary = CumulativeText()
        self._signature = ""
        self._call_ids: dict[str, str] = {}

    def _reset_reasoning(self) -> None:
        self._thought.reset()
        self._summary.reset()
        self._signature = ""

    def handle(self, payload: dict[str, Any]) -> None:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return

        for p in parts:
            if not isinstance(p, dict):
                continue
            fc = p.get("functionCall")
            if isinstance(fc, dict):
                self._function_call(p, fc)
                continue
            if p.get("thought") is True and isinstance(p.get("text"), str):
                self.core.emit_thinking(self._summary.update(p["text"]))
            if isinstance(p.get("thought"), str) and p["thought"]:
                self.core.emit_thinking(self._thought.update(p["thought"]))
            sig = _signature(p)
            if sig:
                self._signature = sig

        joined = "".join(
            p["text"] for p in parts
            if isinstance(p, dict) and p.get("thought") is not True and isinstance(p.get("text"), str)
        )
        if joined:
            delta = self._text.update(joined)
            if delta:
                self.core.end_thinking()
                self._reset_reasoning()
                self.core.emit_text(delta)

    def _function_call(self, part: dict[str, Any], fc: dict[str, Any]) -> None:
        name = fc.get("name").strip() if isinstance(fc.get("name"), str) else ""
        if not name:
            return
        args = fc.get("args") if isinstance(fc.get("args"), dict) else {}
        key = f"{name}\n{json.dumps(args, sort_keys=True)}"

        signature = _signature(part, fc) or self._signature
        thought = next(
            (o["thought"] for o in (part, fc) if isinstance(o.get("thought"), str) and o["thought"]),
            self._thought.seen,
        )
        if thought:
            self.core.emit_thinking(self._thought.update(thought))

        call_id = self._call_ids.get(key)
        is_new = call_id is None
        if call_id is None:
            call_id = synthesize_call_id("call")
            self._call_ids[key] = call_id
        self.meta.put(call_id, ToolCallMeta(name, signature or None, thought or None))

        if not is_new:
            _logger.debug("Ignoring repeated function call %s (%s)", name, call_id)
            return
        self.core.end_thinking()
        self._reset_reasoning()
        self.core.emit_tool_call(ToolCallPart(call_id, name, args))

    def on_done(self) -> None:
        self.core.flush_tools(strict=False)

    def finish(self) -> None:
        self.core.finish()
