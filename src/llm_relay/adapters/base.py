"""Adapter interface and the conversion helpers every adapter shares."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from llm_relay.config import ModelConfig
from llm_relay.streaming.core import StreamDecoder
from llm_relay.types import (
    CallOptions,
    DataPart,
    ImagePart,
    Message,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolMode,
    ToolResultPart,
    ToolSpec,
    synthesize_call_id,
)


@dataclass
class WireConversation:
    """Converted history: extracted system text plus provider messages."""

    system: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)


class ProtocolAdapter(Protocol):
    """Uniform capability of the five protocol adapters."""

    mode: str

    def endpoint(self, base_url: str, model_id: str) -> str: ...

    def headers(self, api_key: str, custom: dict[str, str] | None = None) -> dict[str, str]: ...

    def convert_messages(
        self, messages: list[Message], include_reasoning: bool = False,
    ) -> WireConversation: ...

    def build_body(
        self, body: dict[str, Any], model: ModelConfig, options: CallOptions | None = None,
    ) -> dict[str, Any]: ...

    def build_request(
        self, model: ModelConfig, messages: list[Message], options: CallOptions | None = None,
    ) -> dict[str, Any]: ...

    def new_decoder(self) -> StreamDecoder: ...


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------

@dataclass
class PartBuckets:
    """A message's parts sorted by kind, each in original order."""

    texts: list[str] = field(default_factory=list)
    images: list[ImagePart] = field(default_factory=list)
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    tool_results: list[ToolResultPart] = field(default_factory=list)
    thinking: list[ThinkingPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.texts).strip()

    @property
    def thinking_text(self) -> str:
        return "".join(p.text for p in self.thinking).strip()

    @property
    def thinking_signature(self) -> str | None:
        for p in reversed(self.thinking):
            if p.signature:
                return p.signature
        return None


def bucket_parts(message: Message) -> PartBuckets:
    """Sort parts by kind.  Tool calls without an id get one synthesized."""
    b = PartBuckets()
    for part in message.parts:
        if isinstance(part, TextPart):
            b.texts.append(part.text)
        elif isinstance(part, ImagePart):
            b.images.append(part)
        elif isinstance(part, ToolCallPart):
            if not part.call_id:
                part = ToolCallPart(synthesize_call_id(), part.name, part.arguments)
            b.tool_calls.append(part)
        elif isinstance(part, ToolResultPart):
            b.tool_results.append(part)
        elif isinstance(part, ThinkingPart):
            b.thinking.append(part)
        elif isinstance(part, DataPart) and part.mime_type.startswith("image/"):
            b.images.append(ImagePart(part.mime_type, part.data))
    return b


def group_tool_results(messages: Iterable[Message]) -> list[Message]:
    """Merge runs of consecutive tool-result-only messages into one turn."""
    out: list[Message] = []
    for m in messages:
        if m.is_tool_result_only and out and out[-1].is_tool_result_only:
            out[-1] = Message(out[-1].role, [*out[-1].parts, *m.parts])
        else:
            out.append(m)
    return out


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def data_url(image: ImagePart) -> str:
    return f"data:{image.mime_type};base64,{b64(image.data)}"


def dump_args(arguments: dict[str, Any] | None) -> str:
    try:
        return json.dumps(arguments or {}, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def pair_tool_results(
    calls: list[ToolCallPart], results: list[ToolResultPart],
) -> list[ToolResultPart]:
    """One result per call in call order, then any results for unknown calls.

    A call with no result gets an empty one so the counts always match.
    """
    by_id: dict[str, ToolResultPart] = {}
    for r in results:
        by_id.setdefault(r.call_id, r)
    paired = [by_id.pop(c.call_id, None) or ToolResultPart(c.call_id, "", c.name) for c in calls]
    seen = {c.call_id for c in calls}
    paired.extend(r for r in results if r.call_id not in seen)
    return paired


def call_names(messages: Iterable[Message]) -> dict[str, str]:
    """Map every tool call id in *messages* to its tool name."""
    names: dict[str, str] = {}
    for m in messages:
        for p in m.parts:
            if isinstance(p, ToolCallPart) and p.call_id:
                names[p.call_id] = p.name
    return names


# ---------------------------------------------------------------------------
# Body helpers
# ---------------------------------------------------------------------------

def empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


def openai_function(tool: ToolSpec) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters or empty_schema(),
        },
    }


def tool_choice(
    options: CallOptions, pinned: Any, required: Any = "required",
) -> Any:
    """Map the canonical tool mode; *pinned* is used for required with one tool."""
    if options.tool_mode == ToolMode.NONE:
        return "none"
    if options.tool_mode == ToolMode.REQUIRED:
        return pinned if len(options.tools) == 1 else required
    return "auto"


def set_if(body: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        body[key] = value


SAMPLING_FIELDS = (
    "temperature",
    "top_p",
    "top_k",
    "min_p",
    "frequency_penalty",
    "presence_penalty",
    "repetition_penalty",
)


def apply_sampling(
    body: dict[str, Any], model: ModelConfig, fields: Iterable[str] = SAMPLING_FIELDS,
) -> None:
    for name in fields:
        set_if(body, name, getattr(model, name))


def apply_stop(body: dict[str, Any], options: CallOptions | None, key: str = "stop") -> None:
    if options is not None and isinstance(options.stop, (str, list)) and options.stop:
        body[key] = options.stop


def merge_extra(
    body: dict[str, Any], extra: dict[str, Any], deep_keys: Iterable[str] = (),
) -> dict[str, Any]:
    """Merge user ``extra`` last; keys in *deep_keys* merge dicts shallowly."""
    deep = set(deep_keys)
    for key, value in extra.items():
        if value is None:
            continue
        if key in deep and isinstance(value, dict) and isinstance(body.get(key), dict):
            body[key] = {**body[key], **value}
        else:
            body[key] = value
    return body


def enforce_single_max_tokens(
    body: dict[str, Any], extra: dict[str, Any], variants: tuple[str, ...],
) -> None:
    """Keep at most one of *variants* in *body*.

    A variant the user put in ``extra`` wins; otherwise the first variant
    in *variants* order is kept.
    """
    present = [k for k in variants if k in body]
    if len(present) < 2:
        return
    keep = next((k for k in present if k in extra), present[0])
    for k in present:
        if k != keep:
            del body[k]


def json_headers(
    auth: dict[str, str], custom: dict[str, str] | None = None,
) -> dict[str, str]:
    """Auth headers plus JSON content type; per-model headers go last."""
    headers = {"Content-Type": "application/json", **auth}
    if custom:
        headers.update(custom)
    return headers


def join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"
