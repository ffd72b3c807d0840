"""Canonical message, tool and event types shared by every adapter."""

from __future__ import annotations

import enum
import os
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Roles and parts
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Conversation roles understood by the canonical model."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    """Raw image bytes; adapters base64 them into their own envelope."""

    mime_type: str
    data: bytes


@dataclass
class ToolCallPart:
    """A tool invocation requested by the model.

    Used both inside assistant messages and as a streamed output event.
    """

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPart:
    """Result of running a tool, paired to its call by ``call_id``."""

    call_id: str
    text: str
    name: str = ""


@dataclass
class ThinkingPart:
    """Reasoning text from an earlier assistant turn.

    ``signature`` is the opaque continuation token some providers require
    to be echoed back alongside the reasoning.
    """

    text: str
    signature: str | None = None


@dataclass
class DataPart:
    """Opaque payload (e.g. a continuity marker)."""

    mime_type: str
    data: bytes


Part = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart, ThinkingPart, DataPart]


@dataclass
class Message:
    """One conversation turn: a role and its ordered parts."""

    role: Role
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, [TextPart(text)])

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(Role.USER, [TextPart(text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(Role.ASSISTANT, [TextPart(text)])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def is_tool_result_only(self) -> bool:
        """True when the message carries tool results and nothing else."""
        if not self.parts:
            return False
        return all(isinstance(p, ToolResultPart) for p in self.parts)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolMode(str, enum.Enum):
    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"


@dataclass
class ToolSpec:
    """Tool definition with a JSON Schema ``parameters`` object."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


@dataclass
class CallOptions:
    """Per-call options that are not part of the model configuration."""

    tools: list[ToolSpec] = field(default_factory=list)
    tool_mode: ToolMode = ToolMode.AUTO
    stop: str | list[str] | None = None


# ---------------------------------------------------------------------------
# Output events
# ---------------------------------------------------------------------------

@dataclass
class TextDelta:
    text: str


@dataclass
class ThinkingDelta:
    text: str


@dataclass
class ThinkingEnd:
    """Closes the current reasoning segment."""

    signature: str | None = None


@dataclass
class ResponseEnd:
    """Terminal event of every stream: ``"stop"`` or ``"cancelled"``."""

    reason: str = "stop"


ResponseEvent = Union[TextDelta, ThinkingDelta, ThinkingEnd, ToolCallPart, DataPart, ResponseEnd]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ID_ALPHABET = string.ascii_lowercase + string.digits
_rng = random.Random(os.urandom(16))


def random_suffix(length: int = 6) -> str:
    return "".join(_rng.choice(_ID_ALPHABET) for _ in range(length))


def synthesize_call_id(prefix: str = "") -> str:
    """Return a process-unique id built from a timestamp and random suffix."""
    stamp = int(time.time() * 1000)
    if prefix:
        return f"{prefix}_{stamp}_{random_suffix()}"
    return f"{stamp}-{random_suffix()}"
