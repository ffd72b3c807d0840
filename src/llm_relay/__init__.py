"""llm-relay: one canonical chat model over many LLM wire protocols."""

from llm_relay.config import ModelConfig, RelayConfig, RetryConfig, load_config
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import (
    ConfigError,
    DecodeError,
    HttpStatusError,
    RelayError,
    RequestCancelled,
    TransportError,
)
from llm_relay.types import (
    CallOptions,
    DataPart,
    ImagePart,
    Message,
    ResponseEnd,
    Role,
    TextDelta,
    TextPart,
    ThinkingDelta,
    ThinkingEnd,
    ThinkingPart,
    ToolCallPart,
    ToolMode,
    ToolResultPart,
    ToolSpec,
)

__version__ = "0.3.0"

__all__ = [
    "CallOptions",
    "ConfigError",
    "DataPart",
    "DecodeError",
    "HttpStatusError",
    "ImagePart",
    "Message",
    "ModelConfig",
    "RelayConfig",
    "RelayError",
    "RequestCancelled",
    "RequestDispatcher",
    "ResponseEnd",
    "RetryConfig",
    "Role",
    "TextDelta",
    "TextPart",
    "ThinkingDelta",
    "ThinkingEnd",
    "ThinkingPart",
    "ToolCallPart",
    "ToolMode",
    "ToolResultPart",
    "ToolSpec",
    "TransportError",
    "load_config",
]
