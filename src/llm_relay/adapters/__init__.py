"""Protocol adapters, one per ``api_mode``."""

from __future__ import annotations

from llm_relay.adapters.anthropic import AnthropicAdapter
from llm_relay.adapters.base import ProtocolAdapter, WireConversation
from llm_relay.adapters.gemini import GeminiAdapter, ToolCallMetaCache
from llm_relay.adapters.ollama import OllamaAdapter
from llm_relay.adapters.openai_chat import OpenAIChatAdapter
from llm_relay.adapters.openai_responses import OpenAIResponsesAdapter
from llm_relay.errors import ConfigError

API_MODES = ("openai", "openai-responses", "anthropic", "gemini", "ollama")


def get_adapter(mode: str, gemini_meta: ToolCallMetaCache | None = None) -> ProtocolAdapter:
    """Return the adapter for *mode*; unknown modes raise ``ConfigError``."""
    if mode == "openai":
        return OpenAIChatAdapter()
    if mode == "openai-responses":
        return OpenAIResponsesAdapter()
    if mode == "anthropic":
        return AnthropicAdapter()
    if mode == "gemini":
        return GeminiAdapter(gemini_meta)
    if mode == "ollama":
        return OllamaAdapter()
    raise ConfigError(f"Unknown api mode: {mode!r}")


__all__ = [
    "API_MODES",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAIChatAdapter",
    "OpenAIResponsesAdapter",
    "ProtocolAdapter",
    "ToolCallMetaCache",
    "WireConversation",
    "get_adapter",
]
