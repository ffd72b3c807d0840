"""Configuration management for llm-relay."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from llm_relay.errors import ConfigError

_logger = logging.getLogger(__name__)

ApiMode = Literal["openai", "openai-responses", "anthropic", "gemini", "ollama"]

DEFAULT_RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryConfig(BaseModel):
    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1)
    interval_ms: int = Field(default=1000, ge=0)
    status_codes: list[int] = Field(default_factory=list)  # unioned with the defaults

    @property
    def retryable_status_codes(self) -> frozenset[int]:
        return DEFAULT_RETRY_STATUS_CODES | frozenset(self.status_codes)


class ThinkingConfig(BaseModel):
    type: str | None = None


class ReasoningConfig(BaseModel):
    """OpenRouter-style ``reasoning`` object."""

    enabled: bool = True
    effort: str | None = None
    max_tokens: int | None = None
    exclude: bool | None = None


class ModelConfig(BaseModel):
    """A user-declared model and how to talk to it."""

    id: str
    config_id: str | None = None
    display_name: str | None = None
    owned_by: str | None = None  # provider name, selects a provider-specific key
    base_url: str | None = None
    api_mode: ApiMode = "openai"
    headers: dict[str, str] = Field(default_factory=dict)
    delay: int | None = None  # ms between requests; overrides the global delay

    context_length: int | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    min_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    repetition_penalty: float | None = None

    reasoning_effort: str | None = None
    enable_thinking: bool | None = None
    thinking_budget: int | None = None
    thinking: ThinkingConfig | None = None
    reasoning: ReasoningConfig | None = None
    include_reasoning_in_request: bool = False

    use_for_commit_generation: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)  # merged into every request body

    @property
    def full_id(self) -> str:
        return f"{self.id}::{self.config_id}" if self.config_id else self.id


class RelayConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    api_keys: dict[str, str] = Field(default_factory=dict)  # provider -> key
    delay: int = 0
    retry: RetryConfig = Field(default_factory=RetryConfig)
    commit_language: str = "English"
    models: list[ModelConfig] = Field(default_factory=list)

    def find_model(self, model_id: str) -> ModelConfig | None:
        """Find a model by ``base`` or ``base::config`` id.

        An exact ``(id, config_id)`` match wins; otherwise fall back to the
        first model with the same base id.
        """
        base_id, config_id = parse_model_id(model_id)
        for m in self.models:
            if m.id == base_id and (m.config_id or None) == config_id:
                return m
        for m in self.models:
            if m.id == base_id:
                return m
        return None

    def resolve_model(self, model_id: str) -> ModelConfig:
        found = self.find_model(model_id)
        if found is not None:
            return found
        base_id, config_id = parse_model_id(model_id)
        _logger.debug("Model %s not configured, using defaults", model_id)
        return ModelConfig(id=base_id, config_id=config_id)

    def base_url_for(self, model: ModelConfig) -> str:
        url = (model.base_url or self.base_url or "").strip()
        if not url or not url.startswith("http"):
            raise ConfigError("Invalid base URL configuration.")
        return url

    def api_key_for(self, model: ModelConfig) -> str:
        """Resolve the API key: provider-specific first, then the generic one.

        Ollama does not require a key and gets an empty string instead of
        an error.
        """
        key: str | None = None
        provider = (model.owned_by or "").strip().lower()
        if provider:
            key = self.api_keys.get(provider) or os.environ.get(
                f"LLM_RELAY_API_KEY_{provider.upper().replace('-', '_')}"
            )
        if not key:
            key = self.api_key or os.environ.get("LLM_RELAY_API_KEY")
        if not key:
            if model.api_mode == "ollama":
                return ""
            raise ConfigError("API key not found")
        return key

    def delay_for(self, model: ModelConfig) -> int:
        return model.delay if model.delay is not None else self.delay


def parse_model_id(model_id: str) -> tuple[str, str | None]:
    """Split ``"base::config"`` into ``("base", "config")``."""
    if "::" in model_id:
        base, config = model_id.split("::", 1)
        return base, config or None
    return model_id, None


CONFIG_FILENAME = "llm_relay.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[RelayConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./llm_relay.yaml``
      3. User config dir: ``~/.llm_relay/llm_relay.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".llm_relay"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    resolved: Path | None = Path(config_path) if config_path else None
    if resolved and resolved.exists():
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return RelayConfig.model_validate(raw), resolved.resolve()

    if config_path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _logger.info("No config file found, using defaults")
    return RelayConfig(), None
