"""Model discovery against a provider's listing endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from llm_relay.adapters import get_adapter
from llm_relay.adapters.gemini import gemini_models_url
from llm_relay.config import RetryConfig
from llm_relay.errors import ConfigError, DecodeError, HttpStatusError, TransportError
from llm_relay.retry import execute_with_retry

_logger = logging.getLogger(__name__)

GEMINI_MAX_PAGES = 10


@dataclass
class ModelInfo:
    id: str
    display_name: str
    context_length: int | None = None
    max_output_tokens: int | None = None
    owned_by: str | None = None


async def _get_json(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    retry: RetryConfig,
    label: str,
    params: dict[str, str] | None = None,
) -> dict[str, Any]:
    async def attempt() -> dict[str, Any]:
        try:
            resp = await client.get(url, headers=headers, params=params)
        except httpx.TransportError as e:
            raise TransportError(f"{label} request failed: {e!r}", url) from e
        if not resp.is_success:
            raise HttpStatusError(resp.status_code, resp.text, url, label=label)
        try:
            data = resp.json()
        except ValueError as e:
            raise DecodeError(f"{label} returned invalid JSON\nURL: {url}") from e
        if not isinstance(data, dict):
            raise DecodeError(f"{label} returned an unexpected payload\nURL: {url}")
        return data

    return await execute_with_retry(attempt, retry)


def _int_or_none(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


async def _fetch_openai(
    client: httpx.AsyncClient,
    base_url: str,
    headers: dict[str, str],
    retry: RetryConfig,
    path: str = "models",
) -> list[ModelInfo]:
    url = f"{base_url.rstrip('/')}/{path}"
    data = await _get_json(client, url, headers, retry, "Models API")
    out: list[ModelInfo] = []
    for entry in data.get("data") or []:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            continue
        out.append(ModelInfo(
            id=entry["id"],
            display_name=entry.get("display_name") or entry["id"],
            context_length=_int_or_none(entry.get("context_length")),
            owned_by=entry.get("owned_by"),
        ))
    return out


async def _fetch_gemini(
    client: httpx.AsyncClient, base_url: str, headers: dict[str, str], retry: RetryConfig,
) -> list[ModelInfo]:
    url = gemini_models_url(base_url)
    owned_by = "langdock" if "langdock.com" in base_url else "google"
    out: list[ModelInfo] = []
    page_token: str | None = None
    for _ in range(GEMINI_MAX_PAGES):
        params = {"pageToken": page_token} if page_token else None
        data = await _get_json(client, url, headers, retry, "Gemini API", params)
        for entry in data.get("models") or []:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name") if isinstance(entry.get("name"), str) else ""
            display = entry.get("displayName") if isinstance(entry.get("displayName"), str) else ""
            model_id = name.removeprefix("models/") if name.strip() else (display.strip() or "unknown")
            out.append(ModelInfo(
                id=model_id,
                display_name=display or model_id,
                context_length=_int_or_none(entry.get("inputTokenLimit")),
                max_output_tokens=_int_or_none(entry.get("outputTokenLimit")),
                owned_by=owned_by,
            ))
        page_token = data.get("nextPageToken") or None
        if not page_token:
            break
    else:
        _logger.warning("Gemini model listing truncated after %d pages", GEMINI_MAX_PAGES)
    return out


async def _fetch_ollama(
    client: httpx.AsyncClient, base_url: str, headers: dict[str, str], retry: RetryConfig,
) -> list[ModelInfo]:
    url = f"{base_url.rstrip('/')}/api/tags"
    data = await _get_json(client, url, headers, retry, "Ollama API")
    out: list[ModelInfo] = []
    for entry in data.get("models") or []:
        if not isinstance(entry, dict):
            continue
        model_id = entry.get("model") or entry.get("name")
        if not isinstance(model_id, str):
            continue
        out.append(ModelInfo(id=model_id, display_name=entry.get("name") or model_id, owned_by="ollama"))
    return out


async def fetch_models(
    base_url: str,
    api_key: str = "",
    api_mode: str = "openai",
    *,
    client: httpx.AsyncClient | None = None,
    retry: RetryConfig | None = None,
) -> list[ModelInfo]:
    """List the models a backend serves.

    ``openai`` and ``openai-responses`` use ``/models``, ``anthropic``
    ``/v1/models``, ``gemini`` the paginated ``/v1beta/models`` and
    ``ollama`` ``/api/tags``.
    """
    if not base_url.strip().startswith("http"):
        raise ConfigError("Invalid base URL configuration.")
    retry = retry or RetryConfig()
    adapter = get_adapter(api_mode)
    headers = adapter.headers(api_key)
    headers.pop("Content-Type", None)
    headers["Accept"] = "application/json"

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(60, connect=30))
    try:
        if api_mode == "gemini":
            models = await _fetch_gemini(client, base_url, headers, retry)
        elif api_mode == "ollama":
            models = await _fetch_ollama(client, base_url, headers, retry)
        elif api_mode == "anthropic":
            path = "models" if base_url.rstrip("/").endswith("/v1") else "v1/models"
            models = await _fetch_openai(client, base_url, headers, retry, path)
        else:
            models = await _fetch_openai(client, base_url, headers, retry)
    finally:
        if owns_client:
            await client.aclose()
    _logger.debug("Discovered %d models at %s", len(models), base_url)
    return models
