"""Tests for model discovery."""

from __future__ import annotations

import httpx
import pytest

from llm_relay.config import RetryConfig
from llm_relay.discovery import fetch_models
from llm_relay.errors import ConfigError, DecodeError, HttpStatusError

RETRY = RetryConfig(interval_ms=0)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchModels:
    @pytest.mark.asyncio
    async def test_openai_models(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [
                {"id": "gpt-4o", "owned_by": "openai", "context_length": 128000},
                {"id": "o3"},
                {"object": "model"},
            ]})

        models = await fetch_models("https://api.test/v1/", "k", client=_client(handler), retry=RETRY)
        assert [m.id for m in models] == ["gpt-4o", "o3"]
        assert models[0].context_length == 128000
        assert models[1].display_name == "o3"
        assert str(seen[0].url) == "https://api.test/v1/models"
        assert seen[0].headers["Authorization"] == "Bearer k"

    @pytest.mark.asyncio
    async def test_gemini_pagination(self):
        pages = {
            None: {"models": [{"name": "models/gemini-a", "displayName": "A", "inputTokenLimit": 1000}],
                   "nextPageToken": "p2"},
            "p2": {"models": [{"name": "models/gemini-b", "outputTokenLimit": 64}]},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1beta/models"
            assert request.headers["x-goog-api-key"] == "g"
            return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

        models = await fetch_models(
            "https://generativelanguage.googleapis.com", "g", "gemini", client=_client(handler), retry=RETRY,
        )
        assert [m.id for m in models] == ["gemini-a", "gemini-b"]
        assert models[0].display_name == "A"
        assert models[0].context_length == 1000
        assert models[1].max_output_tokens == 64
        assert models[0].owned_by == "google"

    @pytest.mark.asyncio
    async def test_gemini_page_limit(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(200, json={"models": [], "nextPageToken": f"p{calls['n']}"})

        await fetch_models("https://g.test", "g", "gemini", client=_client(handler), retry=RETRY)
        assert calls["n"] == 10

    @pytest.mark.asyncio
    async def test_ollama_tags(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"models": [{"name": "qwen3:8b", "model": "qwen3:8b"}]})

        models = await fetch_models("http://localhost:11434", "", "ollama", client=_client(handler), retry=RETRY)
        assert [(m.id, m.owned_by) for m in models] == [("qwen3:8b", "ollama")]

    @pytest.mark.asyncio
    async def test_anthropic_models(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/models"
            assert request.headers["x-api-key"] == "a"
            return httpx.Response(200, json={"data": [{"id": "claude-x", "display_name": "Claude X"}]})

        models = await fetch_models("https://api.anthropic.test", "a", "anthropic", client=_client(handler), retry=RETRY)
        assert models[0].display_name == "Claude X"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json={"data": []})

        assert await fetch_models("https://api.test/v1", "k", client=_client(handler), retry=RETRY) == []
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        client = _client(lambda request: httpx.Response(401, text="no"))
        with pytest.raises(HttpStatusError) as exc:
            await fetch_models("https://api.test/v1", "k", client=client, retry=RETRY)
        assert exc.value.status == 401

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(DecodeError):
            await fetch_models("https://api.test/v1", "k", client=client, retry=RETRY)

    @pytest.mark.asyncio
    async def test_invalid_base_url(self):
        with pytest.raises(ConfigError):
            await fetch_models("not-a-url", "k")
