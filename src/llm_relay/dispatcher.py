"""Request dispatcher: config → adapter → HTTP → decoder → events."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator

import httpx

from llm_relay.adapters import get_adapter
from llm_relay.adapters.gemini import DEFAULT_META_CACHE, ToolCallMetaCache
from llm_relay.adapters.openai_responses import OpenAIResponsesAdapter
from llm_relay.config import RelayConfig, RetryConfig
from llm_relay.continuity import DEFAULT_TRACKER, ContinuityPlan, ContinuityTracker, encode_marker
from llm_relay.errors import HttpStatusError, RelayError, RequestCancelled, TransportError
from llm_relay.retry import execute_with_retry, sleep_or_cancel
from llm_relay.streaming.core import decode_stream
from llm_relay.types import (
    CallOptions,
    Message,
    ResponseEnd,
    ResponseEvent,
    TextDelta,
)

_logger = logging.getLogger(__name__)

ERROR_LABELS = {
    "openai": "OpenAI API",
    "openai-responses": "Responses API",
    "anthropic": "Anthropic API",
    "gemini": "Gemini API",
    "ollama": "Ollama API",
}


async def open_stream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: dict[str, str],
    body: dict[str, Any] | None,
    retry: RetryConfig,
    cancel: asyncio.Event | None = None,
    label: str = "API",
) -> httpx.Response:
    """Send one request with retry and return the open streaming response.

    Non-2xx responses are read, closed and raised as ``HttpStatusError``;
    network failures become ``TransportError``.  The caller must close the
    returned response.
    """

    async def attempt() -> httpx.Response:
        request = client.build_request(method, url, headers=headers, json=body)
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise TransportError(f"{label} request failed: {e!r}", url) from e
        if not response.is_success:
            try:
                text = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise HttpStatusError(response.status_code, text, url, label=label)
        return response

    return await execute_with_retry(attempt, retry, cancel)


class RequestDispatcher:
    """Entry point for streaming chat requests against any configured model."""

    def __init__(
        self,
        config: RelayConfig,
        client: httpx.AsyncClient | None = None,
        *,
        gemini_meta: ToolCallMetaCache | None = None,
        continuity: ContinuityTracker | None = None,
        timeout: float = 120,
    ) -> None:
        self.config = config
        self.gemini_meta = gemini_meta if gemini_meta is not None else DEFAULT_META_CACHE
        self.continuity = continuity if continuity is not None else DEFAULT_TRACKER
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30, read=300),
        )
        self._last_completed: dict[str, float] = {}

    async def close(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RequestDispatcher:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Throttle
    # ------------------------------------------------------------------

    async def _throttle(self, key: str, delay_ms: int, cancel: asyncio.Event | None) -> None:
        last = self._last_completed.get(key)
        if delay_ms <= 0 or last is None:
            return
        remaining = delay_ms / 1000 - (time.monotonic() - last)
        if remaining > 0:
            _logger.debug("Delaying request to %s by %.0fms", key, remaining * 1000)
            await sleep_or_cancel(remaining, cancel)

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        model_id: str,
        messages: list[Message],
        options: CallOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ResponseEvent]:
        """Stream canonical events for one chat request.

        Configuration problems raise ``ConfigError`` before any network
        call.  The last event is always ``ResponseEnd``.
        """
        model = self.config.resolve_model(model_id)
        adapter = get_adapter(model.api_mode, self.gemini_meta)
        base_url = self.config.base_url_for(model)
        api_key = self.config.api_key_for(model)
        url = adapter.endpoint(base_url, model.id)
        headers = adapter.headers(api_key, model.headers)
        label = ERROR_LABELS.get(model.api_mode, "API")

        plan: ContinuityPlan | None = None
        if isinstance(adapter, OpenAIResponsesAdapter):
            plan = self.continuity.plan(adapter, model, base_url, messages, options)
            body = plan.body
        else:
            body = adapter.build_request(model, messages, options)

        _logger.debug(
            "POST %s (model=%s, mode=%s, messages=%d)", url, model.full_id, model.api_mode, len(messages),
        )

        try:
            await self._throttle(url, self.config.delay_for(model), cancel)
            try:
                response = await open_stream(
                    self._client, "POST", url, headers, body, self.config.retry, cancel, label,
                )
            except HttpStatusError as e:
                if plan is None or plan.fallback_body is None or not self.continuity.should_fall_back(plan, e):
                    raise
                response = await open_stream(
                    self._client, "POST", url, headers, plan.fallback_body,
                    self.config.retry, cancel, label,
                )
        except RequestCancelled:
            self._last_completed[url] = time.monotonic()
            yield ResponseEnd("cancelled")
            return
        except RelayError as e:
            self._last_completed[url] = time.monotonic()
            _logger.error("%s request to %s failed: %s", label, url, e)
            raise

        decoder = adapter.new_decoder()
        try:
            async for event in decode_stream(response.aiter_bytes(), decoder, cancel):
                response_id = getattr(decoder, "response_id", None)
                if isinstance(event, ResponseEnd) and event.reason == "stop" and response_id:
                    yield encode_marker(model.id, response_id)
                yield event
        except httpx.TransportError as e:
            _logger.error("%s stream from %s broke: %r", label, url, e)
            raise TransportError(f"{label} stream interrupted: {e!r}", url) from e
        except RelayError as e:
            _logger.error("%s stream from %s failed: %s", label, url, e)
            raise
        finally:
            await response.aclose()
            self._last_completed[url] = time.monotonic()

    async def send_once(
        self, model_id: str, system_prompt: str, messages: list[Message],
    ) -> str:
        """Run one request to completion and return the answer text."""
        history = [Message.system(system_prompt), *messages] if system_prompt else list(messages)
        chunks: list[str] = []
        async for event in self.stream_chat(model_id, history):
            if isinstance(event, TextDelta):
                chunks.append(event.text)
        return "".join(chunks).strip()
