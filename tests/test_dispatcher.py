"""End-to-end tests for RequestDispatcher over a mocked HTTP transport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from llm_relay.adapters.gemini import ToolCallMetaCache
from llm_relay.config import ModelConfig, RelayConfig, RetryConfig
from llm_relay.continuity import ContinuityTracker, decode_marker
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import ConfigError, HttpStatusError
from llm_relay.types import (
    DataPart,
    Message,
    ResponseEnd,
    Role,
    TextDelta,
    TextPart,
    ToolCallPart,
)

BASE = "https://api.test/v1"


def _config(**overrides) -> RelayConfig:
    values = {
        "base_url": BASE,
        "api_key": "test-key",
        "retry": RetryConfig(interval_ms=0),
        "models": [
            ModelConfig(id="gpt", api_mode="openai"),
            ModelConfig(id="resp", api_mode="openai-responses"),
            ModelConfig(id="claude", api_mode="anthropic", base_url="https://api.anthropic.test"),
            ModelConfig(id="gemini-2.5-flash", api_mode="gemini", base_url="https://gemini.test"),
            ModelConfig(id="qwen3", api_mode="ollama", base_url="http://localhost:11434"),
        ],
    }
    values.update(overrides)
    return RelayConfig(**values)


def _chat_sse(*texts: str) -> bytes:
    chunks = [{"choices": [{"delta": {"content": t}, "finish_reason": None}]} for t in texts]
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return body.encode()


def _responses_sse(response_id: str, text: str) -> bytes:
    events = [
        {"type": "response.created", "response": {"id": response_id}},
        {"type": "response.output_text.delta", "delta": text},
        {"type": "response.completed", "response": {"id": response_id}},
    ]
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


class _Recorder:
    """Mock transport handler that records requests and replays responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(template.status_code, content=template.content)

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _dispatcher(handler, config: RelayConfig | None = None, **kwargs) -> RequestDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("continuity", ContinuityTracker())
    kwargs.setdefault("gemini_meta", ToolCallMetaCache())
    return RequestDispatcher(config or _config(), client, **kwargs)


async def _collect(dispatcher: RequestDispatcher, model_id: str, messages: list[Message], **kwargs) -> list:
    return [e async for e in dispatcher.stream_chat(model_id, messages, **kwargs)]


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------

class TestStreamChat:
    @pytest.mark.asyncio
    async def test_openai_stream(self):
        rec = _Recorder(httpx.Response(200, content=_chat_sse("Hel", "lo")))
        events = await _collect(_dispatcher(rec), "gpt", [Message.user("hi")])

        assert events == [TextDelta("Hel"), TextDelta("lo"), ResponseEnd("stop")]
        request = rec.requests[0]
        assert str(request.url) == f"{BASE}/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = rec.bodies()[0]
        assert body["model"] == "gpt"
        assert body["stream"] is True
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_anthropic_endpoint_and_headers(self):
        events_sse = "".join(
            f"data: {json.dumps(e)}\n\n" for e in [
                {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "message_stop"},
            ]
        ).encode()
        rec = _Recorder(httpx.Response(200, content=events_sse))
        events = await _collect(_dispatcher(rec), "claude", [Message.user("hi")])

        assert events == [TextDelta("Hi"), ResponseEnd("stop")]
        assert str(rec.requests[0].url) == "https://api.anthropic.test/v1/messages"
        assert rec.requests[0].headers["x-api-key"] == "test-key"

    @pytest.mark.asyncio
    async def test_gemini_endpoint(self):
        chunk = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "f", "args": {}}}]}}]}
        rec = _Recorder(httpx.Response(200, content=f"data: {json.dumps(chunk)}\n\n".encode()))
        events = await _collect(_dispatcher(rec), "gemini-2.5-flash", [Message.user("hi")])

        assert isinstance(events[0], ToolCallPart)
        assert events[-1] == ResponseEnd("stop")
        assert str(rec.requests[0].url) == (
            "https://gemini.test/v1beta/models/gemini-2.5-flash:streamGenerateContent?alt=sse"
        )
        assert rec.requests[0].headers["x-goog-api-key"] == "test-key"

    @pytest.mark.asyncio
    async def test_ollama_without_key(self, monkeypatch):
        monkeypatch.delenv("LLM_RELAY_API_KEY", raising=False)
        body = b'{"message": {"content": "ok"}, "done": false}\n{"done": true}\n'
        rec = _Recorder(httpx.Response(200, content=body))
        events = await _collect(_dispatcher(rec, _config(api_key=None)), "qwen3", [Message.user("hi")])

        assert events == [TextDelta("ok"), ResponseEnd("stop")]
        assert "Authorization" not in rec.requests[0].headers

    @pytest.mark.asyncio
    async def test_custom_headers_added(self):
        config = _config(models=[ModelConfig(id="gpt", headers={"HTTP-Referer": "https://relay.test"})])
        rec = _Recorder(httpx.Response(200, content=_chat_sse("x")))
        await _collect(_dispatcher(rec, config), "gpt", [Message.user("hi")])
        assert rec.requests[0].headers["HTTP-Referer"] == "https://relay.test"

    @pytest.mark.asyncio
    async def test_send_once(self):
        rec = _Recorder(httpx.Response(200, content=_chat_sse("  answer ")))
        text = await _dispatcher(rec).send_once("gpt", "Be brief.", [Message.user("q")])

        assert text == "answer"
        assert rec.bodies()[0]["messages"][0] == {"role": "system", "content": "Be brief."}


# ---------------------------------------------------------------------------
# Errors and retries
# ---------------------------------------------------------------------------

class TestErrors:
    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        rec = _Recorder(
            httpx.Response(500, text="overloaded"),
            httpx.Response(200, content=_chat_sse("ok")),
        )
        events = await _collect(_dispatcher(rec), "gpt", [Message.user("hi")])
        assert events == [TextDelta("ok"), ResponseEnd("stop")]
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        rec = _Recorder(httpx.Response(400, text='{"error": "bad model"}'))
        with pytest.raises(HttpStatusError) as exc:
            await _collect(_dispatcher(rec), "gpt", [Message.user("hi")])
        assert exc.value.status == 400
        assert "bad model" in str(exc.value)
        assert f"{BASE}/chat/completions" in str(exc.value)
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries(self):
        rec = _Recorder(httpx.Response(503, text="down"))
        with pytest.raises(HttpStatusError):
            await _collect(_dispatcher(rec), "gpt", [Message.user("hi")])
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_network(self, monkeypatch):
        monkeypatch.delenv("LLM_RELAY_API_KEY", raising=False)
        rec = _Recorder(httpx.Response(200, content=_chat_sse("x")))
        with pytest.raises(ConfigError):
            await _collect(_dispatcher(rec, _config(api_key=None)), "gpt", [Message.user("hi")])
        assert rec.requests == []

    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=_chat_sse("ok"))

        events = await _collect(_dispatcher(handler), "gpt", [Message.user("hi")])
        assert events[0] == TextDelta("ok")
        assert calls["n"] == 2


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_retry_wait(self):
        rec = _Recorder(httpx.Response(503, text="busy"))
        config = _config(retry=RetryConfig(interval_ms=60_000))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        events = await asyncio.wait_for(
            _collect(_dispatcher(rec, config), "gpt", [Message.user("hi")], cancel=cancel),
            timeout=5,
        )
        assert events == [ResponseEnd("cancelled")]
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_reading(self):
        rec = _Recorder(httpx.Response(200, content=_chat_sse("never")))
        cancel = asyncio.Event()
        cancel.set()
        events = await _collect(_dispatcher(rec), "gpt", [Message.user("hi")], cancel=cancel)
        assert events == [ResponseEnd("cancelled")]


# ---------------------------------------------------------------------------
# Responses continuity
# ---------------------------------------------------------------------------

class TestResponsesContinuity:
    @pytest.mark.asyncio
    async def test_marker_emitted_before_end(self):
        rec = _Recorder(httpx.Response(200, content=_responses_sse("resp_1", "Hello")))
        events = await _collect(_dispatcher(rec), "resp", [Message.user("hi")])

        assert events[0] == TextDelta("Hello")
        assert isinstance(events[1], DataPart)
        assert decode_marker(events[1]) == ("resp", "resp_1")
        assert events[2] == ResponseEnd("stop")
        assert str(rec.requests[0].url) == f"{BASE}/responses"

    @pytest.mark.asyncio
    async def test_fallback_to_full_history_on_404(self):
        tracker = ContinuityTracker()

        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append(body)
            if "previous_response_id" in body:
                return httpx.Response(404, text="previous response not found")
            return httpx.Response(200, content=_responses_sse("resp_2", "Again"))

        dispatcher = _dispatcher(handler, continuity=tracker)
        first = await _collect(dispatcher, "resp", [Message.user("hi")])
        marker = next(e for e in first if isinstance(e, DataPart))

        history = [
            Message.user("hi"),
            Message(Role.ASSISTANT, [TextPart("Again"), marker]),
            Message.user("more"),
        ]
        events = await _collect(dispatcher, "resp", history)
        assert events[0] == TextDelta("Again")
        assert events[-1] == ResponseEnd("stop")

        assert "previous_response_id" not in requests[0]
        assert requests[1]["previous_response_id"] == "resp_2"
        assert len(requests[1]["input"]) == 1
        assert "previous_response_id" not in requests[2]
        assert len(requests[2]["input"]) == 3
        assert not tracker.is_supported(BASE)

        await _collect(dispatcher, "resp", history)
        assert len(requests) == 4
        assert "previous_response_id" not in requests[3]

    @pytest.mark.asyncio
    async def test_delta_accepted(self):
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=_responses_sse("resp_9", "ok"))

        dispatcher = _dispatcher(handler)
        history = [
            Message.user("hi"),
            Message(Role.ASSISTANT, [TextPart("prev")]),
        ]
        first = await _collect(dispatcher, "resp", history)
        marker = next(e for e in first if isinstance(e, DataPart))
        history[-1].parts.append(marker)
        history.append(Message.user("next"))

        await _collect(dispatcher, "resp", history)
        assert requests[1]["previous_response_id"] == "resp_9"
        assert [i["content"][0]["text"] for i in requests[1]["input"]] == ["next"]


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------

class TestThrottle:
    @pytest.mark.asyncio
    async def test_delay_between_requests(self, monkeypatch):
        waits: list[float] = []

        async def fake_sleep(seconds, cancel):
            waits.append(seconds)

        monkeypatch.setattr("llm_relay.dispatcher.sleep_or_cancel", fake_sleep)
        rec = _Recorder(httpx.Response(200, content=_chat_sse("x")))
        dispatcher = _dispatcher(rec, _config(delay=10_000))

        await _collect(dispatcher, "gpt", [Message.user("a")])
        assert waits == []
        await _collect(dispatcher, "gpt", [Message.user("b")])
        assert len(waits) == 1
        assert 0 < waits[0] <= 10
