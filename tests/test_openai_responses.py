"""Tests for the OpenAI Responses adapter and decoder."""

from __future__ import annotations

import json

import pytest

from llm_relay.adapters.openai_responses import OpenAIResponsesAdapter, OpenAIResponsesDecoder
from llm_relay.config import ModelConfig
from llm_relay.errors import DecodeError
from llm_relay import types as types_module
from llm_relay.streaming import decode_bytes
from llm_relay.types import (
    CallOptions,
    Message,
    ResponseEnd,
    Role,
    TextDelta,
    TextPart,
    ThinkingDelta,
    ThinkingEnd,
    ThinkingPart,
    ToolCallPart,
    ToolResultPart,
    ToolSpec,
)


def _sse(*events: dict) -> bytes:
    return "".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events
    ).encode()


class TestConvertMessages:
    def test_items(self):
        messages = [
            Message.system("Be brief."),
            Message.user("Weather?"),
            Message(Role.ASSISTANT, [TextPart("Checking."), ToolCallPart("c1", "get_weather", {"city": "Oslo"})]),
            Message(Role.TOOL, [ToolResultPart("c1", "rain")]),
            Message.user("Thanks"),
        ]
        conv = OpenAIResponsesAdapter().convert_messages(messages)
        items = conv.messages

        assert conv.system == "Be brief."
        assert items[0]["role"] == "user"
        assert items[0]["content"] == [{"type": "input_text", "text": "Weather?"}]
        assert items[0]["status"] == "completed"
        assert items[1]["type"] == "message"
        assert items[1]["content"] == [{"type": "output_text", "text": "Checking."}]
        assert items[1]["id"].startswith("msg_")
        assert items[2]["type"] == "function_call"
        assert items[2]["id"] == "fc_c1"
        assert items[2]["call_id"] == "c1"
        assert json.loads(items[2]["arguments"]) == {"city": "Oslo"}
        assert items[3]["type"] == "function_call_output"
        assert items[3]["call_id"] == "c1"
        assert items[3]["output"] == "rain"
        assert items[4]["status"] == "incomplete"

    def test_reasoning_item_when_included(self):
        messages = [Message(Role.ASSISTANT, [ThinkingPart("plan"), TextPart("ok")])]
        items = OpenAIResponsesAdapter().convert_messages(messages, include_reasoning=True).messages
        reasoning = next(i for i in items if i["type"] == "reasoning")
        assert reasoning["summary"] == [{"type": "summary_text", "text": "plan"}]
        assert reasoning["id"].startswith("tk_")


class TestBuildRequest:
    def test_instructions_and_input(self):
        body = OpenAIResponsesAdapter().build_request(
            ModelConfig(id="gpt-5"), [Message.system("sys"), Message.user("hi")],
        )
        assert body["model"] == "gpt-5"
        assert body["instructions"] == "sys"
        assert body["stream"] is True
        assert len(body["input"]) == 1

    def test_max_output_tokens(self):
        body = OpenAIResponsesAdapter().build_request(
            ModelConfig(id="m", max_tokens=100), [Message.user("hi")],
        )
        assert body["max_output_tokens"] == 100

    def test_single_max_token_field(self):
        body = OpenAIResponsesAdapter().build_request(
            ModelConfig(id="m", max_tokens=100, extra={"max_completion_tokens": 50}),
            [Message.user("hi")],
        )
        assert body["max_completion_tokens"] == 50
        assert "max_output_tokens" not in body
        assert "max_tokens" not in body

    def test_reasoning_deep_merge(self):
        body = OpenAIResponsesAdapter().build_request(
            ModelConfig(id="m", reasoning_effort="high", extra={"reasoning": {"summary": "auto"}}),
            [Message.user("hi")],
        )
        assert body["reasoning"] == {"effort": "high", "summary": "auto"}

    def test_flat_tools(self):
        body = OpenAIResponsesAdapter().build_request(
            ModelConfig(id="m"), [Message.user("hi")], CallOptions(tools=[ToolSpec("f", "does f")]),
        )
        assert body["tools"] == [{
            "type": "function",
            "name": "f",
            "description": "does f",
            "parameters": {"type": "object", "properties": {}},
        }]
        assert body["tool_choice"] == "auto"

    def test_previous_response_id(self):
        adapter = OpenAIResponsesAdapter()
        body = adapter.body_for(ModelConfig(id="m"), "", [], previous_response_id="resp_1")
        assert body["previous_response_id"] == "resp_1"
        assert "instructions" not in body

    def test_repeated_builds_keep_module_state_flat(self):
        history: list[Message] = []
        for i in range(50):
            history.append(Message.user(f"q{i}"))
            history.append(Message(Role.ASSISTANT, [
                TextPart(f"a{i}"),
                ToolCallPart(f"call_{i}", "f", {"i": i}),
            ]))
            history.append(Message(Role.TOOL, [ToolResultPart(f"call_{i}", "ok")]))

        def container_sizes() -> dict[str, int]:
            return {
                name: len(value) for name, value in vars(types_module).items()
                if isinstance(value, (set, dict, list)) and not name.startswith("__")
            }

        adapter = OpenAIResponsesAdapter()
        adapter.build_request(ModelConfig(id="m"), history)
        before = container_sizes()
        ids = set()
        for _ in range(20):
            body = adapter.build_request(ModelConfig(id="m"), history)
            ids.update(item["id"] for item in body["input"] if "id" in item)
        assert container_sizes() == before
        assert ids


class TestDecoder:
    @pytest.mark.asyncio
    async def test_reasoning_and_text(self):
        decoder = OpenAIResponsesDecoder()
        body = _sse(
            {"type": "response.created", "response": {"id": "resp_1"}},
            {"type": "response.reasoning_summary_text.delta", "delta": "Think"},
            {"type": "response.reasoning_summary_text.done", "text": "Thinking"},
            {"type": "response.output_text.delta", "delta": "Hel"},
            {"type": "response.output_text.delta", "delta": "lo"},
            {"type": "response.output_text.done", "text": "Hello"},
            {"type": "response.completed", "response": {"id": "resp_1"}},
        )
        events = await decode_bytes(body, decoder)
        assert events == [
            ThinkingDelta("Think"),
            ThinkingDelta("ing"),
            ThinkingEnd(),
            TextDelta("Hel"),
            TextDelta("lo"),
            ResponseEnd("stop"),
        ]
        assert decoder.response_id == "resp_1"

    @pytest.mark.asyncio
    async def test_done_without_deltas(self):
        body = _sse({"type": "response.output_text.done", "text": "Full answer"})
        events = await decode_bytes(body, OpenAIResponsesDecoder())
        assert events == [TextDelta("Full answer"), ResponseEnd("stop")]

    @pytest.mark.asyncio
    async def test_reasoning_config_values_ignored(self):
        body = _sse({"type": "response.reasoning.delta", "delta": "medium"})
        assert await decode_bytes(body, OpenAIResponsesDecoder()) == [ResponseEnd("stop")]

    @pytest.mark.asyncio
    async def test_function_call_emitted_once(self):
        item = {"type": "function_call", "id": "fc_1", "call_id": "c1", "name": "f", "arguments": ""}
        body = _sse(
            {"type": "response.output_item.added", "output_index": 1, "item": item},
            {"type": "response.function_call_arguments.delta", "output_index": 1, "item_id": "fc_1", "delta": '{"x":'},
            {"type": "response.function_call_arguments.delta", "output_index": 1, "item_id": "fc_1", "delta": "1}"},
            {"type": "response.function_call_arguments.done", "output_index": 1, "item_id": "fc_1", "arguments": '{"x":1}'},
            {"type": "response.output_item.done", "output_index": 1, "item": {**item, "arguments": '{"x":1}'}},
            {"type": "response.completed", "response": {"id": "r"}},
        )
        events = await decode_bytes(body, OpenAIResponsesDecoder())
        assert events == [ToolCallPart("c1", "f", {"x": 1}), ResponseEnd("stop")]

    @pytest.mark.asyncio
    async def test_function_call_only_in_done_item(self):
        item = {"type": "function_call", "call_id": "c2", "name": "g", "arguments": '{"q": "a"}'}
        body = _sse({"type": "response.output_item.done", "output_index": 0, "item": item})
        events = await decode_bytes(body, OpenAIResponsesDecoder())
        assert events == [ToolCallPart("c2", "g", {"q": "a"}), ResponseEnd("stop")]

    @pytest.mark.asyncio
    async def test_invalid_arguments_on_done_raise(self):
        body = _sse(
            {"type": "response.output_item.added", "output_index": 0,
             "item": {"type": "function_call", "call_id": "c", "name": "f"}},
            {"type": "response.function_call_arguments.done", "output_index": 0, "arguments": "{oops"},
        )
        with pytest.raises(DecodeError):
            await decode_bytes(body, OpenAIResponsesDecoder())

    @pytest.mark.asyncio
    async def test_error_event_does_not_stop_stream(self):
        body = _sse(
            {"type": "error", "message": "overloaded"},
            {"type": "response.output_text.delta", "delta": "still here"},
        )
        events = await decode_bytes(body, OpenAIResponsesDecoder())
        assert events == [TextDelta("still here"), ResponseEnd("stop")]
