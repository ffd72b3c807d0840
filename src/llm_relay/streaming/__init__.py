"""Streaming decoder core shared by every protocol adapter."""

from llm_relay.streaming.core import (
    DecoderCore,
    ReasoningState,
    StreamDecoder,
    decode_bytes,
    decode_stream,
)
from llm_relay.streaming.framing import DONE_SENTINEL, LineFramer, sse_data
from llm_relay.streaming.reconcile import CumulativeText
from llm_relay.streaming.think_tags import InlineThinkScanner
from llm_relay.streaming.tool_buffer import ToolCallBuffers, parse_json_object

__all__ = [
    "CumulativeText",
    "DONE_SENTINEL",
    "DecoderCore",
    "InlineThinkScanner",
    "LineFramer",
    "ReasoningState",
    "StreamDecoder",
    "ToolCallBuffers",
    "decode_bytes",
    "decode_stream",
    "parse_json_object",
    "sse_data",
]
