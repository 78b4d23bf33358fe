"""
Response Shape Tests

Verify stream chunks and buffered responses are re-wrapped in the canonical
OpenAI shapes with the relay's own id.
"""

import json

import pytest

from relay_library.response_builder import (
    SSE_DONE,
    ZERO_USAGE,
    assemble_stream_chunks,
    build_completion_envelope,
    format_sse,
    parse_sse_line,
    wrap_stream_chunk,
)
from tests.fixtures.upstream_mocks import (
    WEATHER_TOOL_CALL,
    completion_body,
    content_chunk,
)


class TestSse:
    def test_format_sse(self):
        assert format_sse({"a": 1}) == 'data: {"a": 1}\n\n'
        assert SSE_DONE == "data: [DONE]\n\n"

    @pytest.mark.parametrize(
        "line,expected",
        [
            ('data: {"a": 1}', '{"a": 1}'),
            ('data:{"a": 1}', '{"a": 1}'),
            ("data: [DONE]", "[DONE]"),
            ("", None),
            (": keep-alive", None),
            ("event: message", None),
        ],
    )
    def test_parse_sse_line(self, line, expected):
        assert parse_sse_line(line) == expected


class TestWrapping:
    def test_stream_chunk_uses_relay_identity(self):
        chunk = content_chunk("Hi", chunk_id="upstream-xyz")
        wrapped = wrap_stream_chunk(chunk, "chatcmpl-relay", 123, "qwen3-coder-plus")

        assert wrapped == {
            "id": "chatcmpl-relay",
            "object": "chat.completion.chunk",
            "created": 123,
            "model": "qwen3-coder-plus",
            "choices": chunk["choices"],
        }

    def test_stream_chunk_keeps_usage(self):
        usage = {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}
        wrapped = wrap_stream_chunk(
            {"choices": [], "usage": usage}, "id", 1, "m"
        )
        assert wrapped["usage"] == usage
        assert wrapped["choices"] == []

    def test_envelope_defaults_usage_to_zero(self):
        envelope = build_completion_envelope(completion_body(), "chatcmpl-relay", 5, "m")

        assert envelope["id"] == "chatcmpl-relay"
        assert envelope["object"] == "chat.completion"
        assert envelope["created"] == 5
        # Same model as the stream chunks report, whatever upstream echoes
        assert envelope["model"] == "m"
        assert envelope["usage"] == ZERO_USAGE
        assert envelope["system_fingerprint"] is None
        assert envelope["choices"][0]["message"]["content"] == "Hello!"

    def test_envelope_reports_tool_calls_finish_reason(self):
        upstream = completion_body(
            content=None, tool_calls=[WEATHER_TOOL_CALL], finish_reason="stop"
        )
        envelope = build_completion_envelope(upstream, "id", 1, "m")

        choice = envelope["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["tool_calls"] == [WEATHER_TOOL_CALL]
        # Upstream body is left alone
        assert upstream["choices"][0]["finish_reason"] == "stop"


class TestAssembly:
    def test_assembles_content_and_usage(self):
        usage = {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}
        chunks = [
            wrap_stream_chunk(c, "id-1", 9, "m")
            for c in (
                content_chunk("Hello"),
                content_chunk(" world", finish_reason="stop"),
                {"choices": [], "usage": usage},
            )
        ]
        final = assemble_stream_chunks(chunks)

        assert final["id"] == "id-1"
        assert final["choices"][0]["message"]["content"] == "Hello world"
        assert final["choices"][0]["finish_reason"] == "stop"
        assert final["usage"] == usage

    def test_assembles_tool_call_deltas(self):
        chunks = [
            content_chunk(
                tool_calls=[
                    {"index": 0, "id": "call_1", "function": {"name": "get_weather", "arguments": ""}}
                ]
            ),
            content_chunk(tool_calls=[{"index": 0, "function": {"arguments": "{\"city\":"}}]),
            content_chunk(
                tool_calls=[{"index": 0, "function": {"arguments": "\"Paris\"}"}}],
                finish_reason="stop",
            ),
        ]
        final = assemble_stream_chunks(chunks)
        message = final["choices"][0]["message"]

        assert message["tool_calls"] == [WEATHER_TOOL_CALL]
        assert json.loads(message["tool_calls"][0]["function"]["arguments"]) == {"city": "Paris"}
        assert final["choices"][0]["finish_reason"] == "tool_calls"

    def test_empty_input_raises(self):
        with pytest.raises(ValueError):
            assemble_stream_chunks([])
