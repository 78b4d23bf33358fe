"""Canned Qwen chat completion responses for testing."""

import json
from typing import Any, Dict, List, Optional

QWEN_BASE = "https://portal.qwen.ai/v1"
CHAT_URL = f"{QWEN_BASE}/chat/completions"
TOKEN_URL = "https://chat.qwen.ai/api/v1/oauth2/token"


def content_chunk(
    content: Optional[str] = None,
    finish_reason: Optional[str] = None,
    chunk_id: str = "upstream-chunk",
    usage: Optional[Dict[str, int]] = None,
    tool_calls: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    delta: Dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    chunk: Dict[str, Any] = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "qwen3-coder-plus",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def sse_body(chunks: List[Dict[str, Any]], done: bool = True) -> bytes:
    """Encode chunks the way the Qwen portal streams them."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def hello_world_stream() -> bytes:
    # Upstream ids vary per chunk; the relay must replace them
    return sse_body(
        [
            content_chunk("Hello", chunk_id="up-1"),
            content_chunk(" world", chunk_id="up-2"),
            content_chunk(finish_reason="stop", chunk_id="up-3"),
            {
                "id": "up-4",
                "object": "chat.completion.chunk",
                "created": 1700000000,
                "model": "qwen3-coder-plus",
                "choices": [],
                "usage": {"prompt_tokens": 12, "completion_tokens": 2, "total_tokens": 14},
            },
        ]
    )


def completion_body(
    content: Optional[str] = "Hello!",
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    finish_reason: str = "stop",
    usage: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    body: Dict[str, Any] = {
        "id": "upstream-id",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "qwen3-coder-plus",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


WEATHER_TOOL_CALL = {
    "id": "call_1",
    "type": "function",
    "function": {"name": "get_weather", "arguments": "{\"city\":\"Paris\"}"},
}


def parse_sse_frames(text: str) -> List[str]:
    """Split a relay SSE body into its data payloads."""
    return [
        frame[len("data: ") :]
        for frame in text.split("\n\n")
        if frame.startswith("data: ")
    ]
