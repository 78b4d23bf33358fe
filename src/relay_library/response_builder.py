# src/relay_library/response_builder.py
"""
Canonical OpenAI response shapes produced by the relay.

Upstream chunk ids are not stable across a stream, so every chunk and every
buffered response is re-wrapped with the relay's own id, timestamp and model.
"""

import json
import logging
from typing import Any, Dict, List, Optional

lib_logger = logging.getLogger("relay_library")

SSE_DONE = "data: [DONE]\n\n"
ZERO_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def format_sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def parse_sse_line(line: str) -> Optional[str]:
    """
    Return the payload of a `data:` line, or None for blank lines, comments and
    other SSE fields.
    """
    if not line.startswith("data:"):
        return None
    return line[len("data:") :].strip()


def wrap_stream_chunk(
    chunk: Dict[str, Any], response_id: str, created: int, model: str
) -> Dict[str, Any]:
    wrapped: Dict[str, Any] = {
        "id": response_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": chunk.get("choices") or [],
    }
    if chunk.get("usage"):
        wrapped["usage"] = chunk["usage"]
    if chunk.get("system_fingerprint"):
        wrapped["system_fingerprint"] = chunk["system_fingerprint"]
    return wrapped


def _normalize_choice(choice: Any) -> Any:
    if not isinstance(choice, dict):
        return choice
    message = choice.get("message")
    if isinstance(message, dict) and message.get("tool_calls"):
        # Agentic clients only continue the tool loop on "tool_calls"
        if choice.get("finish_reason") != "tool_calls":
            choice = dict(choice)
            choice["finish_reason"] = "tool_calls"
    return choice


def build_completion_envelope(
    upstream: Dict[str, Any], response_id: str, created: int, model: str
) -> Dict[str, Any]:
    """Re-wrap a buffered upstream response. Usage defaults to zero counts."""
    usage = upstream.get("usage")
    if not isinstance(usage, dict):
        usage = dict(ZERO_USAGE)
    else:
        usage = {**ZERO_USAGE, **usage}

    return {
        "id": response_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [_normalize_choice(c) for c in upstream.get("choices") or []],
        "usage": usage,
        "system_fingerprint": upstream.get("system_fingerprint"),
    }


def assemble_stream_chunks(chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Reassemble canonical stream chunks into a single chat.completion.

    Used for transaction logs. finish_reason is "tool_calls" whenever tool call
    deltas were seen, otherwise the last reported reason, otherwise "stop".
    """
    if not chunks:
        raise ValueError("No chunks provided for reassembly")

    final_message: Dict[str, Any] = {"role": "assistant"}
    aggregated_tool_calls: Dict[int, Dict[str, Any]] = {}
    usage_data = None
    chunk_finish_reason = None

    for chunk in chunks:
        if chunk.get("usage"):
            usage_data = chunk["usage"]

        choices = chunk.get("choices") or []
        if not choices:
            continue
        choice = choices[0]
        delta = choice.get("delta") or {}

        for key in ("content", "reasoning_content"):
            if delta.get(key) is not None:
                final_message[key] = final_message.get(key, "") + delta[key]

        for tc_chunk in delta.get("tool_calls") or []:
            index = tc_chunk.get("index", 0)
            if index not in aggregated_tool_calls:
                aggregated_tool_calls[index] = {
                    "type": "function",
                    "function": {"name": "", "arguments": ""},
                }
            if tc_chunk.get("id"):
                aggregated_tool_calls[index]["id"] = tc_chunk["id"]
            function = tc_chunk.get("function") or {}
            if function.get("name") is not None:
                aggregated_tool_calls[index]["function"]["name"] += function["name"]
            if function.get("arguments") is not None:
                aggregated_tool_calls[index]["function"]["arguments"] += function["arguments"]

        if delta.get("function_call"):
            call = final_message.setdefault("function_call", {"name": "", "arguments": ""})
            call["name"] += delta["function_call"].get("name") or ""
            call["arguments"] += delta["function_call"].get("arguments") or ""

        if choice.get("finish_reason"):
            chunk_finish_reason = choice["finish_reason"]

    if aggregated_tool_calls:
        final_message["tool_calls"] = [
            aggregated_tool_calls[i] for i in sorted(aggregated_tool_calls)
        ]

    for name in ("content", "tool_calls", "function_call"):
        final_message.setdefault(name, None)

    if aggregated_tool_calls:
        finish_reason = "tool_calls"
    else:
        finish_reason = chunk_finish_reason or "stop"

    first_chunk = chunks[0]
    return {
        "id": first_chunk.get("id"),
        "object": "chat.completion",
        "created": first_chunk.get("created"),
        "model": first_chunk.get("model"),
        "choices": [{"index": 0, "message": final_message, "finish_reason": finish_reason}],
        "usage": usage_data or dict(ZERO_USAGE),
    }
