# src/relay_library/request_transformer.py
"""
Shapes an inbound OpenAI chat completion body into the body the Qwen portal
expects. Everything here is pure: the caller's dict is never mutated.
"""

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

lib_logger = logging.getLogger("relay_library")

DEFAULT_MODEL = "qwen3-coder-plus"
DEFAULT_CHANNEL = "SDK"
CACHE_CONTROL = {"type": "ephemeral"}

# OpenAI-compatible parameters forwarded to the Qwen Code API
SUPPORTED_PARAMS = (
    "model",
    "messages",
    "stream",
    "tools",
    "tool_choice",
    "functions",
    "function_call",
    "temperature",
    "top_p",
    "max_tokens",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "n",
    "seed",
    "response_format",
    "user",
)


def new_prompt_id(session_id: str) -> str:
    return f"{session_id}########{uuid.uuid4().hex[:13]}"


def _annotate_content(content: Any) -> Any:
    """Return content with a cache marker: strings become a single text part."""
    if isinstance(content, str):
        return [{"type": "text", "text": content, "cache_control": dict(CACHE_CONTROL)}]

    if isinstance(content, list) and content:
        parts = copy.deepcopy(content)
        for part in reversed(parts):
            if isinstance(part, dict) and part.get("type") == "text":
                part["cache_control"] = dict(CACHE_CONTROL)
                break
        return parts

    return content


def _find_index(messages: List[Dict[str, Any]], role: str, last: bool) -> Optional[int]:
    indices = range(len(messages) - 1, -1, -1) if last else range(len(messages))
    for i in indices:
        message = messages[i]
        if isinstance(message, dict) and message.get("role") == role:
            return i
    return None


def apply_cache_annotations(
    messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]
) -> Dict[str, Any]:
    """
    Mark the stable prefix of a conversation as cacheable.

    Exactly three locations are annotated: the first system message, the most
    recent user message and the last tool definition. Returns new lists.
    """
    new_messages = [dict(m) if isinstance(m, dict) else m for m in messages]

    for role, last in (("system", False), ("user", True)):
        index = _find_index(new_messages, role, last)
        if index is None:
            continue
        message = new_messages[index]
        if "content" in message and message["content"] is not None:
            message["content"] = _annotate_content(message["content"])

    result: Dict[str, Any] = {"messages": new_messages}
    if tools:
        new_tools = list(tools)
        last_tool = dict(new_tools[-1])
        last_tool["cache_control"] = dict(CACHE_CONTROL)
        new_tools[-1] = last_tool
        result["tools"] = new_tools
    return result


def build_outbound_request(
    body: Dict[str, Any],
    session_id: str,
    default_model: str = DEFAULT_MODEL,
    channel: str = DEFAULT_CHANNEL,
    prompt_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Map an inbound request body to the outbound Qwen payload.

    - Unsupported parameters are dropped silently.
    - Correlation metadata {sessionId, promptId, channel} is attached.
    - Streaming requests ask for usage in the stream and get cache annotations.
    """
    payload = {k: copy.deepcopy(body[k]) for k in SUPPORTED_PARAMS if k in body}

    dropped = sorted(k for k in body if k not in SUPPORTED_PARAMS)
    if dropped:
        lib_logger.debug(f"Dropping unsupported request parameters: {dropped}")

    if not payload.get("model"):
        payload["model"] = default_model

    stream = bool(payload.get("stream"))
    payload["stream"] = stream

    payload["metadata"] = {
        "sessionId": session_id,
        "promptId": prompt_id or new_prompt_id(session_id),
        "channel": channel,
    }

    if stream:
        payload["stream_options"] = {"include_usage": True}
        messages = payload.get("messages")
        if isinstance(messages, list):
            tools = payload.get("tools") if isinstance(payload.get("tools"), list) else None
            payload.update(apply_cache_annotations(messages, tools))

    return payload
