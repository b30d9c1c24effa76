"""Response parsing: completions, SSE events, tool calls hidden in prose."""

from __future__ import annotations

import json
import re
import uuid
from typing import Any

from loguru import logger

from tether.core.errors import MalformedToolCallError
from tether.core.transport.base import ChatResponse, StreamChunk, ToolCallDelta
from tether.memory.models import TokenUsage, ToolCall

SSE_DONE = "[DONE]"

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.+?)```", re.DOTALL)
_NAME_KEYS = ("tool", "tool_name", "name", "function")
_ARG_KEYS = ("args", "arguments", "parameters", "input")


# ════════════════════════════════════════════════════════════
# COMPLETIONS
# ════════════════════════════════════════════════════════════


def parse_completion(data: dict[str, Any]) -> ChatResponse:
    """OpenAI-compatible completion body → ``ChatResponse``."""
    choices = data.get("choices") or []
    if not choices:
        return ChatResponse(usage=TokenUsage.from_wire(data.get("usage")), raw=data)

    choice = choices[0]
    msg = choice.get("message") or {}
    content = msg.get("content") or ""
    native = [ToolCall.from_wire(tc) for tc in msg.get("tool_calls") or []]
    tool_calls = native or extract_tool_calls(content)

    return ChatResponse(
        content=content,
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason"),
        usage=TokenUsage.from_wire(data.get("usage")),
        raw=data,
    )


def parse_sse_line(line: str) -> dict[str, Any] | str | None:
    """
    One SSE line → event payload.

    Returns the decoded JSON dict, ``SSE_DONE`` for the terminator, or None
    for blank lines, comments and non-data fields.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    if payload == SSE_DONE:
        return SSE_DONE
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        logger.warning(f"Skipping undecodable SSE event ({len(payload)} chars)")
        return None


def parse_stream_event(event: dict[str, Any]) -> StreamChunk:
    """OpenAI streaming delta → ``StreamChunk``."""
    chunk = StreamChunk(usage=TokenUsage.from_wire(event.get("usage")))
    for choice in event.get("choices") or []:
        delta = choice.get("delta") or {}
        chunk.content += delta.get("content") or ""
        for tc in delta.get("tool_calls") or []:
            fn = tc.get("function") or {}
            chunk.tool_call_deltas.append(
                ToolCallDelta(
                    index=tc.get("index", 0),
                    id=tc.get("id"),
                    name=fn.get("name"),
                    arguments=fn.get("arguments") or "",
                )
            )
        if choice.get("finish_reason"):
            chunk.finish_reason = choice["finish_reason"]
    return chunk


# ════════════════════════════════════════════════════════════
# TOOL CALLS IN PROSE / CODE FENCES
# ════════════════════════════════════════════════════════════


def extract_tool_calls(content: str) -> list[ToolCall]:
    """
    Recover tool calls a model wrote as JSON text instead of native tool_calls.

    Accepts ``{"tool": ..., "args": {...}}`` / ``{"name": ..., "arguments": ...}``
    objects (or a list of them) wrapped in prose or code fences. A candidate
    that looks like a tool call but does not decode becomes a ``ToolCall``
    with the raw text as arguments, so the loop reports it as malformed.
    """
    if not content or "{" not in content:
        return []

    candidates = [m.group(1).strip() for m in _FENCE.finditer(content)]
    if not candidates:
        block = _outermost_json(content)
        if block:
            candidates = [block]

    calls: list[ToolCall] = []
    for text in candidates:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            name = _guess_name(text)
            if name:
                logger.warning(f"Undecodable tool call JSON for '{name}'")
                calls.append(ToolCall(id=_new_id(), tool_name=name, arguments=text))
            continue

        items = data if isinstance(data, list) else [data]
        for item in items:
            call = _to_tool_call(item)
            if call:
                calls.append(call)
    return calls


def decode_arguments(call: ToolCall) -> dict[str, Any]:
    """Decode ``call.arguments`` into a dict or raise ``MalformedToolCallError``."""
    raw = (call.arguments or "").strip() or "{}"
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedToolCallError(
            f"Error: arguments for '{call.tool_name}' are not valid JSON ({e.msg})",
            tool_name=call.tool_name,
            raw=raw,
        ) from e
    if not isinstance(args, dict):
        raise MalformedToolCallError(
            f"Error: arguments for '{call.tool_name}' must be a JSON object",
            tool_name=call.tool_name,
            raw=raw,
        )
    return args


def _to_tool_call(item: Any) -> ToolCall | None:
    if not isinstance(item, dict):
        return None
    name = next((item[k] for k in _NAME_KEYS if isinstance(item.get(k), str)), None)
    # a bare "name" key is only a tool call when arguments come with it
    if name and "tool" not in item and "tool_name" not in item:
        if not any(k in item for k in _ARG_KEYS):
            name = None
    if not name:
        # {"function": {"name": ..., "arguments": ...}} nested shape
        fn = item.get("function")
        if isinstance(fn, dict) and isinstance(fn.get("name"), str):
            return ToolCall.from_wire({"id": item.get("id") or _new_id(), "function": fn})
        return None
    args: Any = next((item[k] for k in _ARG_KEYS if k in item), {})
    if not isinstance(args, str):
        args = json.dumps(args)
    return ToolCall(id=item.get("id") or _new_id(), tool_name=name, arguments=args)


def _outermost_json(content: str) -> str | None:
    """First balanced ``{...}`` (or ``[{...}]``) block in ``content``."""
    start = content.find("{")
    bracket = content.find("[")
    if 0 <= bracket < start and content[bracket + 1 : start].strip() == "":
        start, open_ch, close_ch = bracket, "[", "]"
    else:
        open_ch, close_ch = "{", "}"

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(content)):
        ch = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return content[start : i + 1]
    return None


def _guess_name(text: str) -> str | None:
    m = re.search(r'"(?:tool|tool_name|name)"\s*:\s*"([^"]+)"', text)
    return m.group(1) if m else None


def _new_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"
