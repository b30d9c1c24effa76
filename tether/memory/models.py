"""Pydantic data models: messages, tool calls, usage, checkpoints, results."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════
# CONVERSATION
# ════════════════════════════════════════════════════════════


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ToolCall(BaseModel):
    """A tool invocation emitted by the model. ``arguments`` is the raw JSON text."""

    model_config = ConfigDict(frozen=True)

    id: str
    tool_name: str
    arguments: str = "{}"

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolCall:
        fn = data.get("function") or {}
        args = fn.get("arguments", "{}")
        if not isinstance(args, str):
            args = json.dumps(args)
        return cls(id=data.get("id") or "", tool_name=fn.get("name") or "", arguments=args or "{}")


class Message(BaseModel):
    """
    One conversation entry. Immutable once created; corrections append.

    Every ``tool`` message references a ``ToolCall.id`` of an earlier
    assistant message through ``tool_call_id``.
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    is_summary: bool = False
    # summaries only: window messages stored just before this one that it does not cover
    kept_before: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    # ── Constructors ────────────────────────────────────────

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    @classmethod
    def system(cls, content: str, is_summary: bool = False, kept_before: int = 0) -> Message:
        return cls(role=Role.SYSTEM, content=content, is_summary=is_summary, kept_before=kept_before)

    # ── Conversions ─────────────────────────────────────────

    def to_wire(self) -> dict[str, Any]:
        """OpenAI chat message dict."""
        d: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        return d

    def to_record(self) -> dict[str, Any]:
        """Persisted message record (tool_calls serialized as JSON or None)."""
        return {
            "role": self.role.value,
            "content": self.content,
            "is_summary": self.is_summary,
            "kept_before": self.kept_before,
            "tool_calls": (
                json.dumps([tc.model_dump() for tc in self.tool_calls])
                if self.tool_calls
                else None
            ),
            "tool_call_id": self.tool_call_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Message:
        raw_calls = record.get("tool_calls")
        calls: list[ToolCall] = []
        if raw_calls:
            items = json.loads(raw_calls) if isinstance(raw_calls, str) else raw_calls
            calls = [ToolCall.model_validate(tc) for tc in items]
        data: dict[str, Any] = {
            "role": record["role"],
            "content": record.get("content") or "",
            "tool_calls": tuple(calls),
            "tool_call_id": record.get("tool_call_id"),
            "is_summary": bool(record.get("is_summary")),
            "kept_before": record.get("kept_before") or 0,
        }
        if record.get("created_at"):
            data["created_at"] = record["created_at"]
        return cls(**data)


class TokenUsage(BaseModel):
    """Token counts from one model response. Callers sum them with ``+``."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_wire(cls, data: dict[str, Any] | None) -> TokenUsage | None:
        if not data:
            return None
        return cls(
            prompt_tokens=data.get("prompt_tokens") or 0,
            completion_tokens=data.get("completion_tokens") or 0,
            total_tokens=data.get("total_tokens") or 0,
        )


class AgentResult(BaseModel):
    """Outcome of ``Agent.run``. Also stored in the terminal checkpoint of a finished run."""

    text: str
    usage: TokenUsage | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: str | None = None


# ════════════════════════════════════════════════════════════
# CHECKPOINT
# ════════════════════════════════════════════════════════════


class Checkpoint(BaseModel):
    """Latest in-flight loop state of a conversation (one per conversation)."""

    conversation_id: str = "default"
    messages: list[Message] = Field(default_factory=list)
    iteration_count: int = 0
    pending_tool_call_ids: list[str] = Field(default_factory=list)
    is_running: bool = True
    current_step: str = "idle"
    last_error: str | None = None
    final_result: AgentResult | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def final_text(self) -> str | None:
        return self.final_result.text if self.final_result is not None else None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> Checkpoint:
        return cls.model_validate_json(raw)

    def pending_calls(self) -> list[ToolCall]:
        """Pending ids resolved against the last assistant message that emitted them."""
        wanted = set(self.pending_tool_call_ids)
        for msg in reversed(self.messages):
            if msg.role == Role.ASSISTANT and msg.tool_calls:
                calls = [tc for tc in msg.tool_calls if tc.id in wanted]
                if calls:
                    return calls
        return []


# ════════════════════════════════════════════════════════════
# RUN RESULTS
# ════════════════════════════════════════════════════════════


class ConfirmationRequest(BaseModel):
    """A tool call parked until ``Agent.confirm`` is called."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    """One item of a streamed run. Only the fields relevant to the event are set."""

    text_chunk: str | None = None
    text: str | None = None
    usage: TokenUsage | None = None
    tool_calls: list[ToolCall] | None = None
    finish_reason: str | None = None
    confirmation: ConfirmationRequest | None = None

    @property
    def is_final(self) -> bool:
        return self.text is not None
