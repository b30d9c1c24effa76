"""Base transport: strategy interface to the model endpoint."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from tether.core.cancellation import CancellationToken
from tether.memory.models import Message, TokenUsage, ToolCall


@dataclass
class ChatResponse:
    """One complete assistant turn."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    raw: dict[str, Any] | None = None


@dataclass
class ToolCallDelta:
    """Fragment of a streamed tool call. Fragments with the same index belong together."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamChunk:
    content: str = ""
    tool_call_deltas: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage | None = None


class StreamAccumulator:
    """Folds stream chunks into a ``ChatResponse``."""

    def __init__(self) -> None:
        self._content: list[str] = []
        self._calls: dict[int, dict[str, str]] = {}
        self.finish_reason: str | None = None
        self.usage: TokenUsage | None = None

    def add(self, chunk: StreamChunk) -> None:
        if chunk.content:
            self._content.append(chunk.content)
        for delta in chunk.tool_call_deltas:
            slot = self._calls.setdefault(delta.index, {"id": "", "name": "", "arguments": ""})
            if delta.id:
                slot["id"] = delta.id
            if delta.name:
                slot["name"] += delta.name
            slot["arguments"] += delta.arguments
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        if chunk.usage:
            self.usage = chunk.usage

    @property
    def content(self) -> str:
        return "".join(self._content)

    def response(self) -> ChatResponse:
        calls = [
            ToolCall(
                id=slot["id"] or f"call_{index}",
                tool_name=slot["name"],
                arguments=slot["arguments"] or "{}",
            )
            for index, slot in sorted(self._calls.items())
        ]
        return ChatResponse(
            content=self.content,
            tool_calls=calls,
            finish_reason=self.finish_reason,
            usage=self.usage,
        )


class BaseTransport(abc.ABC):
    """Abstract base for model transports.

    Implementations must be safe for concurrent use by independent calls:
    no per-call state lives on the instance.
    """

    model: str = ""

    @abc.abstractmethod
    async def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> ChatResponse:
        """Send a chat completion request and return the whole response."""
        ...

    @abc.abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion. Single consumer, not restartable."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
