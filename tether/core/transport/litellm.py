"""LiteLLM transport: any litellm-routed provider (anthropic/*, gemini/*, ...)."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import litellm
from loguru import logger

from tether.core.cancellation import CancellationToken, race
from tether.core.config.schema import TransportConfig
from tether.core.errors import RateLimitError, TetherError, TransportError
from tether.core.logging import redact
from tether.core.transport.base import BaseTransport, ChatResponse, StreamChunk, ToolCallDelta
from tether.core.transport.parsing import extract_tool_calls
from tether.core.transport.retry import RetryPolicy, call_with_retry, parse_retry_after
from tether.memory.models import Message, TokenUsage, ToolCall

# Suppress litellm noise
litellm.suppress_debug_info = True


class LiteLLMTransport(BaseTransport):
    """litellm-backed transport sharing the HTTP transport's retry and error semantics."""

    def __init__(
        self,
        model: str = "openai/gpt-4o-mini",
        api_key: str = "",
        api_base: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        retry: RetryPolicy | None = None,
        redact_content: bool = True,
    ):
        self.model = model
        self._api_key = api_key
        self._api_base = api_base
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._retry = retry or RetryPolicy()
        self._redact_content = redact_content

    @classmethod
    def from_config(cls, config: TransportConfig) -> LiteLLMTransport:
        return cls(
            model=config.model,
            api_key=config.api_key,
            api_base=config.base_url or None,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            retry=RetryPolicy(
                max_attempts=config.max_attempts,
                base_delay=config.base_delay,
                max_delay=config.max_delay,
                jitter=config.jitter,
            ),
            redact_content=config.redact_content,
        )

    def _build_kwargs(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        stream: bool = False,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            # retries are ours, not litellm's
            "num_retries": 0,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def _call(self, kwargs: dict[str, Any]) -> Any:
        try:
            return await litellm.acompletion(**kwargs)
        except Exception as e:
            raise _map_error(e) from e

    async def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> ChatResponse:
        kwargs = self._build_kwargs(messages, tools)
        logger.debug(f"litellm.acompletion: {redact(kwargs, self._redact_content)}")
        response = await call_with_retry(
            lambda: self._call(kwargs),
            self._retry,
            cancellation_token,
            label=f"litellm {self.model}",
        )
        return self._to_chat_response(response)

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(messages, tools, stream=True)
        logger.debug(f"litellm.acompletion (stream): {redact(kwargs, self._redact_content)}")
        wrapper = await call_with_retry(
            lambda: self._call(kwargs),
            self._retry,
            cancellation_token,
            label=f"litellm stream {self.model}",
        )
        events = wrapper.__aiter__()
        while True:
            try:
                event = await race(events.__anext__(), cancellation_token)
            except StopAsyncIteration:
                break
            except TetherError:
                raise
            except Exception as e:
                raise _map_error(e) from e
            yield self._to_stream_chunk(event)

    # ── Conversion ───────────────────────────────────────────

    @staticmethod
    def _to_chat_response(response: Any) -> ChatResponse:
        """Convert litellm response → ``ChatResponse``."""
        choice = response.choices[0]
        msg = choice.message
        content = msg.content or ""

        tool_calls = []
        if getattr(msg, "tool_calls", None):
            for tc in msg.tool_calls:
                args = tc.function.arguments
                if not isinstance(args, str):
                    args = json.dumps(args)
                tool_calls.append(
                    ToolCall(id=tc.id, tool_name=tc.function.name, arguments=args or "{}")
                )

        return ChatResponse(
            content=content,
            tool_calls=tool_calls or extract_tool_calls(content),
            finish_reason=choice.finish_reason or "stop",
            usage=_usage(getattr(response, "usage", None)),
        )

    @staticmethod
    def _to_stream_chunk(event: Any) -> StreamChunk:
        chunk = StreamChunk(usage=_usage(getattr(event, "usage", None)))
        for choice in getattr(event, "choices", None) or []:
            delta = choice.delta
            chunk.content += getattr(delta, "content", None) or ""
            for tc in getattr(delta, "tool_calls", None) or []:
                fn = tc.function
                chunk.tool_call_deltas.append(
                    ToolCallDelta(
                        index=getattr(tc, "index", 0) or 0,
                        id=tc.id,
                        name=getattr(fn, "name", None),
                        arguments=getattr(fn, "arguments", None) or "",
                    )
                )
            if choice.finish_reason:
                chunk.finish_reason = choice.finish_reason
        return chunk


def _usage(usage: Any) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        total_tokens=getattr(usage, "total_tokens", 0) or 0,
    )


def _map_error(e: Exception) -> TransportError:
    """litellm exception → transport error kind."""
    if isinstance(e, litellm.RateLimitError):
        headers = getattr(getattr(e, "response", None), "headers", None) or {}
        return RateLimitError(
            f"Rate limit exceeded: {e}",
            retry_after=parse_retry_after(headers.get("retry-after")),
        )
    if isinstance(e, (litellm.Timeout, litellm.APIConnectionError)):
        return TransportError(f"Network error: {e}", retryable=True)
    status = getattr(e, "status_code", None)
    if isinstance(status, int):
        return TransportError(
            f"HTTP {status}: {e}", status_code=status, body=str(e)[:500], retryable=status >= 500
        )
    return TransportError(f"LLM error: {e}")
