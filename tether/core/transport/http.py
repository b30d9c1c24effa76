"""HTTP transport: OpenAI-compatible /chat/completions over httpx (JSON + SSE)."""

from __future__ import annotations

import time
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from tether.core.cancellation import CancellationToken, race
from tether.core.config.schema import TransportConfig
from tether.core.errors import RateLimitError, TransportError
from tether.core.logging import redact
from tether.core.transport.base import BaseTransport, ChatResponse, StreamChunk
from tether.core.transport.parsing import (
    SSE_DONE,
    parse_completion,
    parse_sse_line,
    parse_stream_event,
)
from tether.core.transport.retry import RetryPolicy, call_with_retry, parse_retry_after
from tether.memory.models import Message

COMPLETIONS_PATH = "/chat/completions"


class HttpTransport(BaseTransport):
    """Async HTTP client for any OpenAI-compatible chat endpoint.

    One ``httpx.AsyncClient`` is shared by all calls, so a single instance
    can serve several agents at once.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        retry: RetryPolicy | None = None,
        redact_content: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._retry = retry or RetryPolicy()
        self._redact_content = redact_content
        self._http = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: TransportConfig) -> HttpTransport:
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            model=config.model,
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

    # ── Internal ─────────────────────────────────────────────

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_payload(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Single attempt. Maps httpx failures onto the error taxonomy."""
        try:
            resp = await self._http.post(
                COMPLETIONS_PATH, json=payload, headers=self._build_headers()
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error: {e}", retryable=True) from e

        _raise_for_status(resp)
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(
                "Invalid JSON in response",
                status_code=resp.status_code,
                body=resp.text[:500],
            ) from e

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        request = self._http.build_request(
            "POST", COMPLETIONS_PATH, json=payload, headers=self._build_headers()
        )
        try:
            resp = await self._http.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error: {e}", retryable=True) from e

        if resp.status_code >= 400:
            await resp.aread()
            await resp.aclose()
            _raise_for_status(resp)
        return resp

    # ── Public API ───────────────────────────────────────────

    async def send(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> ChatResponse:
        payload = self._build_payload(messages, tools)
        logger.debug(f"POST {COMPLETIONS_PATH}: {redact(payload, self._redact_content)}")

        start = time.perf_counter()
        data = await call_with_retry(
            lambda: self._post(payload),
            self._retry,
            cancellation_token,
            label=f"chat {self.model}",
        )
        logger.debug(
            f"Completion in {time.perf_counter() - start:.2f}s: "
            f"{redact(data, self._redact_content)}"
        )
        return parse_completion(data)

    async def stream(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(messages, tools, stream=True)
        logger.debug(f"POST {COMPLETIONS_PATH} (stream): {redact(payload, self._redact_content)}")

        resp = await call_with_retry(
            lambda: self._open_stream(payload),
            self._retry,
            cancellation_token,
            label=f"stream {self.model}",
        )
        lines = resp.aiter_lines()
        try:
            while True:
                try:
                    line = await race(lines.__anext__(), cancellation_token)
                except StopAsyncIteration:
                    break
                event = parse_sse_line(line)
                if event is None:
                    continue
                if event == SSE_DONE:
                    break
                yield parse_stream_event(event)
        except httpx.TransportError as e:
            raise TransportError(f"Stream interrupted: {e}") from e
        finally:
            await resp.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    body = resp.text[:500]
    if resp.status_code == 429:
        raise RateLimitError(
            "Rate limit exceeded (HTTP 429)",
            retry_after=parse_retry_after(resp.headers.get("retry-after")),
            body=body,
        )
    raise TransportError(
        f"HTTP {resp.status_code}: {body}",
        status_code=resp.status_code,
        body=body,
        retryable=resp.status_code >= 500,
    )
