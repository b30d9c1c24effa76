"""Conversation memory: short-term window, long-term summaries, persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from tether.core.cancellation import CancellationToken
from tether.core.errors import CancellationError, TetherError
from tether.memory.models import Message, Role
from tether.memory.persistence import Persistence

if TYPE_CHECKING:
    from tether.core.config.schema import MemoryConfig
    from tether.core.transport.base import BaseTransport

SUMMARY_PREFIX = "Historical context: "

SUMMARIZER_PROMPT = (
    "You are a helpful summarizer. Summarize the following conversation history "
    "into a single concise paragraph that captures the key points, ongoing topics, "
    "and current context. Keep it under 500 words."
)


def estimate_tokens(messages: list[Message]) -> int:
    """Approximate token count (1 token ~ 4 chars)."""
    chars = 0
    for m in messages:
        chars += len(m.content or "")
        for tc in m.tool_calls:
            chars += len(tc.tool_name) + len(tc.arguments)
    return chars // 4


class MemoryManager:
    """
    Effective context = long-term summaries + short-term window.

    When the window outgrows ``short_limit`` messages or ``token_threshold``
    tokens, its oldest part is summarized through the transport and replaced
    by one ``is_summary`` system message. Cuts never separate an assistant
    tool-call message from its tool results.

    Every message is written to persistence before it joins the window. A
    failing backend is logged once and the manager carries on in memory.
    """

    def __init__(
        self,
        transport: BaseTransport | None = None,
        persistence: Persistence | None = None,
        short_limit: int = 10,
        long_limit: int = 5,
        token_threshold: int = 4000,
        keep_recent: int = 4,
        prune_persisted: bool = False,
        on_warning: Callable[[str], Any] | None = None,
    ):
        self.transport = transport
        self.persistence = persistence
        self.short_limit = short_limit
        self.long_limit = long_limit
        self.token_threshold = token_threshold
        self.keep_recent = max(1, keep_recent)
        self.prune_persisted = prune_persisted
        self.on_warning = on_warning

        self._window: list[Message] = []
        self._summaries: list[Message] = []
        self._degraded = False
        self._loaded = False

    @classmethod
    def from_config(
        cls,
        config: MemoryConfig,
        transport: BaseTransport | None = None,
        persistence: Persistence | None = None,
        on_warning: Callable[[str], Any] | None = None,
    ) -> MemoryManager:
        return cls(
            transport=transport,
            persistence=persistence,
            short_limit=config.short_limit,
            long_limit=config.long_limit,
            token_threshold=config.token_threshold,
            keep_recent=config.keep_recent,
            prune_persisted=config.prune_persisted,
            on_warning=on_warning,
        )

    # ── State ───────────────────────────────────────────────

    @property
    def is_persistent(self) -> bool:
        return self.persistence is not None and not self._degraded

    @property
    def loaded(self) -> bool:
        return self._loaded

    def messages(self) -> list[Message]:
        """Effective context sent to the model."""
        return [*self._summaries, *self._window]

    @property
    def window(self) -> list[Message]:
        return list(self._window)

    @property
    def summaries(self) -> list[Message]:
        return list(self._summaries)

    def __len__(self) -> int:
        return len(self._summaries) + len(self._window)

    # ── Lifecycle ───────────────────────────────────────────

    async def init(self) -> None:
        """Load history from persistence (summaries → long-term, rest → window)."""
        self._loaded = True
        if not self.is_persistent:
            return
        try:
            stored = await self.persistence.load_messages()
        except Exception as e:
            self._degrade("load history", e)
            return
        self.restore(stored)
        logger.info(
            f"Chat history loaded: {len(self._window)} messages, "
            f"{len(self._summaries)} summaries"
        )

    def restore(self, messages: list[Message]) -> None:
        """
        Replace in-memory state from stored history or a checkpoint snapshot.

        The newest summary stands in for every regular message stored before
        it except the ``kept_before`` most recent ones, so a reload rebuilds
        the same context the live manager had. Nothing is written.
        """
        positions = [i for i, m in enumerate(messages) if m.is_summary]
        window = [m for m in messages if not m.is_summary]
        if positions:
            last = positions[-1]
            before = [m for m in messages[:last] if not m.is_summary]
            after = [m for m in messages[last + 1 :] if not m.is_summary]
            kept = messages[last].kept_before
            window = (before[-kept:] if kept else []) + after
        self._summaries = [messages[i] for i in positions][-self.long_limit :]
        self._window = window
        self._loaded = True

    async def add(self, message: Message) -> None:
        """Persist, then append to the window."""
        await self._persist("save_message", message)
        self._window.append(message)
        logger.debug(
            f"Memory +{message.role.value} ({len(message.content)} chars, "
            f"{len(message.tool_calls)} tool calls), window={len(self._window)}"
        )

    async def clear(self) -> None:
        self._window.clear()
        self._summaries.clear()
        await self._persist("clear_messages")

    # ── Summarization ───────────────────────────────────────

    def needs_compaction(self) -> bool:
        if len(self._window) > self.short_limit:
            return True
        return estimate_tokens(self.messages()) > self.token_threshold

    async def compact(self, token: CancellationToken | None = None) -> bool:
        """Summarize the oldest part of the window if it is over budget. Returns True if it did."""
        if not self.needs_compaction():
            return False
        cut = self._split_point()
        if cut <= 0:
            return False

        older, kept = self._window[:cut], self._window[cut:]
        logger.info(f"Memory over budget, summarizing {len(older)} messages")
        summary = await self._summarize(older, token)
        summary_msg = Message.system(
            f"{SUMMARY_PREFIX}{summary}", is_summary=True, kept_before=len(kept)
        )

        await self._persist("save_message", summary_msg)
        self._window = kept
        self._summaries.append(summary_msg)
        if len(self._summaries) > self.long_limit:
            self._summaries = self._summaries[-self.long_limit :]

        if self.prune_persisted:
            await self._persist("delete_old_messages", len(self._window))
        return True

    def _split_point(self) -> int:
        """Index where the kept window starts. 0 means nothing can be summarized."""
        cut = len(self._window) - self.keep_recent
        if cut <= 0:
            return 0
        # a kept tool result must keep the assistant message that requested it
        while cut > 0 and self._window[cut].role == Role.TOOL:
            cut -= 1
        return cut

    async def _summarize(self, messages: list[Message], token: CancellationToken | None) -> str:
        if self.transport is None:
            return _fallback_summary(messages)

        transcript = "\n".join(_transcript_line(m) for m in messages)
        request = [Message.system(SUMMARIZER_PROMPT), Message.user(transcript)]
        try:
            response = await self.transport.send(request, None, token)
        except CancellationError:
            raise
        except TetherError as e:
            logger.error(f"Summarization failed: {e}")
            return _fallback_summary(messages)

        content = (response.content or "").strip()
        if not content:
            logger.warning("Summarizer returned an empty response")
            return _fallback_summary(messages)
        logger.info(f"Summarized {len(messages)} messages into {len(content)} chars")
        return content

    # ── Persistence guard ───────────────────────────────────

    async def _persist(self, method: str, *args: Any) -> None:
        if not self.is_persistent:
            return
        try:
            await getattr(self.persistence, method)(*args)
        except Exception as e:
            self._degrade(method, e)

    def _degrade(self, action: str, error: Exception) -> None:
        self._degraded = True
        message = f"Persistence failed ({action}): {error}. Continuing in memory only"
        logger.error(message)
        if self.on_warning is not None:
            try:
                self.on_warning(message)
            except Exception as e:
                logger.warning(f"on_warning hook raised: {e}")


def _transcript_line(m: Message) -> str:
    if m.tool_calls:
        calls = ", ".join(f"{tc.tool_name}({tc.arguments})" for tc in m.tool_calls)
        return f"{m.role.value}: {m.content} [called {calls}]".strip()
    return f"{m.role.value}: {m.content}"


def _fallback_summary(messages: list[Message]) -> str:
    return (
        f"Previous conversation context: {len(messages)} messages exchanged, "
        "focusing on user queries and agent responses."
    )
