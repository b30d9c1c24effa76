"""Checkpoint manager: snapshot in-flight loop state, load it back for resume."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from tether.memory.models import AgentResult, Checkpoint, Message
from tether.memory.persistence import Persistence


class CheckpointManager:
    """Writes one overwriting checkpoint per conversation.

    The latest checkpoint is also kept on the instance, so resume works
    in-process without a backend. Save failures are logged and reported
    through ``on_warning``; the loop never stops because of them.
    """

    def __init__(
        self,
        persistence: Persistence | None = None,
        conversation_id: str = "default",
        on_warning: Callable[[str], Any] | None = None,
    ):
        self.persistence = persistence
        self.conversation_id = conversation_id
        self.on_warning = on_warning
        self.latest: Checkpoint | None = None

    async def save(
        self,
        messages: list[Message],
        iteration_count: int,
        pending_tool_call_ids: list[str] | None = None,
        current_step: str = "thinking",
        is_running: bool = True,
        last_error: str | None = None,
        final_result: AgentResult | None = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            conversation_id=self.conversation_id,
            messages=list(messages),
            iteration_count=iteration_count,
            pending_tool_call_ids=list(pending_tool_call_ids or []),
            is_running=is_running,
            current_step=current_step,
            last_error=last_error,
            final_result=final_result,
        )
        self.latest = checkpoint
        if self.persistence is not None:
            try:
                await self.persistence.save_checkpoint(checkpoint)
            except Exception as e:
                self._warn(f"Checkpoint save failed: {e}")
        logger.debug(
            f"Checkpoint saved: step={current_step}, iteration={iteration_count}, "
            f"pending={len(checkpoint.pending_tool_call_ids)}, running={is_running}"
        )
        return checkpoint

    async def load(self) -> Checkpoint | None:
        """Latest checkpoint from persistence, falling back to the in-process copy."""
        if self.persistence is not None:
            try:
                stored = await self.persistence.load_checkpoint()
            except Exception as e:
                self._warn(f"Checkpoint load failed: {e}")
            else:
                if stored is not None:
                    self.latest = stored
                    return stored
        return self.latest

    def _warn(self, message: str) -> None:
        logger.error(message)
        if self.on_warning is not None:
            try:
                self.on_warning(message)
            except Exception as e:
                logger.warning(f"on_warning hook raised: {e}")
