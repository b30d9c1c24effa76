"""AgentState: observable run state pushed to listeners on every change."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from loguru import logger


class AgentStep(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StateSnapshot:
    is_running: bool = False
    current_step: AgentStep = AgentStep.IDLE
    iteration_count: int = 0
    current_tool: str | None = None
    last_error: str | None = None


Listener = Callable[[StateSnapshot], None]


class AgentState:
    """Mutated only by the reasoning loop; read by any number of listeners.

    Listeners receive an immutable ``StateSnapshot`` after each change.
    A listener that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._snapshot = StateSnapshot()
        self._listeners: list[Listener] = []

    # ── Observers ───────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.warning(f"State listener raised: {e}")

    # ── Read ────────────────────────────────────────────────

    @property
    def snapshot(self) -> StateSnapshot:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._snapshot.is_running

    @property
    def current_step(self) -> AgentStep:
        return self._snapshot.current_step

    @property
    def iteration_count(self) -> int:
        return self._snapshot.iteration_count

    @property
    def last_error(self) -> str | None:
        return self._snapshot.last_error

    # ── Transitions ─────────────────────────────────────────

    def start(self, iteration_count: int = 0) -> None:
        """Fresh state for a new run or resume."""
        self._set(StateSnapshot(is_running=True, current_step=AgentStep.THINKING, iteration_count=iteration_count))

    def update(self, step: AgentStep | None = None, **changes) -> None:
        if step is not None:
            changes["current_step"] = step
        self._set(replace(self._snapshot, **changes))

    def complete(self) -> None:
        self.update(AgentStep.DONE, is_running=False, current_tool=None)

    def fail(self, error: str) -> None:
        self.update(AgentStep.ERROR, is_running=False, current_tool=None, last_error=error)

    def cancel(self, reason: str | None = None) -> None:
        self.update(AgentStep.CANCELLED, is_running=False, current_tool=None, last_error=reason)

    def _set(self, snapshot: StateSnapshot) -> None:
        self._snapshot = snapshot
        self._notify()
