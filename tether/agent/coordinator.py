"""Multi-agent coordinator: routes a conversation across named agents via handoff."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from tether.agent.agent import Agent, AgentStream
from tether.agent.tools import ToolDescriptor
from tether.agent.tools.schema import object_schema, string_property
from tether.core.cancellation import CancellationToken
from tether.memory.models import AgentResult, Checkpoint

TRANSFER_TOOL = "transfer_to_agent"


class AgentCoordinator:
    """
    Ordered set of agents; the first one starts active.

    Every agent gets a ``transfer_to_agent`` tool. Calling it (or
    :meth:`trigger_handoff`) only records a pending switch, which is applied
    at the start of the next top-level ``run``/``run_streaming``. Agents that
    should see each other's history must be built on the same ``MemoryManager``.
    """

    def __init__(
        self,
        agents: list[Agent],
        on_warning: Callable[[str], Any] | None = None,
    ):
        if not agents:
            raise ValueError("AgentCoordinator requires at least one agent")
        self.agents: dict[str, Agent] = {}
        for agent in agents:
            if agent.name in self.agents:
                raise ValueError(f"Duplicate agent name: {agent.name}")
            self.agents[agent.name] = agent

        self.on_warning = on_warning
        self._active = agents[0]
        self._pending: str | None = None

        transfer = self._transfer_tool()
        for agent in agents:
            agent.registry.replace(transfer)

    # ── State ───────────────────────────────────────────────

    @property
    def active_agent(self) -> Agent:
        return self._active

    @property
    def pending_handoff(self) -> str | None:
        return self._pending

    def trigger_handoff(self, name: str) -> bool:
        """Record a switch to ``name`` for the next run. Unknown names are reported and ignored."""
        if name not in self.agents:
            message = (
                f"Handoff to unknown agent '{name}' ignored "
                f"(available: {', '.join(self.agents)})"
            )
            logger.warning(message)
            if self.on_warning is not None:
                try:
                    self.on_warning(message)
                except Exception as e:
                    logger.warning(f"on_warning hook raised: {e}")
            return False
        self._pending = name
        logger.info(f"Handoff pending: {self._active.name} → {name}")
        return True

    def _apply_pending(self) -> Agent:
        if self._pending is not None:
            logger.info(f"Active agent: {self._active.name} → {self._pending}")
            self._active = self.agents[self._pending]
            self._pending = None
        return self._active

    # ── Delegation ──────────────────────────────────────────

    async def run(
        self, user_input: str, cancellation_token: CancellationToken | None = None
    ) -> AgentResult:
        agent = self._apply_pending()
        return await agent.run(user_input, cancellation_token)

    def run_streaming(
        self, user_input: str, cancellation_token: CancellationToken | None = None
    ) -> AgentStream:
        agent = self._apply_pending()
        return agent.run_streaming(user_input, cancellation_token)

    def resume(
        self,
        checkpoint: Checkpoint | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> AgentStream:
        """Resume on the active agent. A pending handoff stays pending."""
        return self._active.resume(checkpoint, cancellation_token)

    # ── Transfer tool ───────────────────────────────────────

    def _transfer_tool(self) -> ToolDescriptor:
        peers = "\n".join(f"- {a.name}: {a.description}" for a in self.agents.values())

        async def transfer_to_agent(target_agent: str, reason: str = "") -> str:
            if not self.trigger_handoff(target_agent):
                return (
                    f"Error: Agent '{target_agent}' not found. "
                    f"Available agents: {', '.join(self.agents)}"
                )
            return (
                f"SUCCESS. You have transferred control to {target_agent}. "
                "Stop responding and let the new agent take over for the next request. "
                f"Reason provided: {reason}"
            )

        return ToolDescriptor(
            name=TRANSFER_TOOL,
            description=(
                "Transfer the conversation to another specialized agent. Only do this "
                "if the user request requires the specific expertise of the other agent.\n"
                f"Available agents:\n{peers}"
            ),
            handler=transfer_to_agent,
            parameters=object_schema(
                {
                    "target_agent": string_property(
                        "The exact name of the agent to transfer to."
                    ),
                    "reason": string_property(
                        "Reason for transfer so the next agent understands context."
                    ),
                },
                required=["target_agent"],
            ),
        )
