"""Tool system: descriptors, confirmation policies and the ToolRegistry."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable

from loguru import logger

from tether.agent.tools.schema import EMPTY_SCHEMA
from tether.core.errors import DuplicateToolError

if TYPE_CHECKING:
    from langchain_core.tools import BaseTool


@dataclass(frozen=True)
class ConfirmationPolicy:
    """When a tool call must be approved before its side effect runs."""

    mode: str = "none"
    predicate: Callable[[dict[str, Any]], bool] | None = None

    @classmethod
    def none(cls) -> ConfirmationPolicy:
        return cls("none")

    @classmethod
    def always(cls) -> ConfirmationPolicy:
        return cls("always")

    @classmethod
    def conditional(cls, predicate: Callable[[dict[str, Any]], bool]) -> ConfirmationPolicy:
        return cls("conditional", predicate)

    def requires(self, arguments: dict[str, Any]) -> bool:
        if self.mode == "always":
            return True
        if self.mode == "conditional" and self.predicate is not None:
            try:
                return bool(self.predicate(arguments))
            except Exception as e:
                # an unreadable predicate must not skip the gate
                logger.warning(f"Confirmation predicate raised, asking anyway: {e}")
                return True
        return False


@dataclass
class ToolDescriptor:
    """
    A named capability the model may call.

    ``handler`` receives the decoded arguments as keyword arguments and may
    be sync (run in a worker thread) or async. Its return value is
    stringified into the observation.
    """

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(EMPTY_SCHEMA))
    timeout: float = 30.0
    confirmation: ConfirmationPolicy = field(default_factory=ConfirmationPolicy.none)

    def definition(self) -> dict[str, Any]:
        """OpenAI function format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_langchain(
        cls,
        tool: BaseTool,
        timeout: float = 30.0,
        confirmation: ConfirmationPolicy | None = None,
    ) -> ToolDescriptor:
        """Wrap a LangChain ``BaseTool`` (e.g. one built with ``@tool``)."""
        schema = tool.args_schema.model_json_schema() if tool.args_schema else copy.deepcopy(EMPTY_SCHEMA)
        schema.pop("title", None)

        async def _invoke(**kwargs: Any) -> Any:
            return await tool.ainvoke(kwargs)

        return cls(
            name=tool.name,
            description=(tool.description or "").strip(),
            handler=_invoke,
            parameters=schema,
            timeout=timeout,
            confirmation=confirmation or ConfirmationPolicy.none(),
        )


class ToolRegistry:
    """Name → descriptor map. Names are unique; duplicates are rejected at registration."""

    def __init__(self, tools: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        for t in tools:
            self.register(t)

    def register(self, tool: ToolDescriptor) -> None:
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        logger.debug(f"Tool registered: {tool.name}")

    def replace(self, tool: ToolDescriptor) -> None:
        """Register or overwrite (used for engine-injected tools)."""
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [t.definition() for t in self._tools.values()]

    def catalog(self) -> list[dict[str, Any]]:
        """Compact listing for status output."""
        return [
            {
                "name": name,
                "description": (t.description or "").split("\n")[0],
                "timeout": t.timeout,
                "confirmation": t.confirmation.mode,
            }
            for name, t in sorted(self._tools.items())
        ]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


__all__ = ["ConfirmationPolicy", "ToolDescriptor", "ToolRegistry"]
