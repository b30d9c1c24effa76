"""Tool executor: schema validation, confirmation gate, timeout race."""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable

import jsonschema
from loguru import logger

from tether.agent.tools import ToolDescriptor
from tether.core.cancellation import CancellationToken, race
from tether.core.errors import (
    CancellationError,
    MalformedToolCallError,
    ToolError,
    ToolExecutionError,
    ToolTimeoutError,
)

ToolErrorHook = Callable[[str, Exception], Any]


@dataclass
class Observation:
    """Text fed back to the model for one tool call."""

    tool_call_id: str
    tool_name: str
    content: str
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolExecutor:
    """Runs tool handlers for one agent.

    Confirmations are parked as futures keyed by tool_call_id and resolved
    with :meth:`resolve`.
    """

    def __init__(self, on_tool_error: ToolErrorHook | None = None) -> None:
        self.on_tool_error = on_tool_error
        self._pending: dict[str, asyncio.Future[bool]] = {}

    # ── Validation ───────────────────────────────────────────

    @staticmethod
    def validate(tool: ToolDescriptor, arguments: dict[str, Any]) -> None:
        """Raise ``MalformedToolCallError`` when ``arguments`` break the tool's schema."""
        try:
            jsonschema.validate(arguments, tool.parameters)
        except jsonschema.ValidationError as e:
            raise MalformedToolCallError(
                f"Error: invalid arguments for '{tool.name}': {e.message}",
                tool_name=tool.name,
                raw=json.dumps(arguments, default=str),
            ) from e
        except jsonschema.SchemaError as e:
            logger.warning(f"Tool '{tool.name}' has an invalid schema, skipping validation: {e.message}")

    # ── Confirmation gate ────────────────────────────────────

    @staticmethod
    def needs_confirmation(tool: ToolDescriptor, arguments: dict[str, Any]) -> bool:
        return tool.confirmation.requires(arguments)

    def park(self, tool_call_id: str) -> None:
        """Open a confirmation slot. Must happen before the request is announced."""
        if tool_call_id not in self._pending:
            self._pending[tool_call_id] = asyncio.get_running_loop().create_future()

    def resolve(self, tool_call_id: str, approved: bool) -> bool:
        """Answer a parked confirmation. Returns False when nothing is waiting on that id."""
        future = self._pending.get(tool_call_id)
        if future is None or future.done():
            logger.warning(f"No pending confirmation for tool call {tool_call_id}")
            return False
        future.set_result(approved)
        return True

    def discard_pending(self) -> None:
        """Drop every parked confirmation; the run that asked for them is gone."""
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    @property
    def pending_confirmations(self) -> list[str]:
        return [cid for cid, fut in self._pending.items() if not fut.done()]

    async def wait_for_confirmation(
        self, tool_call_id: str, token: CancellationToken | None = None
    ) -> bool:
        """Suspend until :meth:`resolve` is called or the token fires."""
        self.park(tool_call_id)
        try:
            return await race(self._pending[tool_call_id], token)
        finally:
            self._pending.pop(tool_call_id, None)

    # ── Execution ────────────────────────────────────────────

    async def run(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        tool_call_id: str,
        token: CancellationToken | None = None,
    ) -> Observation:
        """
        Invoke the handler under the tool's timeout.

        Handler failures and timeouts come back as error observations and
        fire ``on_tool_error``. Only cancellation propagates.
        """
        if token is not None:
            token.raise_if_cancelled()

        logger.debug(f"Executing tool: {tool.name} ({tool_call_id})")
        try:
            result = await race(
                asyncio.wait_for(self._invoke(tool, arguments), timeout=tool.timeout),
                token,
            )
        except CancellationError:
            raise
        except asyncio.TimeoutError:
            return self._failed(tool, tool_call_id, ToolTimeoutError(tool.name, tool.timeout))
        except Exception as e:
            err = ToolExecutionError(f"Tool '{tool.name}' failed: {e}", tool_name=tool.name)
            err.__cause__ = e
            return self._failed(tool, tool_call_id, err)

        content = _stringify(result)
        logger.debug(f"Tool result: {tool.name} → {content[:100]}")
        return Observation(tool_call_id=tool_call_id, tool_name=tool.name, content=content)

    async def execute(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        tool_call_id: str = "direct",
        token: CancellationToken | None = None,
    ) -> Observation:
        """Validate, pass the confirmation gate, then run. Standalone entry point."""
        try:
            self.validate(tool, arguments)
        except MalformedToolCallError as e:
            return Observation(tool_call_id, tool.name, str(e), e)

        if self.needs_confirmation(tool, arguments):
            if not await self.wait_for_confirmation(tool_call_id, token):
                return declined(tool, tool_call_id)
        return await self.run(tool, arguments, tool_call_id, token)

    # ── Internal ─────────────────────────────────────────────

    @staticmethod
    async def _invoke(tool: ToolDescriptor, arguments: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(tool.handler):
            return await tool.handler(**arguments)
        result = await asyncio.to_thread(tool.handler, **arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _failed(self, tool: ToolDescriptor, tool_call_id: str, err: ToolError) -> Observation:
        logger.error(f"Tool error: {tool.name} → {err}")
        self.report(tool.name, err)
        return Observation(tool_call_id, tool.name, f"Error: {err}", err)

    def report(self, name: str, error: Exception) -> None:
        if self.on_tool_error is None:
            return
        try:
            self.on_tool_error(name, error)
        except Exception as e:
            logger.warning(f"on_tool_error hook raised: {e}")


def declined(tool: ToolDescriptor, tool_call_id: str) -> Observation:
    return Observation(
        tool_call_id,
        tool.name,
        f"The user declined to run '{tool.name}'. Do not retry it without asking.",
    )


def _stringify(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        return json.dumps(result, default=str)
    return str(result)
