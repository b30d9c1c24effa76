"""Agent: the Reason-Act-Observe loop.

One ``_drive`` generator implements the state machine; ``run`` consumes it
with plain requests, ``run_streaming`` and ``resume`` expose it with
streamed requests.

    Idle → Thinking → (Done | ToolCall)
    ToolCall → AwaitingConfirmation? → Executing → Observing → Thinking
    terminal: Done, Error, Cancelled

Loop position lives in data (iteration count + pending tool-call ids in the
checkpoint), never in a suspended frame, so a run survives process death.
"""

from __future__ import annotations

from contextlib import aclosing
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable, Iterable

from loguru import logger

from tether.agent.checkpoint import CheckpointManager
from tether.agent.state import AgentState, AgentStep
from tether.agent.tools import ToolDescriptor, ToolRegistry
from tether.agent.tools.executor import ToolExecutor, declined
from tether.core.cancellation import CancellationToken
from tether.core.errors import (
    AgentBusyError,
    CancellationError,
    IterationLimitExceeded,
    MalformedToolCallError,
    TetherError,
    ToolNotFoundError,
)
from tether.core.transport.base import BaseTransport, ChatResponse, StreamAccumulator
from tether.core.transport.parsing import decode_arguments, extract_tool_calls
from tether.memory.manager import MemoryManager
from tether.memory.models import (
    AgentResponse,
    AgentResult,
    Checkpoint,
    ConfirmationRequest,
    Message,
    TokenUsage,
    ToolCall,
)

if TYPE_CHECKING:
    from tether.core.config.schema import Settings
    from tether.memory.persistence import Persistence

FALLBACK_TEXT = "I have finished the requested tasks."
ABANDONED = "stream closed by consumer"


class AgentStream:
    """
    Items of one streamed run.

    Iterate it with ``async for``. A consumer that stops early must close
    it, either with ``async with agent.run_streaming(...) as stream`` or
    ``await stream.aclose()``: that ends the run as cancelled, pairs any
    unanswered tool calls and frees the agent for the next run.
    """

    def __init__(self, items: AsyncGenerator[AgentResponse, None]):
        self._items = items

    def __aiter__(self) -> AgentStream:
        return self

    async def __anext__(self) -> AgentResponse:
        return await self._items.__anext__()

    async def aclose(self) -> None:
        await self._items.aclose()

    async def __aenter__(self) -> AgentStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class Agent:
    """
    A named reasoning agent bound to one transport, one memory and one tool registry.

    Parameters
    ----------
    transport : BaseTransport
        Model endpoint (shared safely between agents).
    memory : MemoryManager, optional
        Conversation memory. Defaults to an in-memory manager on ``transport``.
    tools : iterable of ToolDescriptor or langchain BaseTool
        Registered once; duplicate names raise ``DuplicateToolError``.
    instructions : str
        System prompt prepended to every request.
    max_iterations : int
        Upper bound on model requests per run.
    tool_timeout : float
        Timeout given to LangChain tools converted here.
    checkpoints : CheckpointManager, optional
        Defaults to one on the memory's persistence backend.
    on_tool_error, on_agent_failure, on_warning, on_confirmation_request
        Optional hooks. Exceptions they raise are logged and ignored.
    """

    def __init__(
        self,
        transport: BaseTransport,
        memory: MemoryManager | None = None,
        tools: Iterable[Any] = (),
        instructions: str = "",
        name: str = "default_agent",
        description: str = "General assistant agent",
        max_iterations: int = 10,
        tool_timeout: float = 30.0,
        checkpoints: CheckpointManager | None = None,
        on_tool_error: Callable[[str, Exception], Any] | None = None,
        on_agent_failure: Callable[[Exception], Any] | None = None,
        on_warning: Callable[[str], Any] | None = None,
        on_confirmation_request: Callable[[ConfirmationRequest], Any] | None = None,
    ):
        self.transport = transport
        self.name = name
        self.description = description
        self.instructions = instructions
        self.max_iterations = max_iterations
        self.tool_timeout = tool_timeout

        self.on_agent_failure = on_agent_failure
        self.on_warning = on_warning
        self.on_confirmation_request = on_confirmation_request

        self.memory = memory or MemoryManager(transport, on_warning=self._warn)
        if self.memory.on_warning is None:
            self.memory.on_warning = self._warn
        self.checkpoints = checkpoints or CheckpointManager(self.memory.persistence)
        if self.checkpoints.on_warning is None:
            self.checkpoints.on_warning = self._warn
        self.registry = ToolRegistry()
        for t in tools:
            self.add_tool(t)
        self.executor = ToolExecutor(on_tool_error=on_tool_error)
        self.state = AgentState()
        self._busy = False
        self._unobserved: list[str] = []

    @classmethod
    def from_config(
        cls,
        settings: Settings,
        transport: BaseTransport | None = None,
        persistence: Persistence | None = None,
        tools: Iterable[Any] = (),
        **hooks: Any,
    ) -> Agent:
        """Build an agent (and its transport/memory) from ``Settings``."""
        from tether.core.transport import make_transport

        transport = transport or make_transport(settings.transport)
        memory = MemoryManager.from_config(settings.memory, transport, persistence)
        return cls(
            transport=transport,
            memory=memory,
            tools=tools,
            instructions=settings.agent.instructions,
            name=settings.agent.name,
            description=settings.agent.description,
            max_iterations=settings.agent.max_iterations,
            tool_timeout=settings.agent.tool_timeout,
            checkpoints=CheckpointManager(persistence, settings.database.conversation_id),
            **hooks,
        )

    # ════════════════════════════════════════════════════════════
    # PUBLIC API
    # ════════════════════════════════════════════════════════════

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def on_tool_error(self) -> Callable[[str, Exception], Any] | None:
        return self.executor.on_tool_error

    @on_tool_error.setter
    def on_tool_error(self, hook: Callable[[str, Exception], Any] | None) -> None:
        self.executor.on_tool_error = hook

    def add_tool(self, tool: Any) -> None:
        """Register a ``ToolDescriptor`` or a LangChain ``BaseTool``."""
        if not isinstance(tool, ToolDescriptor):
            tool = ToolDescriptor.from_langchain(tool, timeout=self.tool_timeout)
        self.registry.register(tool)

    async def run(
        self, user_input: str, cancellation_token: CancellationToken | None = None
    ) -> AgentResult:
        """Run to completion and return the final answer with the run's summed usage."""
        final: AgentResponse | None = None
        usage: TokenUsage | None = None
        async for item in self._drive(user_input, cancellation_token, streaming=False):
            if item.usage is not None:
                usage = item.usage if usage is None else usage + item.usage
            if item.is_final:
                final = item
        if final is None:
            raise TetherError(f"Agent '{self.name}' run ended without a final answer")
        return AgentResult(
            text=final.text or "",
            usage=usage,
            tool_calls=final.tool_calls or [],
            finish_reason=final.finish_reason,
        )

    def run_streaming(
        self, user_input: str, cancellation_token: CancellationToken | None = None
    ) -> AgentStream:
        """
        Stream one run.

        Items are text chunks, confirmation requests, one ``usage`` item per
        model request that ended in tool calls, and a final item carrying
        ``text`` (plus the usage of the last request). Summing ``usage`` over
        all items gives the run total. Use ``async with`` or ``aclose()``
        when you may stop reading early.
        """
        return AgentStream(self._drive(user_input, cancellation_token, streaming=True))

    def resume(
        self,
        checkpoint: Checkpoint | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> AgentStream:
        """Continue an interrupted run. ``None`` loads the latest stored checkpoint."""
        return AgentStream(self._resume(checkpoint, cancellation_token))

    def confirm(self, tool_call_id: str, approved: bool = True) -> bool:
        """Answer a pending confirmation request."""
        return self.executor.resolve(tool_call_id, approved)

    # ════════════════════════════════════════════════════════════
    # LOOP
    # ════════════════════════════════════════════════════════════

    async def _resume(
        self, checkpoint: Checkpoint | None, token: CancellationToken | None
    ) -> AsyncGenerator[AgentResponse, None]:
        if checkpoint is None:
            checkpoint = await self.checkpoints.load()
            if checkpoint is None:
                logger.info(f"[{self.name}] Nothing to resume")
                return
        if not checkpoint.is_running:
            logger.info(f"[{self.name}] Checkpoint already finished ({checkpoint.current_step})")
            result = checkpoint.final_result
            if result is not None:
                yield AgentResponse(
                    text=result.text,
                    usage=result.usage,
                    tool_calls=list(result.tool_calls),
                    finish_reason=result.finish_reason,
                )
            return
        async with aclosing(
            self._drive(None, token, streaming=True, checkpoint=checkpoint)
        ) as items:
            async for item in items:
                yield item

    async def _drive(
        self,
        user_input: str | None,
        token: CancellationToken | None,
        streaming: bool,
        checkpoint: Checkpoint | None = None,
    ) -> AsyncGenerator[AgentResponse, None]:
        if self._busy:
            raise AgentBusyError(f"Agent '{self.name}' already has a run in flight")
        self._busy = True
        self._unobserved = []
        token = token or CancellationToken()
        history: list[ToolCall] = []
        # run total, recorded in the terminal checkpoint so resume can return it
        usage: TokenUsage | None = None
        iteration = checkpoint.iteration_count if checkpoint else 0
        finished = False
        self.state.start(iteration)

        try:
            if checkpoint is None:
                if not self.memory.loaded:
                    await self.memory.init()
                token.raise_if_cancelled()
                await self.memory.add(Message.user(user_input or ""))
            else:
                logger.info(
                    f"[{self.name}] Resuming at iteration {iteration} "
                    f"({len(checkpoint.pending_tool_call_ids)} pending tool calls)"
                )
                self.memory.restore(checkpoint.messages)
                pending = checkpoint.pending_calls()
                history.extend(pending)
                async for item in self._observe(pending, token, iteration):
                    yield item

            while True:
                token.raise_if_cancelled()
                if iteration >= self.max_iterations:
                    raise IterationLimitExceeded(self.max_iterations)

                self.state.update(AgentStep.THINKING, iteration_count=iteration, current_tool=None)
                await self.memory.compact(token)
                await self._checkpoint(iteration, AgentStep.THINKING)

                iteration += 1
                self.state.update(iteration_count=iteration)
                if streaming:
                    acc = StreamAccumulator()
                    gate = _EmbeddedCallGate()
                    async with aclosing(
                        self.transport.stream(self._context(), self._tool_definitions(), token)
                    ) as chunks:
                        async for chunk in chunks:
                            acc.add(chunk)
                            text = gate.feed(chunk.content)
                            if text:
                                yield AgentResponse(text_chunk=text)
                    response = acc.response()
                    embedded = False
                    if not response.tool_calls:
                        response.tool_calls = extract_tool_calls(response.content)
                        embedded = bool(response.tool_calls)
                    rest = gate.release(suppress=embedded)
                    if rest:
                        yield AgentResponse(text_chunk=rest)
                else:
                    response = await self.transport.send(
                        self._context(), self._tool_definitions(), token
                    )

                if response.usage is not None:
                    usage = response.usage if usage is None else usage + response.usage

                if response.tool_calls:
                    logger.debug(
                        f"[{self.name}] LLM tool calls: {[tc.tool_name for tc in response.tool_calls]}"
                    )
                    if response.usage is not None:
                        yield AgentResponse(usage=response.usage)
                    await self.memory.add(Message.assistant(response.content, response.tool_calls))
                    history.extend(response.tool_calls)
                    await self._checkpoint(
                        iteration, AgentStep.EXECUTING_TOOL, [tc.id for tc in response.tool_calls]
                    )
                    async with aclosing(self._observe(response.tool_calls, token, iteration)) as items:
                        async for item in items:
                            yield item
                    continue

                final = await self._finalize(response, iteration, history, usage)
                finished = True
                yield final
                return

        except GeneratorExit:
            if finished:
                raise
            # consumer closed the stream (aclose or garbage collection) mid-run
            logger.info(f"[{self.name}] Run abandoned by its consumer")
            self.executor.discard_pending()
            await self._close_unobserved()
            self.state.cancel(ABANDONED)
            await self._checkpoint(iteration, AgentStep.CANCELLED, is_running=False, last_error=ABANDONED)
            raise
        except CancellationError as e:
            logger.info(f"[{self.name}] Run cancelled: {e.reason or 'no reason'}")
            await self._close_unobserved()
            self.state.cancel(e.reason)
            await self._checkpoint(iteration, AgentStep.CANCELLED, is_running=False, last_error=str(e))
            raise
        except Exception as e:
            logger.error(f"[{self.name}] Run failed: {e}")
            self.state.fail(str(e))
            await self._checkpoint(iteration, AgentStep.ERROR, is_running=False, last_error=str(e))
            self._fire(self.on_agent_failure, e)
            raise
        finally:
            self._busy = False

    async def _finalize(
        self,
        response: ChatResponse,
        iteration: int,
        history: list[ToolCall],
        usage: TokenUsage | None,
    ) -> AgentResponse:
        """
        Record the answer. The final item carries the last request's usage;
        the checkpoint keeps the whole result with the run total ``usage``.
        """
        text = response.content
        if not text.strip():
            self._warn("Agent run completed without final text")
            text = FALLBACK_TEXT
        finish_reason = response.finish_reason or "stop"
        await self.memory.add(Message.assistant(text))
        self.state.complete()
        await self._checkpoint(
            iteration,
            AgentStep.DONE,
            is_running=False,
            final_result=AgentResult(
                text=text, usage=usage, tool_calls=list(history), finish_reason=finish_reason
            ),
        )
        logger.debug(f"[{self.name}] Final answer after {iteration} iterations: {text[:80]!r}")
        return AgentResponse(
            text=text,
            usage=response.usage,
            tool_calls=list(history),
            finish_reason=finish_reason,
        )

    async def _observe(
        self, calls: list[ToolCall], token: CancellationToken, iteration: int
    ) -> AsyncGenerator[AgentResponse, None]:
        """Execute tool calls in order; every call gets exactly one tool message."""
        pending = [tc.id for tc in calls]
        self._unobserved = pending
        for call in calls:
            token.raise_if_cancelled()
            content: str | None = None

            tool = self.registry.get(call.tool_name)
            if tool is None:
                logger.warning(f"[{self.name}] Tool not found: {call.tool_name}")
                content = (
                    f"{ToolNotFoundError(call.tool_name)}. "
                    f"Available tools: {', '.join(self.registry.names()) or 'none'}"
                )
            else:
                try:
                    args = decode_arguments(call)
                    self.executor.validate(tool, args)
                except MalformedToolCallError as e:
                    logger.warning(f"[{self.name}] Malformed tool call: {e}")
                    content = str(e)

            if content is None:
                approved = True
                if self.executor.needs_confirmation(tool, args):
                    self.state.update(AgentStep.AWAITING_CONFIRMATION, current_tool=tool.name)
                    self.executor.park(call.id)
                    request = ConfirmationRequest(
                        tool_call_id=call.id, tool_name=tool.name, arguments=args
                    )
                    self._fire(self.on_confirmation_request, request)
                    yield AgentResponse(confirmation=request)
                    approved = await self.executor.wait_for_confirmation(call.id, token)

                if approved:
                    self.state.update(AgentStep.EXECUTING_TOOL, current_tool=tool.name)
                    content = (await self.executor.run(tool, args, call.id, token)).content
                else:
                    content = declined(tool, call.id).content

            await self.memory.add(Message.tool(content, call.id))
            pending.remove(call.id)
            await self._checkpoint(iteration, AgentStep.EXECUTING_TOOL, pending)

    # ════════════════════════════════════════════════════════════
    # HELPERS
    # ════════════════════════════════════════════════════════════

    async def _close_unobserved(self) -> None:
        """Pair tool calls interrupted by cancellation with an error observation."""
        unobserved, self._unobserved = list(self._unobserved), []
        for call_id in unobserved:
            await self.memory.add(Message.tool("Error: tool call cancelled before it completed", call_id))

    def _context(self) -> list[Message]:
        messages = self.memory.messages()
        if self.instructions:
            return [Message.system(self.instructions), *messages]
        return messages

    def _tool_definitions(self) -> list[dict[str, Any]] | None:
        return self.registry.definitions() or None

    async def _checkpoint(
        self,
        iteration: int,
        step: AgentStep,
        pending: list[str] | None = None,
        is_running: bool = True,
        last_error: str | None = None,
        final_result: AgentResult | None = None,
    ) -> None:
        await self.checkpoints.save(
            self.memory.messages(),
            iteration,
            pending,
            current_step=step.value,
            is_running=is_running,
            last_error=last_error,
            final_result=final_result,
        )

    def _warn(self, message: str) -> None:
        logger.warning(f"[{self.name}] {message}")
        self._fire(self.on_warning, message)

    def _fire(self, hook: Callable[..., Any] | None, *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.warning(f"[{self.name}] Hook {getattr(hook, '__name__', hook)!r} raised: {e}")

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, tools={self.registry.names()})"


class _EmbeddedCallGate:
    """
    Holds streamed text back from the first ``{`` or backtick on.

    Models without native tool calling write the call as JSON, fenced or
    inline. Such text must not reach the consumer as answer chunks; it is
    only known to be a call once the whole response has been parsed.
    """

    MARKERS = ("{", "`")

    def __init__(self) -> None:
        self._text = ""
        self._sent = 0
        self._holding = False

    def feed(self, chunk: str) -> str:
        """Return the part of ``chunk`` that can be shown now."""
        if not chunk:
            return ""
        self._text += chunk
        if self._holding:
            return ""
        hits = [i for i in (self._text.find(m, self._sent) for m in self.MARKERS) if i >= 0]
        end = min(hits) if hits else len(self._text)
        self._holding = bool(hits)
        out, self._sent = self._text[self._sent : end], end
        return out

    def release(self, suppress: bool = False) -> str:
        """Held text once the response is complete; nothing when it was a tool call."""
        rest, self._sent = self._text[self._sent :], len(self._text)
        return "" if suppress else rest
