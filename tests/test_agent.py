"""Tests for tether.agent.agent (reasoning loop, streaming, checkpoint/resume)."""

import asyncio

import pytest

from fakes import ScriptedTransport, call, calls, reply
from tether.agent.agent import ABANDONED, FALLBACK_TEXT, Agent
from tether.agent.checkpoint import CheckpointManager
from tether.agent.state import AgentStep
from tether.agent.tools import ConfirmationPolicy, ToolDescriptor
from tether.core.cancellation import CancellationToken
from tether.core.errors import (
    AgentBusyError,
    CancellationError,
    DuplicateToolError,
    IterationLimitExceeded,
    TetherError,
    TransportError,
)
from tether.memory.manager import MemoryManager
from tether.memory.models import AgentResponse, Checkpoint, Message, Role, ToolCall
from tether.memory.store import SQLiteStore


def _agent(transport, *tools, **kwargs):
    return Agent(transport, tools=tools, instructions="You are a test agent.", **kwargs)


def _assert_paired(messages):
    """Every tool call has exactly one tool message, and every tool message has its call."""
    requested = [tc.id for m in messages if m.role == Role.ASSISTANT for tc in m.tool_calls]
    answered = [m.tool_call_id for m in messages if m.role == Role.TOOL]
    assert sorted(requested) == sorted(answered)


async def _collect(stream):
    return [item async for item in stream]


# --- Run ---


@pytest.mark.asyncio
async def test_calculator_scenario(calculator):
    transport = ScriptedTransport(
        [call("calculator", {"expression": "0.15 * 250"}), reply("15% of 250 is 37.5.")]
    )
    agent = _agent(transport, calculator)

    result = await agent.run("Calculate 15% of 250")

    assert "37.5" in result.text
    assert result.finish_reason == "stop"
    assert result.usage.total_tokens == 30
    assert [tc.tool_name for tc in result.tool_calls] == ["calculator"]
    assert transport.request_count == 2

    first = transport.requests[0]
    assert first["messages"][0].role == Role.SYSTEM
    assert first["messages"][0].content == "You are a test agent."
    assert first["tools"][0]["function"]["name"] == "calculator"

    second = transport.requests[1]["messages"]
    assert second[-1].role == Role.TOOL
    assert second[-1].content == "37.5"
    assert second[-1].tool_call_id == "call_1"
    _assert_paired(agent.memory.messages())


@pytest.mark.asyncio
async def test_plain_answer_without_tools():
    transport = ScriptedTransport([reply("Hello!")])
    agent = _agent(transport)

    result = await agent.run("hi")

    assert result.text == "Hello!"
    assert result.tool_calls == []
    assert transport.requests[0]["tools"] is None
    assert [m.role for m in agent.memory.messages()] == [Role.USER, Role.ASSISTANT]


@pytest.mark.asyncio
async def test_unknown_tool_is_observed(calculator):
    transport = ScriptedTransport([call("weather", {"city": "Oslo"}), reply("I can't check weather.")])
    agent = _agent(transport, calculator)

    result = await agent.run("Weather in Oslo?")

    tool_msg = transport.requests[1]["messages"][-1]
    assert tool_msg.content.startswith("Error: unknown tool 'weather'")
    assert "calculator" in tool_msg.content
    assert agent.state.iteration_count == 2
    assert result.text == "I can't check weather."


@pytest.mark.asyncio
async def test_malformed_arguments_are_observed(calculator):
    transport = ScriptedTransport([call("calculator", '{"expression": '), reply("Sorry.")])
    agent = _agent(transport, calculator)

    await agent.run("2+2")

    tool_msg = transport.requests[1]["messages"][-1]
    assert "not valid JSON" in tool_msg.content


@pytest.mark.asyncio
async def test_schema_violation_is_observed(calculator):
    transport = ScriptedTransport([call("calculator", {"expr": "1"}), reply("Sorry.")])
    agent = _agent(transport, calculator)

    await agent.run("2+2")

    tool_msg = transport.requests[1]["messages"][-1]
    assert tool_msg.content.startswith("Error: invalid arguments for 'calculator'")


@pytest.mark.asyncio
async def test_tool_failure_fires_hook_and_loop_continues():
    errors = []

    def _explode():
        raise RuntimeError("upstream down")

    tool = ToolDescriptor(name="explode", description="Always fails", handler=_explode)
    transport = ScriptedTransport([call("explode"), reply("The tool failed.")])
    agent = _agent(transport, tool, on_tool_error=lambda name, err: errors.append(name))

    result = await agent.run("go")

    assert errors == ["explode"]
    assert "upstream down" in transport.requests[1]["messages"][-1].content
    assert result.text == "The tool failed."


@pytest.mark.asyncio
async def test_multiple_calls_observed_in_order(calculator):
    transport = ScriptedTransport(
        [
            calls(
                ("calculator", {"expression": "1+1"}, "c1"),
                ("calculator", {"expression": "2*3"}, "c2"),
            ),
            reply("2 and 6"),
        ]
    )
    agent = _agent(transport, calculator)

    await agent.run("both please")

    tool_msgs = [m for m in agent.memory.messages() if m.role == Role.TOOL]
    assert [(m.tool_call_id, m.content) for m in tool_msgs] == [("c1", "2"), ("c2", "6")]


@pytest.mark.asyncio
async def test_empty_final_answer_uses_fallback():
    warnings = []
    transport = ScriptedTransport([reply("   ")])
    agent = _agent(transport, on_warning=warnings.append)

    result = await agent.run("hi")

    assert result.text == FALLBACK_TEXT
    assert warnings == ["Agent run completed without final text"]


@pytest.mark.asyncio
async def test_add_tool_rejects_duplicates(calculator):
    agent = _agent(ScriptedTransport(), calculator)
    with pytest.raises(DuplicateToolError):
        agent.add_tool(calculator)


@pytest.mark.asyncio
async def test_add_langchain_tool():
    from langchain_core.tools import tool as lc_tool

    @lc_tool
    def shout(text: str) -> str:
        """Upper-case the text."""
        return text.upper()

    transport = ScriptedTransport([call("shout", {"text": "hey"}), reply("HEY")])
    agent = _agent(transport)
    agent.add_tool(shout)

    await agent.run("shout hey")

    assert transport.requests[1]["messages"][-1].content == "HEY"


# --- Limits, errors, cancellation ---


@pytest.mark.asyncio
async def test_run_without_final_item_raises(monkeypatch):
    agent = _agent(ScriptedTransport())

    async def no_final(*args, **kwargs):
        yield AgentResponse(text_chunk="partial")

    monkeypatch.setattr(agent, "_drive", no_final)

    with pytest.raises(TetherError, match="without a final answer"):
        await agent.run("hi")


@pytest.mark.asyncio
async def test_iteration_limit(calculator):
    failures = []
    transport = ScriptedTransport(
        [call("calculator", {"expression": "1+1"}, call_id=f"c{i}") for i in range(11)]
    )
    memory = MemoryManager(transport, short_limit=1000, token_threshold=1_000_000)
    agent = _agent(transport, calculator, memory=memory, on_agent_failure=failures.append)

    with pytest.raises(IterationLimitExceeded):
        await agent.run("loop forever")

    assert transport.request_count == 10
    assert len(transport.responses) == 1
    assert isinstance(failures[0], IterationLimitExceeded)
    assert agent.state.current_step == AgentStep.ERROR
    assert agent.checkpoints.latest.is_running is False
    _assert_paired(agent.memory.messages())


@pytest.mark.asyncio
async def test_transport_error_propagates():
    failures = []
    transport = ScriptedTransport([TransportError("HTTP 500: boom", status_code=500, retryable=True)])
    agent = _agent(transport, on_agent_failure=failures.append)

    with pytest.raises(TransportError):
        await agent.run("hi")

    assert agent.state.current_step == AgentStep.ERROR
    assert "boom" in agent.state.last_error
    assert len(failures) == 1
    assert agent.is_busy is False


@pytest.mark.asyncio
async def test_pre_cancelled_run_makes_no_requests():
    transport = ScriptedTransport([reply("never")])
    agent = _agent(transport)
    token = CancellationToken()
    token.cancel("user left")

    with pytest.raises(CancellationError):
        await agent.run("hi", token)

    assert transport.request_count == 0
    assert agent.state.current_step == AgentStep.CANCELLED
    assert agent.checkpoints.latest.current_step == "cancelled"
    assert agent.is_busy is False


@pytest.mark.asyncio
async def test_cancel_between_tool_calls_keeps_pairing(calculator):
    token = CancellationToken()

    async def _stop():
        token.cancel("stop now")
        return "stopping"

    stopper = ToolDescriptor(name="stop", description="Cancels the run", handler=_stop)
    transport = ScriptedTransport(
        [calls(("stop", {}, "c1"), ("calculator", {"expression": "1+1"}, "c2"))]
    )
    agent = _agent(transport, calculator, stopper)

    with pytest.raises(CancellationError):
        await agent.run("go", token)

    messages = agent.memory.messages()
    _assert_paired(messages)
    c2 = next(m for m in messages if m.tool_call_id == "c2")
    assert "cancelled" in c2.content
    assert transport.request_count == 1


@pytest.mark.asyncio
async def test_second_run_while_busy_is_rejected():
    tool = ToolDescriptor(
        name="pay",
        description="Pay an invoice",
        handler=lambda: "paid",
        confirmation=ConfirmationPolicy.always(),
    )
    transport = ScriptedTransport([call("pay"), reply("Paid.")])
    agent = _agent(transport, tool)

    stream = agent.run_streaming("pay it")
    first = await stream.__anext__()
    while first.confirmation is None:
        first = await stream.__anext__()
    assert agent.is_busy

    with pytest.raises(AgentBusyError):
        await agent.run("something else")

    assert agent.confirm(first.confirmation.tool_call_id, True)
    rest = await _collect(stream)
    assert rest[-1].text == "Paid."
    assert agent.is_busy is False


@pytest.mark.asyncio
async def test_closing_stream_early_ends_run_as_cancelled():
    transport = ScriptedTransport([reply("A long streamed answer."), reply("Second answer.")])
    agent = _agent(transport)

    async with agent.run_streaming("hi") as stream:
        async for item in stream:
            assert item.text_chunk == "A lon"
            break

    assert agent.is_busy is False
    checkpoint = agent.checkpoints.latest
    assert checkpoint.current_step == "cancelled"
    assert checkpoint.is_running is False
    assert checkpoint.last_error == ABANDONED
    assert agent.state.current_step == AgentStep.CANCELLED

    result = await agent.run("again")
    assert result.text == "Second answer."


@pytest.mark.asyncio
async def test_closing_stream_at_confirmation_pairs_the_call():
    ran = []
    tool = ToolDescriptor(
        name="pay",
        description="Pay an invoice",
        handler=lambda: ran.append(True),
        confirmation=ConfirmationPolicy.always(),
    )
    transport = ScriptedTransport([call("pay", call_id="p1")])
    agent = _agent(transport, tool)

    stream = agent.run_streaming("pay it")
    items = [await stream.__anext__(), await stream.__anext__()]
    assert items[0].usage is not None
    assert items[1].confirmation.tool_call_id == "p1"

    await stream.aclose()

    assert ran == []
    assert agent.is_busy is False
    assert agent.executor.pending_confirmations == []
    assert agent.confirm("p1", True) is False
    _assert_paired(agent.memory.messages())
    tool_msg = agent.memory.messages()[-1]
    assert tool_msg.tool_call_id == "p1"
    assert "cancelled" in tool_msg.content
    assert agent.checkpoints.latest.pending_tool_call_ids == []


@pytest.mark.asyncio
async def test_closing_stream_after_final_keeps_done_checkpoint():
    transport = ScriptedTransport([reply("done")])
    agent = _agent(transport)

    async with agent.run_streaming("hi") as stream:
        async for item in stream:
            if item.is_final:
                break

    assert agent.is_busy is False
    assert agent.checkpoints.latest.current_step == "done"
    assert agent.checkpoints.latest.final_text == "done"


@pytest.mark.asyncio
async def test_cancel_while_streaming_writes_cancelled_checkpoint():
    token = CancellationToken()
    transport = ScriptedTransport([reply("This answer is streamed in many small chunks.")])
    agent = _agent(transport)

    chunks = []
    with pytest.raises(CancellationError):
        async for item in agent.run_streaming("talk", token):
            if item.text_chunk:
                chunks.append(item.text_chunk)
                token.cancel("user pressed stop")

    assert chunks == ["This "]
    checkpoint = agent.checkpoints.latest
    assert checkpoint.current_step == "cancelled"
    assert checkpoint.is_running is False
    assert "user pressed stop" in checkpoint.last_error
    assert agent.is_busy is False
    assert [m.role for m in agent.memory.messages()] == [Role.USER]


# --- Streaming ---


@pytest.mark.asyncio
async def test_streaming_yields_chunks_then_final():
    transport = ScriptedTransport([reply("The answer is 42.")])
    agent = _agent(transport)

    items = await _collect(agent.run_streaming("answer?"))

    chunks = [i.text_chunk for i in items if i.text_chunk]
    assert len(chunks) > 1
    assert "".join(chunks) == "The answer is 42."
    assert items[-1].is_final
    assert items[-1].text == "The answer is 42."
    assert items[-1].usage.total_tokens == 15


@pytest.mark.asyncio
async def test_streaming_recovers_tool_call_written_as_text(calculator):
    fenced = '```json\n{"tool": "calculator", "args": {"expression": "2*3"}}\n```'
    transport = ScriptedTransport([reply(fenced), reply("It is 6.")])
    agent = _agent(transport, calculator)

    items = await _collect(agent.run_streaming("2*3?"))

    assert items[-1].text == "It is 6."
    tool_msg = transport.requests[1]["messages"][-1]
    assert tool_msg.role == Role.TOOL
    assert tool_msg.content == "6"
    # the fenced call never reaches the consumer as answer text
    chunks = "".join(i.text_chunk for i in items if i.text_chunk)
    assert chunks == "It is 6."


@pytest.mark.asyncio
async def test_streaming_holds_prose_before_embedded_call(calculator):
    text = 'Let me compute. {"tool": "calculator", "args": {"expression": "1+1"}}'
    transport = ScriptedTransport([reply(text), reply("Two.")])
    agent = _agent(transport, calculator)

    items = await _collect(agent.run_streaming("1+1?"))

    chunks = [i.text_chunk for i in items if i.text_chunk]
    assert "".join(chunks) == "Let me compute. Two."
    assert not any("{" in c for c in chunks)


@pytest.mark.asyncio
async def test_streaming_releases_braces_that_are_not_calls():
    text = "Use {name} as a placeholder and `x` for code."
    transport = ScriptedTransport([reply(text)])
    agent = _agent(transport)

    items = await _collect(agent.run_streaming("explain"))

    assert "".join(i.text_chunk for i in items if i.text_chunk) == text
    assert items[-1].text == text


@pytest.mark.asyncio
async def test_streaming_reports_usage_per_model_response(calculator):
    transport = ScriptedTransport(
        [call("calculator", {"expression": "2+2"}), reply("4", total_tokens=20)]
    )
    agent = _agent(transport, calculator)

    items = await _collect(agent.run_streaming("2+2"))

    usages = [i.usage.total_tokens for i in items if i.usage is not None]
    assert usages == [15, 20]
    assert items[-1].usage.total_tokens == 20
    assert agent.checkpoints.latest.final_result.usage.total_tokens == 35


@pytest.mark.asyncio
async def test_confirmation_declined():
    ran = []
    requests = []
    tool = ToolDescriptor(
        name="delete_all",
        description="Delete everything",
        handler=lambda: ran.append(True),
        confirmation=ConfirmationPolicy.always(),
    )
    transport = ScriptedTransport([call("delete_all", call_id="del"), reply("Okay, not deleting.")])
    agent = _agent(transport, tool, on_confirmation_request=requests.append)

    final = None
    async for item in agent.run_streaming("wipe it"):
        if item.confirmation:
            assert agent.state.current_step == AgentStep.AWAITING_CONFIRMATION
            agent.confirm(item.confirmation.tool_call_id, False)
        elif item.is_final:
            final = item

    assert ran == []
    assert [r.tool_call_id for r in requests] == ["del"]
    assert "declined" in transport.requests[1]["messages"][-1].content
    assert final.text == "Okay, not deleting."


@pytest.mark.asyncio
async def test_conditional_confirmation_skips_small_amounts():
    tool = ToolDescriptor(
        name="transfer",
        description="Transfer money",
        handler=lambda amount: f"sent {amount}",
        parameters={
            "type": "object",
            "properties": {"amount": {"type": "number"}},
            "required": ["amount"],
        },
        confirmation=ConfirmationPolicy.conditional(lambda args: args["amount"] > 100),
    )
    transport = ScriptedTransport([call("transfer", {"amount": 5}), reply("Sent.")])
    agent = _agent(transport, tool)

    items = await _collect(agent.run_streaming("send 5"))

    assert not any(i.confirmation for i in items)
    assert transport.requests[1]["messages"][-1].content == "sent 5"


# --- State ---


@pytest.mark.asyncio
async def test_state_listener_sees_transitions(calculator):
    transport = ScriptedTransport([call("calculator", {"expression": "2+2"}), reply("4")])
    agent = _agent(transport, calculator)
    seen = []
    unsubscribe = agent.state.subscribe(lambda snap: seen.append(snap))

    await agent.run("2+2")
    unsubscribe()

    steps = [s.current_step for s in seen]
    assert steps[0] == AgentStep.THINKING
    assert AgentStep.EXECUTING_TOOL in steps
    assert steps[-1] == AgentStep.DONE
    assert any(s.current_tool == "calculator" for s in seen)
    assert seen[-1].is_running is False
    assert seen[-1].iteration_count == 2


# --- Checkpoint / resume ---


@pytest.mark.asyncio
async def test_finished_run_checkpoint():
    transport = ScriptedTransport([reply("done")])
    agent = _agent(transport)
    await agent.run("hi")

    checkpoint = agent.checkpoints.latest
    assert checkpoint.is_running is False
    assert checkpoint.current_step == "done"
    assert checkpoint.final_text == "done"
    assert checkpoint.pending_tool_call_ids == []


@pytest.mark.asyncio
async def test_resume_finished_checkpoint_returns_stored_result(calculator):
    transport = ScriptedTransport(
        [call("calculator", {"expression": "0.15 * 250"}), reply("15% of 250 is 37.5.")]
    )
    agent = _agent(transport, calculator)
    result = await agent.run("Calculate 15% of 250")

    items = await _collect(agent.resume(agent.checkpoints.latest))

    assert len(items) == 1
    resumed = items[0]
    assert resumed.text == result.text
    assert resumed.usage == result.usage
    assert resumed.usage.total_tokens == 30
    assert resumed.tool_calls == result.tool_calls
    assert [tc.tool_name for tc in resumed.tool_calls] == ["calculator"]
    assert resumed.finish_reason == result.finish_reason
    assert transport.request_count == 2


@pytest.mark.asyncio
async def test_resume_finished_checkpoint_from_sqlite(tmp_path):
    store = SQLiteStore(str(tmp_path / "tether.db"))
    transport = ScriptedTransport([reply("stored answer")])
    agent = Agent(transport, memory=MemoryManager(transport, store), checkpoints=CheckpointManager(store))
    result = await agent.run("hi")

    fresh = SQLiteStore(str(tmp_path / "tether.db"))
    again = ScriptedTransport()
    agent2 = Agent(again, memory=MemoryManager(again, fresh), checkpoints=CheckpointManager(fresh))
    items = await _collect(agent2.resume())

    assert [i.text for i in items] == ["stored answer"]
    assert items[0].usage == result.usage
    assert items[0].finish_reason == "stop"
    assert again.request_count == 0


@pytest.mark.asyncio
async def test_resume_without_checkpoint_yields_nothing():
    items = await _collect(_agent(ScriptedTransport()).resume())
    assert items == []


@pytest.mark.asyncio
async def test_resume_executes_pending_calls(calculator):
    transport = ScriptedTransport([reply("It is 37.5.")])
    agent = _agent(transport, calculator)
    pending = ToolCall(id="c1", tool_name="calculator", arguments='{"expression": "0.15 * 250"}')
    checkpoint = Checkpoint(
        messages=[Message.user("Calculate 15% of 250"), Message.assistant("", [pending])],
        iteration_count=1,
        pending_tool_call_ids=["c1"],
        current_step="executing_tool",
    )

    items = await _collect(agent.resume(checkpoint))

    assert items[-1].text == "It is 37.5."
    assert transport.request_count == 1
    sent = transport.requests[0]["messages"]
    assert [m.role for m in sent[1:]] == [Role.USER, Role.ASSISTANT, Role.TOOL]
    assert sent[-1].content == "37.5"
    assert agent.state.iteration_count == 2


@pytest.mark.asyncio
async def test_resume_after_crash_from_sqlite(tmp_path):
    db = str(tmp_path / "tether.db")
    started = asyncio.Event()

    async def _hang(city):
        started.set()
        await asyncio.sleep(60)

    def _lookup(city):
        return f"Sunny in {city}"

    schema = {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]}
    store = SQLiteStore(db)
    transport = ScriptedTransport([call("weather", {"city": "Rome"}, call_id="w1")])
    agent = Agent(
        transport,
        memory=MemoryManager(transport, store),
        tools=[ToolDescriptor("weather", "Weather lookup", _hang, schema)],
        checkpoints=CheckpointManager(store),
    )

    # process dies while the tool is running
    task = asyncio.create_task(agent.run("Weather in Rome?"))
    await asyncio.wait_for(started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    fresh_store = SQLiteStore(db)
    transport2 = ScriptedTransport([reply("It's sunny in Rome.")])
    agent2 = Agent(
        transport2,
        memory=MemoryManager(transport2, fresh_store),
        tools=[ToolDescriptor("weather", "Weather lookup", _lookup, schema)],
        checkpoints=CheckpointManager(fresh_store),
    )

    items = await _collect(agent2.resume())

    assert items[-1].text == "It's sunny in Rome."
    assert transport2.request_count == 1
    stored = await fresh_store.load_messages()
    assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
    assert stored[2].content == "Sunny in Rome"
    assert stored[2].tool_call_id == "w1"
    checkpoint = await fresh_store.load_checkpoint()
    assert checkpoint.is_running is False
    assert checkpoint.final_text == "It's sunny in Rome."
