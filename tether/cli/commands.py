"""tether CLI: Typer-based developer console for the engine."""

from __future__ import annotations

import asyncio
import importlib
import signal
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from tether import __version__

app = typer.Typer(
    name="tether",
    help="tether - client-embedded agent orchestration engine",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"tether v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """tether - client-embedded agent orchestration engine."""


# ════════════════════════════════════════════════════════════
# helpers
# ════════════════════════════════════════════════════════════


def _load_tools(spec: str | None) -> list[Any]:
    """Import ``package.module:ATTR`` (a list of tools, or a factory returning one)."""
    if not spec:
        return []
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise typer.BadParameter("expected 'module:attribute'", param_hint="--tools")
    obj = getattr(importlib.import_module(module_name), attr)
    tools = obj() if callable(obj) else obj
    return list(tools)


def _build_agent(config_path: str | None, conversation: str | None, tools: str | None):
    from tether.agent.agent import Agent
    from tether.core.config.loader import load_config
    from tether.core.logging import setup_logging
    from tether.memory.store import SQLiteStore

    config = load_config(config_path)
    setup_logging(config.logging)
    if conversation:
        config.database.conversation_id = conversation
    store = SQLiteStore(config.database.path, config.database.conversation_id)
    agent = Agent.from_config(
        config,
        persistence=store,
        tools=_load_tools(tools),
        on_warning=lambda msg: console.print(f"[yellow]warning:[/yellow] {msg}"),
    )
    return config, store, agent


async def _consume(agent, stream, token) -> None:
    """Print a streamed run; answer confirmation requests interactively."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        pass

    console.print("\n[bold cyan]tether:[/bold cyan] ", end="")
    streamed = False
    usage = None
    try:
        async with stream:
            async for item in stream:
                if item.usage is not None:
                    usage = item.usage if usage is None else usage + item.usage
                if item.text_chunk:
                    streamed = True
                    console.print(item.text_chunk, end="", markup=False, highlight=False)
                elif item.confirmation:
                    req = item.confirmation
                    console.print(
                        f"\n[yellow]Confirm tool[/yellow] {req.tool_name}({req.arguments})"
                    )
                    approved = await asyncio.to_thread(typer.confirm, "Run it?", default=False)
                    agent.confirm(req.tool_call_id, approved)
                elif item.text is not None:
                    if not streamed:
                        console.print(item.text, markup=False, highlight=False)
                    if usage:
                        console.print(f"\n[dim]{usage.total_tokens} tokens[/dim]")
        console.print()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


# ════════════════════════════════════════════════════════════
# chat: terminal chat
# ════════════════════════════════════════════════════════════


@app.command()
def chat(
    message: str | None = typer.Option(None, "--message", "-m", help="Single message to send"),
    conversation: str | None = typer.Option(None, "--conversation", "-c", help="Conversation ID"),
    config_path: str | None = typer.Option(None, "--config", help="Path to tether.yaml"),
    tools: str | None = typer.Option(None, "--tools", help="Tools to load, as module:attribute"),
) -> None:
    """Chat with the agent from the terminal. Ctrl-C cancels the current run."""
    from tether.core.cancellation import CancellationToken
    from tether.core.errors import CancellationError, TetherError

    _, _, agent = _build_agent(config_path, conversation, tools)

    async def _one(text: str) -> None:
        token = CancellationToken()
        try:
            await _consume(agent, agent.run_streaming(text, token), token)
        except CancellationError:
            console.print("\n[yellow]Cancelled.[/yellow]")
        except TetherError as e:
            console.print(f"\n[red]Error:[/red] {e}")

    if message:
        # Single message mode
        asyncio.run(_one(message))
        return

    # Interactive mode
    console.print("[bold]tether interactive mode[/bold] (type 'exit' or 'quit' to leave)\n")

    async def _interactive() -> None:
        while True:
            try:
                user_input = await asyncio.to_thread(console.input, "[bold blue]You:[/bold blue] ")
            except (KeyboardInterrupt, EOFError):
                console.print("\nBye!")
                break

            text = user_input.strip()
            if not text:
                continue
            if text.lower() in ("exit", "quit"):
                console.print("Bye!")
                break
            await _one(text)
        await agent.transport.aclose()

    asyncio.run(_interactive())


# ════════════════════════════════════════════════════════════
# resume: continue an interrupted run
# ════════════════════════════════════════════════════════════


@app.command()
def resume(
    conversation: str | None = typer.Option(None, "--conversation", "-c", help="Conversation ID"),
    config_path: str | None = typer.Option(None, "--config", help="Path to tether.yaml"),
    tools: str | None = typer.Option(None, "--tools", help="Tools to load, as module:attribute"),
) -> None:
    """Resume the stored checkpoint of a conversation."""
    from tether.core.cancellation import CancellationToken

    _, _, agent = _build_agent(config_path, conversation, tools)

    async def _resume() -> None:
        checkpoint = await agent.checkpoints.load()
        if checkpoint is None:
            console.print("[dim]No checkpoint stored.[/dim]")
            return
        if not checkpoint.is_running:
            console.print(f"[dim]Last run already finished ({checkpoint.current_step}).[/dim]")
        token = CancellationToken()
        await _consume(agent, agent.resume(checkpoint, token), token)

    asyncio.run(_resume())


# ════════════════════════════════════════════════════════════
# status: config + storage info
# ════════════════════════════════════════════════════════════


@app.command()
def status(
    conversation: str | None = typer.Option(None, "--conversation", "-c", help="Conversation ID"),
    config_path: str | None = typer.Option(None, "--config", help="Path to tether.yaml"),
) -> None:
    """Show configuration and stored conversation state."""
    from tether.core.config.loader import load_config
    from tether.memory.store import SQLiteStore

    config = load_config(config_path)
    conversation_id = conversation or config.database.conversation_id
    store = SQLiteStore(config.database.path, conversation_id)
    stats = store.stats()
    checkpoint = stats["checkpoint"]

    table = Table(title="tether status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Provider", config.transport.provider)
    table.add_row("Model", config.transport.model)
    table.add_row("API key", "set" if config.has_api_key else "missing")
    table.add_row("Max iterations", str(config.agent.max_iterations))
    table.add_row("DB Path", config.database.path)
    table.add_row("Conversation", conversation_id)
    table.add_row("Messages", str(stats["messages"]))
    table.add_row("Summaries", str(stats["summaries"]))
    if checkpoint:
        table.add_row("Checkpoint", "running" if checkpoint["is_running"] else "finished")
        table.add_row("Checkpoint iteration", str(checkpoint["iteration_count"]))
    else:
        table.add_row("Checkpoint", "none")

    console.print(table)


# ════════════════════════════════════════════════════════════
# clear: wipe a conversation
# ════════════════════════════════════════════════════════════


@app.command()
def clear(
    conversation: str | None = typer.Option(None, "--conversation", "-c", help="Conversation ID"),
    config_path: str | None = typer.Option(None, "--config", help="Path to tether.yaml"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete stored messages and checkpoint of a conversation."""
    from tether.core.config.loader import load_config
    from tether.memory.store import SQLiteStore

    config = load_config(config_path)
    conversation_id = conversation or config.database.conversation_id
    if not yes and not typer.confirm(f"Delete conversation '{conversation_id}'?"):
        raise typer.Exit()

    store = SQLiteStore(config.database.path, conversation_id)

    async def _clear() -> None:
        await store.clear_messages()
        await store.clear_checkpoint()

    asyncio.run(_clear())
    console.print(f"[green]Conversation '{conversation_id}' cleared.[/green]")
