"""CLI entry point for remote-terminal."""

from __future__ import annotations

import asyncio
import logging
import os

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from remote_terminal import __version__
from remote_terminal.agent.loop import AgentLoop, AgentResult, AgentState, CommandProgress
from remote_terminal.agent.registry import ConversationRegistry
from remote_terminal.config import PresetCommand, RemoteTerminalConfig
from remote_terminal.tool.executor import CommandExecutor
from remote_terminal.tool.truncation import truncate_message

app = typer.Typer(
    name="remote-terminal",
    help="Access your workspace from anywhere: browser terminal and a shell-running agent.",
    no_args_is_help=True,
)

console = Console()

LOCAL_USER = "local"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def render_reply(result: AgentResult) -> str:
    """Text shown to the user for one agent result, bounded for display."""
    if result.state == AgentState.AWAITING_ANSWER:
        return truncate_message(result.question or "")
    if result.state == AgentState.FAILED:
        return truncate_message(f"Error: {result.error}")
    return truncate_message(result.text)


def _load_config(
    config_file: str | None, workspace: str | None
) -> RemoteTerminalConfig:
    config = RemoteTerminalConfig.load(config_file, workspace=workspace)
    if not os.path.isdir(config.workspace):
        typer.echo(f"Error: Workspace not found: {config.workspace}", err=True)
        raise typer.Exit(1)
    return config


def _show_api_key_status(config: RemoteTerminalConfig) -> None:
    """Warn early when the model's API key is missing."""
    provider_prefix = config.llm.model.split("/")[0] if "/" in config.llm.model else ""
    key_env_map = {
        "anthropic": "ANTHROPIC_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "openai": "OPENAI_API_KEY",
    }
    env_var = key_env_map.get(provider_prefix, "")
    if env_var and not os.environ.get(env_var):
        typer.echo(
            f"WARNING: {env_var} is not set! Set it in .env or your shell.",
            err=True,
        )


@app.command()
def serve(
    workspace: str | None = typer.Option(
        None, "--workspace", "-w", help="Workspace directory."
    ),
    port: int | None = typer.Option(None, "--port", "-p", help="Web terminal port."),
    host: str | None = typer.Option(None, "--host", help="Listen address."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Serve the browser terminal over HTTP and WebSocket."""
    setup_logging(verbose)
    config = _load_config(config_file, workspace)
    if port is not None:
        config.server.port = port
    if host is not None:
        config.server.host = host

    typer.echo(f"remote-terminal v{__version__}")
    typer.echo(f"Workspace: {config.workspace}")
    typer.echo(f"Shell: {config.terminal.shell}")
    typer.echo(f"Web terminal: http://{config.server.host}:{config.server.port}/")
    typer.echo("---")

    from remote_terminal.server.app import serve as run_server

    run_server(config, log_level="debug" if verbose else "info")


@app.command()
def chat(
    workspace: str | None = typer.Option(
        None, "--workspace", "-w", help="Workspace directory."
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="LLM model to use (default: from env/config)."
    ),
    max_turns: int | None = typer.Option(
        None, "--max-turns", help="Model requests allowed per message."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Talk to the shell-running agent.

    Plain lines go to the agent. ``!command`` runs a command directly,
    ``/clear`` forgets the conversation and ``/quit`` exits.
    """
    setup_logging(verbose)
    config = _load_config(config_file, workspace)
    if model:
        config.llm.model = model
    if max_turns is not None:
        config.agent.max_turns = max_turns

    typer.echo(f"remote-terminal v{__version__}")
    typer.echo(f"Workspace: {config.workspace}")
    typer.echo(f"Model: {config.llm.model}")
    _show_api_key_status(config)
    typer.echo("Type /clear to reset the conversation, /quit to exit.")
    typer.echo("---")

    asyncio.run(_chat_loop(config))


async def _chat_loop(config: RemoteTerminalConfig) -> None:
    conversations = ConversationRegistry.from_config(config)
    raw = CommandExecutor(
        cwd=config.workspace,
        timeout=config.commands.timeout,
        max_output_bytes=config.commands.max_output_bytes,
    )

    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold green]>[/] ")
        except (EOFError, KeyboardInterrupt):
            break

        text = line.strip()
        if not text:
            continue
        if text == "/quit":
            break
        if text == "/clear":
            conversations.clear(LOCAL_USER)
            console.print("Conversation history cleared.")
            continue
        if text.startswith("!"):
            output = await raw.run(text[1:].strip())
            console.print(Text(truncate_message(output)))
            continue

        agent = conversations.get_or_create(LOCAL_USER)
        await _ask(agent, text)


async def _ask(agent: AgentLoop, text: str) -> None:
    async def _on_progress(progress: CommandProgress) -> None:
        if not progress.finished:
            console.print(Text(f"Running: {progress.command}", style="dim"))

    with console.status("Thinking..."):
        result = await agent.process_message(text, on_progress=_on_progress)

    style = {
        AgentState.AWAITING_ANSWER: "yellow",
        AgentState.FAILED: "red",
        AgentState.EXHAUSTED: "magenta",
    }.get(result.state, "cyan")
    console.print(Panel(Text(render_reply(result)), border_style=style))


@app.command()
def run(
    name: str = typer.Argument(help="Preset command name."),
    workspace: str | None = typer.Option(
        None, "--workspace", "-w", help="Workspace directory."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run a preset command from the config file."""
    setup_logging(verbose)
    config = _load_config(config_file, workspace)

    preset = config.commands.presets.get(name)
    if preset is None:
        typer.echo(f"Error: Unknown command: {name}", err=True)
        available = ", ".join(sorted(config.commands.presets)) or "(none)"
        typer.echo(f"Available: {available}", err=True)
        raise typer.Exit(1)

    executor = CommandExecutor(
        cwd=config.workspace,
        timeout=config.commands.timeout,
        max_output_bytes=config.commands.max_output_bytes,
        initial_output_delay=config.commands.initial_output_delay,
    )

    if preset.long:
        typer.echo(f"Starting: {preset.cmd} (Ctrl+C to stop)")
        exit_code = asyncio.run(_run_background(executor, name, preset))
        raise typer.Exit(1 if exit_code else 0)

    typer.echo(f"Running: {preset.cmd}")
    output = asyncio.run(executor.run(preset.cmd))
    console.print(Text(truncate_message(output)))


async def _run_background(
    executor: CommandExecutor, name: str, preset: PresetCommand
) -> int | None:
    """Start a long preset and wait for it; Ctrl+C stops it."""
    exited = asyncio.Event()
    result: dict[str, int | None] = {"code": None}

    async def _on_output(task_name: str, text: str) -> None:
        console.print(Text(truncate_message(text)))

    async def _on_exit(task_name: str, exit_code: int | None) -> None:
        result["code"] = exit_code
        console.print(f"Process {task_name} exited (code: {exit_code})")
        exited.set()

    bg = await executor.start(name, preset.cmd, on_output=_on_output, on_exit=_on_exit)
    if bg is None:
        return 1
    try:
        await exited.wait()
    finally:
        stopped = await executor.stop_all()
        if stopped:
            console.print(f"Stopped: {', '.join(stopped)}")
    return result["code"]


@app.command()
def commands(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List the preset commands."""
    config = RemoteTerminalConfig.load(config_file)
    presets = config.commands.presets
    if not presets:
        typer.echo("No preset commands configured.")
        return

    table = Table("Name", "Command", "Description", "Mode")
    for preset_name, preset in sorted(presets.items()):
        table.add_row(
            preset_name,
            preset.cmd,
            preset.description,
            "background" if preset.long else "foreground",
        )
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
