"""Command line entry point for converse-agent."""

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from converse_agent import __version__
from converse_agent.channel import ConversationEvent, TextDelta, ToolExecutionStarted, ToolResultReady
from converse_agent.config import Config, get_config, set_config
from converse_agent.exceptions import ConfigurationError, ConverseAgentError
from converse_agent.logging import configure_logging, log
from converse_agent.messages import Message
from converse_agent.pricing import CostTable, format_cost
from converse_agent.session import SessionManager, set_session_manager
from converse_agent.session_switcher import SessionSwitcher
from converse_agent.tools import PatternGuardrailChecker, ToolRegistry
from converse_agent.transport import HttpModelStreamClient

app = typer.Typer(help="converse-agent - streaming agent conversations over a Converse-style model API")
console = Console()

_EXIT_COMMANDS = {"/exit", "/quit"}


def _load_config(config_path: str, model: str, verbose: bool) -> Config:
    try:
        cfg = Config.from_yaml(Path(config_path)) if config_path else Config.load()
    except ConfigurationError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(code=1)
    if model:
        cfg.model.model_id = model
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


def _print_event(event: ConversationEvent) -> None:
    if isinstance(event, TextDelta):
        console.print(event.text, end="", markup=False, highlight=False)
    elif isinstance(event, ToolExecutionStarted):
        console.print(f"\n[dim]tool:[/dim] [cyan]{event.name}[/cyan]")
    elif isinstance(event, ToolResultReady):
        style = "green" if event.result.status == "success" else "red"
        console.print(f"[dim]result:[/dim] [{style}]{event.result.status}[/{style}]")


def _build_switcher(cfg: Config, manager: SessionManager | None) -> SessionSwitcher:
    client = HttpModelStreamClient(
        cfg.transport.endpoint,
        api_key=cfg.transport.api_key or None,
        timeout=cfg.transport.timeout,
    )
    registry = ToolRegistry(default_timeout=cfg.tools.timeout)
    guardrail = PatternGuardrailChecker.from_config(cfg.guardrail) if cfg.guardrail.enabled else None
    cost_table = CostTable(overrides=cfg.pricing.overrides)
    return SessionSwitcher(
        manager,
        client,
        registry,
        cfg.model.model_id,
        cost_table=cost_table,
        guardrail=guardrail,
        guardrails_enabled=cfg.guardrail.enabled,
        check_input=cfg.guardrail.enabled and cfg.guardrail.check_input,
        system_prompt=cfg.model.system_prompt,
        tool_specs=registry.get_tool_specs(cfg.tools.enabled or None),
        inference_config=cfg.model.inference_config(),
        thinking=cfg.model.thinking.request_fields(),
        interleaved_thinking=cfg.model.thinking.interleaved,
        context_length=cfg.context.context_length,
        prompt_cache=cfg.context.prompt_cache,
        max_tool_depth=cfg.orchestrator.max_tool_depth,
        protocol_retries=cfg.orchestrator.protocol_retries,
    )


async def _ask(switcher: SessionSwitcher, text: str) -> None:
    orchestrator = switcher.current
    try:
        message: Message | None = await orchestrator.submit(text)
    except ConverseAgentError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        return
    if message is None:
        console.print("\n[yellow]Cancelled.[/yellow]")
        return
    if message.metadata.get("guardrail"):
        console.print(message.text)
    console.print()
    usage = message.usage
    if usage is not None:
        console.print(
            f"[dim]tokens in={usage.input_tokens} out={usage.output_tokens} "
            f"cost={format_cost(message.cost)} total={format_cost(orchestrator.total_cost)}[/dim]"
        )


async def _run_chat(cfg: Config, message: str, session_id: str) -> None:
    manager = SessionManager(cfg.session.path) if cfg.session.enable_history else None
    if manager is not None:
        set_session_manager(manager)
    switcher = _build_switcher(cfg, manager)
    switcher.channel.subscribe(_print_event)

    if session_id:
        await switcher.switch_session(session_id)
    else:
        await switcher.new_session()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(
            signal.SIGINT,
            lambda: switcher.current is not None and switcher.current.cancel("interrupted"),
        )
    except NotImplementedError:
        pass

    try:
        if message:
            await _ask(switcher, message)
            return

        console.print(f"[bold]converse-agent[/bold] v{__version__} session {switcher.current.session_id}")
        console.print("[dim]/new starts a new session, /exit quits[/dim]")
        while True:
            text = (await asyncio.to_thread(console.input, "[bold blue]> [/bold blue]")).strip()
            if not text:
                continue
            if text in _EXIT_COMMANDS:
                break
            if text == "/new":
                orchestrator = await switcher.new_session()
                console.print(f"[dim]new session {orchestrator.session_id}[/dim]")
                continue
            await _ask(switcher, text)
    finally:
        await switcher.client.close()
        if manager is not None:
            await manager.close()


@app.command()
def chat(
    message: str = typer.Option("", "-m", "--message", help="Send one message and exit"),
    session: str = typer.Option("", "-s", "--session", help="Resume a stored session by id"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "--model", help="Override model id"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat with the model, interactively or one-shot."""
    cfg = _load_config(config, model, verbose)
    try:
        asyncio.run(_run_chat(cfg, message, session))
    except (KeyboardInterrupt, EOFError):
        log.info("Shutting down...")
    except ConverseAgentError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def sessions(
    limit: int = typer.Option(10, "-n", "--limit", help="Number of sessions to show"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List recent sessions."""
    cfg = _load_config(config, "", False)

    async def _list() -> list:
        manager = SessionManager(cfg.session.path)
        try:
            return await manager.list_sessions(limit=limit)
        finally:
            await manager.close()

    rows = asyncio.run(_list())
    if not rows:
        console.print("No sessions yet.")
        return
    table = Table(title="Sessions")
    table.add_column("#", justify="right")
    table.add_column("ID", no_wrap=True)
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Updated")
    for index, row in enumerate(rows, start=1):
        table.add_row(str(index), row.id, row.name, row.model_id or "-", row.updated_at)
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"converse-agent v{__version__} (model {get_config().model.model_id})")


if __name__ == "__main__":
    app()
