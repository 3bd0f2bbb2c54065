"""Command-line entry point for Switchback."""

import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from switchback import __version__
from switchback.agent import Agent, AgentCallbacks
from switchback.confirmation import ConfirmationRequest
from switchback.config import Config, set_config
from switchback.exceptions import SwitchbackError
from switchback.llm import ToolCall
from switchback.llm.registry import BackendRegistry, set_registry
from switchback.logging import configure_logging, get_logger, set_log_sink
from switchback.usage import get_usage_tracker

app = typer.Typer(help="Switchback - one chat loop over many LLM backends")
console = Console()
log = get_logger(__name__)

HELP_TEXT = """Commands:
  /backend <id>   switch backend
  /backends       list backends and their status
  /model <name>   use a model on the active backend
  /approve        toggle auto-approval of tools
  /reset          clear the conversation
  /exit           quit"""


class ConsoleCallbacks(AgentCallbacks):
    """Render a turn on the terminal."""

    def __init__(self, streaming: bool = True):
        self.streaming = streaming
        self._streamed = False

    def on_thinking(self, iteration: int) -> None:
        if iteration > 1:
            console.print(f"[dim]... thinking (step {iteration})[/dim]")

    def on_delta(self, text: str) -> None:
        if self.streaming:
            self._streamed = True
            console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def on_tool_call(self, call: ToolCall) -> None:
        self._end_stream()
        console.print(f"[cyan]> {escape(call.name)}[/cyan] [dim]{escape(call.arguments)}[/dim]")

    def on_tool_result(self, call: ToolCall, result: str) -> None:
        preview = result if len(result) <= 200 else result[:200] + "..."
        console.print(f"[dim]< {escape(preview)}[/dim]")

    def on_response(self, content: str) -> None:
        if self._streamed:
            self._end_stream()
        else:
            console.print(content, markup=False, highlight=False)

    def on_cancelled(self) -> None:
        self._end_stream()
        console.print("[yellow]Cancelled.[/yellow]")

    async def confirm_tool(self, request: ConfirmationRequest) -> bool:
        self._end_stream()
        question = f"Allow tool [bold]{escape(request.call.name)}[/bold] with {escape(request.call.arguments)}?"
        return await asyncio.to_thread(Confirm.ask, question, default=False, console=console)

    def _end_stream(self) -> None:
        if self._streamed:
            console.print()
            self._streamed = False


def _bootstrap(config_path: str, verbose: bool) -> tuple[Config, BackendRegistry]:
    config = Config.load(config_path or None)
    set_config(config)
    configure_logging(level="DEBUG" if verbose else None)
    registry = BackendRegistry()
    registry.configure(config.backends)
    set_registry(registry)
    return config, registry


async def _render_backends(registry: BackendRegistry) -> None:
    statuses = await registry.statuses()
    table = Table(title="Backends")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Model / reason", overflow="fold")
    for entry in registry.registered():
        status = statuses[entry.id]
        marker = " *" if entry.id == registry.active_id else ""
        if status.available:
            table.add_row(entry.id + marker, entry.name, "[green]available[/green]", escape(status.model or "-"))
        else:
            table.add_row(entry.id + marker, entry.name, "[red]unavailable[/red]", escape(status.reason or ""))
    console.print(table)


async def _handle_command(agent: Agent, registry: BackendRegistry, line: str) -> bool:
    """Run a slash command. Returns False when the REPL should stop."""
    command, _, argument = line.partition(" ")
    argument = argument.strip()

    if command in ("/exit", "/quit"):
        return False
    if command == "/help":
        console.print(HELP_TEXT, markup=False)
    elif command == "/backends":
        await _render_backends(registry)
    elif command == "/backend":
        if not argument:
            console.print(f"Active backend: {registry.active_id or 'none'}")
        else:
            backend = await agent.switch_backend(argument)
            console.print(f"[green]Switched to {escape(backend.info.name)}[/green]")
    elif command == "/model":
        if not argument:
            models = registry.available_models()
            console.print(f"Model: {agent.model or 'default'}")
            if models:
                console.print("Available: " + ", ".join(models), markup=False)
        else:
            agent.set_model(argument)
            console.print(f"Model set to {escape(argument)}")
    elif command == "/approve":
        enabled = agent.toggle_auto_approve()
        console.print(f"Auto-approve {'on' if enabled else 'off'}")
    elif command == "/reset":
        agent.reset()
        console.print("Conversation cleared.")
    else:
        console.print(f"[yellow]Unknown command {escape(command)}. Type /help.[/yellow]")
    return True


async def _chat_loop(config: Config, registry: BackendRegistry) -> None:
    callbacks = ConsoleCallbacks(streaming=config.ui.streaming)
    agent = Agent(registry=registry, config=config.agent, budget=config.budget.to_budget(), callbacks=callbacks)
    try:
        backend = await registry.get_active()
        console.print(f"[bold]{escape(config.agent.app_name)}[/bold] using [cyan]{escape(backend.info.name)}[/cyan]. Type /help for commands.")
        while True:
            try:
                line = (await asyncio.to_thread(Prompt.ask, "[bold]you[/bold]", console=console)).strip()
            except EOFError:
                break
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await _handle_command(agent, registry, line):
                        break
                    continue
                await agent.run(line)
                if config.ui.show_tokens:
                    totals = get_usage_tracker().totals
                    console.print(f"[dim]tokens: {totals.prompt_tokens} in / {totals.completion_tokens} out[/dim]")
            except SwitchbackError as e:
                log.debug("Turn failed", error_type=type(e).__name__, error=str(e))
                console.print(f"[red]{escape(str(e))}[/red]")
    finally:
        set_log_sink(None)
        await registry.shutdown()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    backend: str = typer.Option("", "-b", "--backend", help="Preferred backend id"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    set_log_sink(lambda line: console.print(line, style="dim", markup=False, highlight=False))
    settings, registry = _bootstrap(config, verbose)
    if backend:
        registry.preferred = backend
    try:
        asyncio.run(_chat_loop(settings, registry))
    except KeyboardInterrupt:
        console.print()
    except SwitchbackError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)


@app.command()
def backends(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show every configured backend and whether it can run now."""
    _, registry = _bootstrap(config, verbose=False)

    async def _show() -> None:
        try:
            await _render_backends(registry)
        finally:
            await registry.shutdown()

    asyncio.run(_show())


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Switchback v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
