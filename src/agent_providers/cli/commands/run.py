"""One-shot query command."""

import asyncio
from typing import Annotated, Any

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from agent_providers.exceptions import UnknownProviderError
from agent_providers.protocol.messages import QueryResult
from agent_providers.providers import (
    ProviderRunOptions,
    RunConfig,
    dispose_all_providers,
    get_provider,
)


console = Console()


def _render(message: dict[str, Any]) -> None:
    kind = message.get("type")
    if kind == "stream_event":
        event = message.get("event") or {}
        if event.get("type") == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                console.print(delta.get("text", ""), end="", markup=False, highlight=False)
        elif event.get("type") == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                console.print(f"\n[dim]→ {block.get('name')}[/dim]")
        elif event.get("type") == "content_block_stop":
            console.print()
    elif kind == "error":
        console.print(f"[red]{message.get('error')}[/red]")


def _summary_table(result: QueryResult) -> Table:
    table = Table(show_header=False, box=box.ROUNDED, title="Run Summary")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row(
        "Status", "[red]error[/red]" if result.is_error else "[green]success[/green]"
    )
    table.add_row("Session", result.session_id or "-")
    table.add_row("Input tokens", str(result.usage.input_tokens))
    table.add_row("Output tokens", str(result.usage.output_tokens))
    if result.usage.cached_input_tokens:
        table.add_row("Cached input", str(result.usage.cached_input_tokens))
    if result.usage.total_cost_usd:
        table.add_row("Cost", f"${result.usage.total_cost_usd:.4f}")
    return table


async def _run(name: str, options: ProviderRunOptions) -> QueryResult:
    try:
        provider = await get_provider(name)
        ready = await provider.check_ready()
        if not ready.ready:
            raise typer.BadParameter(ready.reason or "provider is not ready")
        stream = provider.query(options)
        async for message in stream:
            _render(message)
        return stream.result
    finally:
        await dispose_all_providers()


def run_command(
    provider: Annotated[str, typer.Argument(help="Provider to run (claude, codex)")],
    prompt: Annotated[str, typer.Argument(help="Prompt for the agent")],
    model: Annotated[str | None, typer.Option("--model", "-m")] = None,
    cwd: Annotated[
        str | None, typer.Option("--cwd", help="Working directory for the agent")
    ] = None,
    effort: Annotated[
        str | None,
        typer.Option("--effort", help="Reasoning effort: minimal, low, medium, high, max"),
    ] = None,
    system_prompt: Annotated[str | None, typer.Option("--system")] = None,
) -> None:
    """Run a single-turn query and stream its output."""
    try:
        config = RunConfig(
            provider=provider, model=model, cwd=cwd, reasoning_effort=effort
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    options = ProviderRunOptions(
        prompt=prompt,
        config=config,
        system_prompt=system_prompt,
        single_turn=True,
    )
    try:
        result = asyncio.run(_run(provider, options))
    except UnknownProviderError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        raise typer.Exit(130) from None

    console.print(_summary_table(result))
    if result.is_error:
        raise typer.Exit(1)
