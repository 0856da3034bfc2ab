"""Provider authentication commands."""

import asyncio
import webbrowser
from typing import Annotated

import typer
from rich import box
from rich.console import Console
from rich.table import Table
from structlog import get_logger

from agent_providers.exceptions import AgentProvidersError, UnknownProviderError
from agent_providers.providers import (
    SUPPORTED_PROVIDERS,
    AuthStatus,
    dispose_all_providers,
    get_provider,
)


app = typer.Typer(name="auth", help="Provider authentication and credentials")

console = Console()
logger = get_logger(__name__)


def _status_table(statuses: dict[str, AuthStatus]) -> Table:
    table = Table(
        show_header=True,
        header_style="bold cyan",
        box=box.ROUNDED,
        title="Provider Auth Status",
        title_style="bold white",
    )
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Method")
    table.add_column("Identity")
    table.add_column("Storage", style="dim")
    table.add_column("Token")
    table.add_column("Next refresh", style="dim")

    for name, status in statuses.items():
        state = (
            "[green]Authenticated[/green]"
            if status.authenticated
            else f"[red]{status.error or 'Not authenticated'}[/red]"
        )
        if status.reconnect_required:
            state += " [yellow](reconnect required)[/yellow]"
        next_refresh = (
            status.next_refresh_at.strftime("%Y-%m-%d %H:%M:%S UTC")
            if status.next_refresh_at
            else "-"
        )
        table.add_row(
            name,
            state,
            status.method.value,
            status.identity or "-",
            status.storage_backend.value if status.storage_backend else "-",
            status.token_health.value,
            next_refresh,
        )
    return table


async def _collect_statuses(names: list[str]) -> dict[str, AuthStatus]:
    try:
        statuses = {}
        for name in names:
            provider = await get_provider(name)
            statuses[name] = await provider.get_auth_status()
        return statuses
    finally:
        await dispose_all_providers()


@app.command(name="status")
def status_command(
    provider: Annotated[
        str | None,
        typer.Argument(help="Provider to check; all providers when omitted"),
    ] = None,
) -> None:
    """Show how each provider is authenticated.

    Examples:
        agent-providers auth status
        agent-providers auth status codex
    """
    names = [provider] if provider else list(SUPPORTED_PROVIDERS)
    try:
        statuses = asyncio.run(_collect_statuses(names))
    except UnknownProviderError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2) from e
    console.print(_status_table(statuses))
    if not all(status.authenticated for status in statuses.values()):
        raise typer.Exit(1)


async def _login(name: str, api_key: str | None, open_browser: bool) -> AuthStatus:
    try:
        provider = await get_provider(name)
        if api_key is not None:
            return await provider.login_with_api_key(api_key)

        start = await provider.login_with_oauth()
        console.print("Open this URL to authorize:")
        console.print(f"[cyan]{start.auth_url}[/cyan]")
        if open_browser:
            webbrowser.open(start.auth_url)

        if start.manual_code:
            code = typer.prompt("Paste the authorization code (code#state)")
            return await provider.complete_oauth_login(start.login_id, code)
        console.print("[dim]Waiting for the browser redirect...[/dim]")
        return await provider.complete_oauth_login(start.login_id)
    finally:
        await dispose_all_providers()


@app.command(name="login")
def login_command(
    provider: Annotated[str, typer.Argument(help="Provider to log in to")],
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", help="Store and use this API key instead of OAuth"),
    ] = None,
    open_browser: Annotated[
        bool,
        typer.Option("--browser/--no-browser", help="Open the authorization URL"),
    ] = True,
) -> None:
    """Log in with an API key or through the provider's OAuth flow.

    Examples:
        agent-providers auth login claude
        agent-providers auth login codex --api-key sk-...
    """
    try:
        status = asyncio.run(_login(provider, api_key, open_browser))
    except KeyboardInterrupt:
        console.print("\n[yellow]Login cancelled by user.[/yellow]")
        raise typer.Exit(1) from None
    except AgentProvidersError as e:
        console.print(f"[red]Login failed: {e.message}[/red]")
        raise typer.Exit(1) from e

    if not status.authenticated:
        console.print(f"[red]Login failed: {status.error}[/red]")
        raise typer.Exit(1)
    console.print(_status_table({provider: status}))
    console.print("[green]✓[/green] Logged in")


async def _logout(name: str) -> None:
    try:
        provider = await get_provider(name)
        await provider.reset_auth()
    finally:
        await dispose_all_providers()


@app.command(name="logout")
def logout_command(
    provider: Annotated[str, typer.Argument(help="Provider to log out of")],
) -> None:
    """Forget every credential stored for a provider."""
    try:
        asyncio.run(_logout(provider))
    except UnknownProviderError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2) from e
    console.print(f"[green]✓[/green] Removed stored credentials for {provider}")
