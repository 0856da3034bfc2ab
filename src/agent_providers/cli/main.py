"""Command line entry point."""

from typing import Annotated

import typer

from agent_providers._version import __version__
from agent_providers.config.settings import get_settings
from agent_providers.core.logging import setup_logging

from .commands import auth
from .commands.run import run_command


app = typer.Typer(
    name="agent-providers",
    help="Drive Claude and Codex agents through one interface",
    no_args_is_help=True,
)
app.add_typer(auth.app)
app.command(name="run")(run_command)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"agent-providers {__version__}")
        raise typer.Exit()


@app.callback()
def app_main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Override the configured level")
    ] = None,
    json_logs: Annotated[
        bool | None, typer.Option("--json-logs/--console-logs")
    ] = None,
) -> None:
    """Provider session layer for Claude and Codex."""
    settings = get_settings()
    setup_logging(
        level=log_level or settings.logging.level,
        json_logs=settings.logging.json_logs if json_logs is None else json_logs,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
