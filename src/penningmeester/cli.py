"""
penningmeester command-line interface.

Usage:
    sudo penningmeester --config config.yaml --only-auth
    penningmeester --config config.yaml
    penningmeester --config config.yaml status
    penningmeester --config config.yaml token exact
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Coroutine, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from penningmeester import __version__
from penningmeester.config import PenningmeesterConfig
from penningmeester.controller import ModeController
from penningmeester.errors import ConfigError, PenningmeesterError
from penningmeester.modes import ExecutionMode

app = typer.Typer(
    name="penningmeester",
    help="💶 penningmeester: treasurer automation for Pretix and Exact Online",
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

EXIT_INTERRUPTED = 130


@dataclass
class _State:
    config: PenningmeesterConfig
    mode: ExecutionMode


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]penningmeester[/bold] v{__version__}")
        raise typer.Exit()


def _setup_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    if not verbose:
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _fail(error: PenningmeesterError) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {escape(str(error))}")
    if error.hint:
        err_console.print(f"[dim]{escape(error.hint)}[/dim]")
    return typer.Exit(error.exit_code)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` and turn expected failures into exit codes."""
    try:
        return asyncio.run(coro)
    except PenningmeesterError as e:
        raise _fail(e) from e
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED) from None


def _present_url(url: str) -> None:
    console.print(Panel.fit(
        f"[link={url}]{escape(url)}[/link]",
        title="Open this URL and log in",
        border_style="blue",
    ))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (or set PENNINGMEESTER_CONFIG)",
    ),
    only_auth: bool = typer.Option(
        False,
        "--only-auth",
        help=(
            "Only perform the OAuth2 authorizations, then exit. Needs root for the "
            "bind to port 443; run everything else as a regular user."
        ),
    ),
    provider: Optional[List[str]] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Limit to this provider (repeatable)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(
        None,
        "--version",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """💶 penningmeester, the treasurer's money machine."""
    try:
        cfg = PenningmeesterConfig.load(config)
    except ConfigError as e:
        raise _fail(e) from e

    _setup_logging(cfg.log_level, verbose)
    mode = ExecutionMode.from_flags(only_auth)
    ctx.obj = _State(config=cfg, mode=mode)

    if ctx.invoked_subcommand is not None:
        if mode is ExecutionMode.AUTH_ONLY:
            raise _fail(ConfigError("--only-auth only authorizes and cannot be combined with a command"))
        return

    controller = ModeController(config=cfg, mode=mode, present=_present_url)
    tokens = _run(controller.run(provider))

    if mode is ExecutionMode.AUTH_ONLY:
        console.print(f"[green]✓[/green] Authorized: {', '.join(tokens)}")
    else:
        console.print(f"[green]✓[/green] Ready. Valid tokens for: {', '.join(tokens)}")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the stored tokens (no network access)."""
    state: _State = ctx.obj
    controller = ModeController(config=state.config, mode=state.mode)

    table = Table(title="Stored tokens")
    table.add_column("Provider", style="bold cyan")
    table.add_column("Token file")
    table.add_column("Expires")
    table.add_column("Scope")
    table.add_column("Status")

    now = controller.clock()
    for name in state.config.providers:
        store = controller.store_for(name)
        record = store.load()
        if record is None:
            table.add_row(name, str(store.path), "-", "-", "[red]not authorized[/red]")
            continue
        expires = datetime.fromtimestamp(record.expires_at).strftime("%Y-%m-%d %H:%M:%S")
        if record.is_expired(now, state.config.expiry_margin):
            token_status = "[yellow]expired, will refresh[/yellow]"
        else:
            token_status = "[green]valid[/green]"
        table.add_row(name, str(store.path), expires, record.scope or "-", token_status)

    console.print(table)


@app.command()
def token(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Provider name from the config"),
) -> None:
    """Print a valid access token for NAME, refreshing it if needed."""
    state: _State = ctx.obj
    controller = ModeController(config=state.config, mode=state.mode)

    async def _get() -> str:
        manager = controller.manager_for(name)
        try:
            return await manager.get_valid_access_token()
        finally:
            await manager.client.close()

    # Plain echo: rich would wrap long tokens
    typer.echo(_run(_get()))


@app.command()
def logout(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Provider name from the config"),
) -> None:
    """Forget the stored token of NAME."""
    state: _State = ctx.obj
    if name not in state.config.providers:
        raise _fail(ConfigError(f"Unknown provider '{name}'"))

    store = ModeController(config=state.config, mode=state.mode).store_for(name)
    if store.delete():
        console.print(f"[green]✓[/green] Removed {name} token from [bold]{store.path}[/bold]")
    else:
        console.print(f"[dim]No {name} token stored[/dim]")


if __name__ == "__main__":
    app()
