"""
CLI for sessiondeck.

Lists stored identities, switches the active one, runs the refresh sweep
and handles passcode login from the terminal.
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sessiondeck.config import SessionConfig
from sessiondeck.core.context import SessionContext
from sessiondeck.core.switch import SwitchState
from sessiondeck.core.tokens import is_expiring_soon
from sessiondeck.errors import SessionDeckError

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_config() -> SessionConfig:
    """Load configuration from environment, exiting on bad values."""
    try:
        return SessionConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def get_context() -> SessionContext:
    return SessionContext.from_config(get_config())


def _format_ms(value: Optional[int]) -> str:
    """
    >>> _format_ms(None)
    '-'
    """
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose: bool):
    """sessiondeck - several signed-in identities, one active at a time."""
    setup_logging(verbose)


@main.command(name="accounts")
def list_accounts():
    """List stored accounts. Tokens are never printed."""
    ctx = get_context()

    async def _load():
        return await ctx.store.list_accounts(), await ctx.store.active_key()

    accounts, active_key = asyncio.run(_load())
    if not accounts:
        console.print("[yellow]No accounts stored[/yellow]")
        return

    table = Table(title="Accounts", show_header=True)
    table.add_column("", width=1)
    table.add_column("ID", style="cyan")
    table.add_column("Email", style="magenta")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Unread", justify="right")
    table.add_column("Last active", style="dim")

    buffer = ctx.config.refresh_buffer_minutes
    for account in accounts:
        if not account.is_logged_in:
            state = "[red]logged out[/red]"
        elif not account.access_token:
            state = "[red]no credential[/red]"
        elif is_expiring_soon(account.access_token, buffer):
            state = "[yellow]expiring[/yellow]"
        else:
            state = "[green]ok[/green]"
        table.add_row(
            "*" if account.key == active_key else "",
            account.key,
            account.email or "-",
            account.display_name or account.handle or "-",
            state,
            str(account.unread_count),
            _format_ms(account.last_active_at),
        )

    console.print(table)


@main.command()
@click.argument("account_id")
def switch(account_id: str):
    """Make ACCOUNT_ID the active account."""
    ctx = get_context()
    outcome = asyncio.run(ctx.switcher.switch(account_id))

    if outcome.state == SwitchState.SWITCHED:
        console.print(f"[green][OK][/green] Active account is now {outcome.email or account_id}")
    elif outcome.state == SwitchState.REAUTH_REQUIRED:
        console.print(f"[yellow]Re-authentication required:[/yellow] {outcome.reason}")
        console.print(f"Run [bold]sessiondeck login {outcome.email or '<email>'}[/bold]")
        sys.exit(2)
    else:
        console.print(f"[red][FAIL][/red] {outcome.reason}")
        sys.exit(1)


@main.command()
@click.argument("account_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def remove(account_id: str, yes: bool):
    """Remove a stored account."""
    ctx = get_context()

    if not yes:
        if not click.confirm(f"Remove account {account_id}?"):
            console.print("Cancelled")
            return

    if not asyncio.run(ctx.store.remove(account_id)):
        console.print(f"[red]Account {account_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green][OK][/green] Removed account {account_id}")


@main.command()
def refresh():
    """Run the refresh sweep now, as on a foreground transition."""
    ctx = get_context()
    result = asyncio.run(ctx.scheduler.sweep())
    if result is None:
        console.print("[yellow]A refresh sweep is already running[/yellow]")
        return
    console.print(
        f"Checked {result['checked']}: "
        f"[green]{result['refreshed']} refreshed[/green], "
        f"{result['skipped']} skipped, "
        f"[yellow]{result['failed']} deferred[/yellow], "
        f"[red]{result['logged_out']} logged out[/red]"
    )


@main.command()
def migrate():
    """Import the legacy single-account session, if present."""
    ctx = get_context()
    if asyncio.run(ctx.migration.run()):
        console.print("[green][OK][/green] Imported legacy session")
    else:
        console.print("[dim]Nothing to migrate[/dim]")


@main.command()
def logout():
    """Log out the active account and move to the next logged-in one."""
    ctx = get_context()

    async def _logout():
        current = await ctx.store.get_active()
        nxt = await ctx.store.logout_current()
        if current is not None:
            await ctx.client.logout(current.id, current.kind)
        return current, nxt

    current, nxt = asyncio.run(_logout())
    if current is None:
        console.print("[yellow]No active account[/yellow]")
        return
    console.print(f"[green][OK][/green] Logged out {current.email or current.id}")
    if nxt is not None:
        console.print(f"Active account is now {nxt.email or nxt.id}")


@main.command()
def clear():
    """Delete ALL accounts and destroy the encryption key."""
    ctx = get_context()

    console.print(Panel(
        "[bold red]WARNING: This removes every stored account![/bold red]\n\n"
        "The encryption key is destroyed too, so stored tokens can never be "
        "read again. You will need to log in to each account again.",
        title="Clear Accounts",
    ))

    console.print("\n[bold]To confirm, type: CLEAR ALL[/bold]")
    confirmation = click.prompt("Confirmation", default="", show_default=False)
    if confirmation != "CLEAR ALL":
        console.print("[yellow]Cancelled - confirmation did not match[/yellow]")
        return

    count = asyncio.run(ctx.store.clear_all())
    console.print(f"\n[green][OK][/green] Cleared {count} accounts")


@main.command()
@click.argument("email")
@click.option("--code", "-c", help="Passcode (prompted if omitted)")
def login(email: str, code: Optional[str]):
    """Sign in (or add an account) with a one-time passcode sent to EMAIL."""
    ctx = get_context()

    async def _login():
        await ctx.login.start(email, "add_account")
        passcode = code or click.prompt("Passcode from your email")
        return await ctx.login.verify(email, passcode)

    try:
        account = asyncio.run(_login())
    except (SessionDeckError, ValueError) as e:
        console.print(f"[red][FAIL][/red] {e}")
        sys.exit(1)
    console.print(f"[green][OK][/green] Signed in as {account.email or account.id}")


if __name__ == "__main__":
    main()
