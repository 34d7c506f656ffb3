"""CLI for split-sync using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from .clients import ProviderRegistry, build_registry
from .config import Settings, load_settings
from .connections import ConnectionService
from .db import Database
from .exceptions import RetryLimitExceededError
from .models import SyncStatus
from .service import SplitSyncService
from .vault import CredentialVault

app = typer.Typer(
    name="split-sync",
    help="Mirror transaction splits onto Splitwise and other split providers",
)

console = Console()

STATUS_STYLES = {
    SyncStatus.SYNCED: "green",
    SyncStatus.PENDING: "yellow",
    SyncStatus.FAILED: "red",
    SyncStatus.DELETED: "dim",
}


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Request lines would otherwise show at INFO for every provider call
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


@dataclass
class Services:
    """Everything a command needs, opened from settings."""

    settings: Settings
    db: Database
    vault: CredentialVault
    providers: ProviderRegistry
    sync: SplitSyncService
    connections: ConnectionService


@contextmanager
def open_services() -> Iterator[Services]:
    """Open the database and provider clients, closing them afterwards."""
    settings = load_settings()
    vault = CredentialVault.from_settings(settings)
    db = Database(settings.database_path)
    providers = build_registry(settings)
    connections = ConnectionService(settings, db, vault, providers)
    try:
        yield Services(
            settings=settings,
            db=db,
            vault=vault,
            providers=providers,
            sync=SplitSyncService(settings, db, vault, providers),
            connections=connections,
        )
    finally:
        connections.close()
        providers.close()
        db.close()


def fail(error: Exception, verbose: bool):
    """Print an error and exit (or re-raise in verbose mode)."""
    console.print(f"\n[bold red]Error:[/bold red] {error}")
    if verbose:
        raise error
    sys.exit(1)


def format_status(status: SyncStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


@app.command("generate-key")
def generate_key():
    """
    Generate a new encryption key for the credential vault.

    Put the printed value in ENCRYPTION_KEY. Changing the key makes every
    stored connection unreadable, so keep it safe.
    """
    console.print(CredentialVault.generate_key())


@app.command()
def status(
    split_id: UUID = typer.Argument(..., help="Split to show sync status for"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show where a split has been synced to."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            views = services.sync.get_sync_status(split_id)
    except Exception as e:
        fail(e, verbose)
        return

    if not views:
        console.print("[yellow]This split has not been synced anywhere.[/yellow]")
        return

    table = Table(title="Sync Status", show_header=True, header_style="bold magenta")
    table.add_column("Record", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Retries", justify="right")
    table.add_column("Expense")
    table.add_column("Last Error", style="red", no_wrap=False)

    for view in views:
        table.add_row(
            str(view.id),
            view.provider_type or str(view.provider_id),
            format_status(view.status),
            str(view.retry_count),
            view.external_url or view.external_expense_id or "-",
            view.last_error or "",
        )

    console.print(table)


@app.command()
def retry(
    record_id: UUID = typer.Argument(..., help="Sync record to retry"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Retry a failed sync record."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            record = services.sync.retry_sync(record_id)
    except RetryLimitExceededError as e:
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
        sys.exit(1)
    except Exception as e:
        fail(e, verbose)
        return

    if record.status == SyncStatus.SYNCED:
        console.print(
            f"[bold green]✓ Synced[/bold green] as expense {record.external_expense_id}"
        )
    else:
        console.print(
            f"[bold red]Sync {record.status.value}[/bold red] "
            f"(attempt {record.retry_count}): {record.last_error}"
        )
        sys.exit(1)


@app.command()
def failed(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List failed sync records that can still be retried."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            records = services.sync.list_failed_syncs()
            max_retries = services.settings.max_sync_retries
    except Exception as e:
        fail(e, verbose)
        return

    if not records:
        console.print("[green]No failed syncs.[/green]")
        return

    table = Table(title="Failed Syncs", show_header=True, header_style="bold magenta")
    table.add_column("Record", style="dim")
    table.add_column("Split", style="cyan")
    table.add_column("Retries", justify="right")
    table.add_column("Last Error", style="red", no_wrap=False)

    for record in records:
        table.add_row(
            str(record.id),
            str(record.split_id),
            f"{record.retry_count}/{max_retries}",
            record.last_error or "",
        )

    console.print(table)
    console.print("\n[dim]Retry one with: split-sync retry RECORD_ID[/dim]")


@app.command("connect-url")
def connect_url(
    user_id: UUID = typer.Argument(..., help="User connecting their account"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Print the Splitwise authorization URL for a user."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            request = services.connections.start_splitwise_connect(user_id)
    except Exception as e:
        fail(e, verbose)
        return

    console.print("\n[bold]Open this URL to connect Splitwise:[/bold]")
    console.print(f"  [cyan]{request.auth_url}[/cyan]\n")


@app.command()
def connect(
    code: str = typer.Option(
        ..., "--code", help="Authorization code from the redirect"
    ),
    state: str = typer.Option(..., "--state", help="State parameter from the redirect"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Complete a Splitwise connection from the OAuth redirect parameters."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            connection = services.connections.complete_splitwise_connect(code, state)
    except Exception as e:
        fail(e, verbose)
        return

    console.print("\n[bold green]✓ Splitwise connected![/bold green]")
    console.print(f"[green]Connection ID: {connection.id}[/green]\n")


@app.command("connections")
def list_connections(
    user_id: UUID = typer.Argument(..., help="User whose connections to list"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List a user's provider connections."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            connections = services.connections.list_connections(user_id)
    except Exception as e:
        fail(e, verbose)
        return

    if not connections:
        console.print("[yellow]No providers connected.[/yellow]")
        console.print("[dim]Connect one with: split-sync connect-url USER_ID[/dim]")
        return

    table = Table(title="Connections", show_header=True, header_style="bold magenta")
    table.add_column("Connection", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Active", justify="center")
    table.add_column("Connected")

    for connection in connections:
        table.add_row(
            str(connection.id),
            connection.provider_type,
            "[green]yes[/green]" if connection.is_active else "[red]no[/red]",
            connection.created_at.strftime("%Y-%m-%d"),
        )

    console.print(table)


@app.command()
def disconnect(
    connection_id: UUID = typer.Argument(..., help="Connection to remove"),
    user_id: UUID = typer.Argument(..., help="User owning the connection"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Remove a provider connection with its mappings and sync records."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            services.connections.disconnect(connection_id, user_id)
    except Exception as e:
        fail(e, verbose)
        return

    console.print(f"[green]Disconnected {connection_id}[/green]")


@app.command()
def friends(
    connection_id: UUID = typer.Argument(..., help="Connection to list friends of"),
    user_id: UUID = typer.Argument(..., help="User owning the connection"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List the people a connection can split with, to find IDs for `map`."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            people = services.connections.list_friends(connection_id, user_id)
    except Exception as e:
        fail(e, verbose)
        return

    if not people:
        console.print("[yellow]No friends found on this provider.[/yellow]")
        return

    table = Table(title="Friends", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Email", style="dim")

    for friend in people:
        table.add_row(friend.external_id, friend.full_name, friend.email or "")

    console.print(table)


@app.command("map")
def map_counterparty(
    counterparty_id: UUID = typer.Argument(..., help="Counterparty to map"),
    provider_id: UUID = typer.Argument(..., help="Provider connection to map onto"),
    external_user_id: str = typer.Argument(
        ..., help="Counterparty's user ID on the provider"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Map a counterparty onto a provider user."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            mapping = services.connections.map_counterparty(
                counterparty_id, provider_id, external_user_id
            )
    except Exception as e:
        fail(e, verbose)
        return

    console.print(
        f"[green]✓ Counterparty {mapping.counterparty_id} → "
        f"{mapping.external_user_id}[/green]"
    )


@app.command()
def mapping(
    counterparty_id: UUID = typer.Argument(..., help="Counterparty to look up"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show which provider user a counterparty is mapped to."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            found = services.connections.get_mapping(counterparty_id)
    except Exception as e:
        fail(e, verbose)
        return

    if found is None:
        console.print("[yellow]This counterparty is not mapped to any provider.[/yellow]")
        return

    console.print(f"[bold]Provider:[/bold] {found.provider_id}")
    console.print(f"[bold]External user:[/bold] {found.external_user_id}")


@app.command()
def unmap(
    counterparty_id: UUID = typer.Argument(..., help="Counterparty to unmap"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Stop syncing a counterparty's splits to its provider."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            removed = services.connections.unmap_counterparty(counterparty_id)
    except Exception as e:
        fail(e, verbose)
        return

    if removed:
        console.print(f"[green]Unmapped {counterparty_id}[/green]")
    else:
        console.print("[yellow]This counterparty was not mapped.[/yellow]")


@app.command()
def validate(
    connection_id: UUID = typer.Argument(..., help="Connection to check"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Check whether a connection's credentials are still accepted."""
    setup_logging(verbose)

    try:
        with open_services() as services:
            valid = services.connections.validate_connection(connection_id)
    except Exception as e:
        fail(e, verbose)
        return

    if valid:
        console.print("[bold green]✓ Credentials are valid[/bold green]")
    else:
        console.print("[bold red]✗ Credentials were rejected. Please reconnect.[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    app()
