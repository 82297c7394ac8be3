import click
from rich.console import Console
from rich.table import Table

from ..core.config_store import ConfigStore
from ..database.engine import default_db_path
from ..database.retention import RetentionLoop
from ..database.telemetry import TelemetryStore
from .utils import handle_async_command, settings_from_context

console = Console()


@click.group(name='telemetry')
def telemetry_cli():
    """Telemetry database commands."""
    pass


@telemetry_cli.command()
@click.pass_context
@handle_async_command
async def latest(ctx) -> None:
    """Shows the most recent telemetry row."""
    settings = settings_from_context(ctx)
    store = TelemetryStore(default_db_path(settings.DATA_DIR))
    await store.open()
    try:
        point = await store.get_latest_telemetry_point()
    finally:
        await store.close()

    if point is None:
        console.print("[yellow]No telemetry recorded yet[/yellow]")
        return
    table = Table(title=f"Telemetry at {point['ts']}")
    table.add_column("Column", style="cyan")
    table.add_column("Value", justify="right")
    for column in store.get_available_columns():
        value = point.get(column)
        table.add_row(column, "-" if value is None else f"{value:g}")
    console.print(table)


@telemetry_cli.command()
@click.option('--days', type=int, default=None, help='Retention window in days (default: data.retentionDays).')
@click.pass_context
@handle_async_command
async def prune(ctx, days) -> None:
    """Deletes telemetry older than the retention window."""
    settings = settings_from_context(ctx)
    if days is None:
        config_store = ConfigStore(settings.settings_path)
        await config_store.load()
        days = config_store.get().data.retention_days

    store = TelemetryStore(default_db_path(settings.DATA_DIR))
    await store.open()
    try:
        deleted = await RetentionLoop(store, lambda: days).run_once()
    finally:
        await store.close()
    console.print(f"[green]Deleted {deleted} rows[/green]")
