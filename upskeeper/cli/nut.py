import click
from rich.console import Console
from rich.table import Table

from ..core.wizard import ConnectionTestRequest, probe_nut_connection
from .utils import handle_async_command

console = Console()


@click.group(name='nut')
def nut_cli():
    """NUT server commands."""
    pass


@nut_cli.command()
@click.option('--host', default='127.0.0.1', show_default=True, help='NUT server host.')
@click.option('--port', default=3493, show_default=True, type=click.IntRange(1, 65535), help='NUT server port.')
@click.option('--ups', 'ups_name', required=True, help='UPS name on the server.')
@click.option('--username', default=None, help='NUT username.')
@click.option('--password', default=None, help='NUT password.')
@handle_async_command
async def test(host, port, ups_name, username, password) -> None:
    """Connects to a NUT server and lists the UPS variables."""
    request = ConnectionTestRequest(host=host, port=port, ups_name=ups_name, username=username, password=password)
    console.print(f"[bold blue]Testing NUT connection to {ups_name}@{host}:{port}[/bold blue]")
    result = await probe_nut_connection(request)
    if not result.success:
        console.print(f"[red]Connection failed: {result.error}[/red]")
        raise SystemExit(1)

    if result.ups_description:
        console.print(f"[cyan]UPS[/cyan]: {result.ups_description}")
    table = Table(title=f"{len(result.variables)} variables")
    table.add_column("Variable", style="cyan")
    table.add_column("Value")
    for name in sorted(result.variables):
        table.add_row(name, result.variables[name])
    console.print(table)
