
import logging

import click
import uvicorn
from rich.console import Console

from .. import __version__
from ..utils.logging import setup_logging
from .nut import nut_cli
from .settings import settings_cli
from .telemetry import telemetry_cli
from .utils import settings_from_context

console = Console()


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enables verbose mode.')
@click.option('--quiet', '-q', is_flag=True, help='Enables quiet mode.')
@click.option('--data-dir', type=click.Path(file_okay=False), default=None, help='Overrides UPSKEEPER_DATA_DIR.')
@click.version_option(__version__, prog_name='upskeeper')
@click.pass_context
def app(ctx, verbose, quiet, data_dir):
    """
    upskeeper UPS monitoring agent CLI.
    """
    ctx.ensure_object(dict)
    ctx.obj['VERBOSE'] = verbose
    ctx.obj['QUIET'] = quiet
    ctx.obj['DATA_DIR'] = data_dir

    setup_logging(settings=settings_from_context(ctx))
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif quiet:
        logging.getLogger().setLevel(logging.ERROR)


@app.command()
@click.option('--host', default=None, help='Bind address (default: UPSKEEPER_API_HOST).')
@click.option('--port', type=int, default=None, help='Bind port (default: UPSKEEPER_API_PORT).')
@click.pass_context
def run(ctx, host, port):
    """Runs the monitoring agent and its API server."""
    from ..app import create_app
    from ..core.runtime import AgentRuntime

    settings = settings_from_context(ctx)
    host = host or settings.API_HOST
    port = port or settings.API_PORT
    console.print(f"[bold blue]Starting upskeeper on http://{host}:{port}[/bold blue]")
    uvicorn.run(create_app(AgentRuntime(settings)), host=host, port=port, log_config=None)


# Add subcommands
app.add_command(settings_cli, name='settings')
app.add_command(nut_cli, name='nut')
app.add_command(telemetry_cli, name='telemetry')

if __name__ == '__main__':
    app()
