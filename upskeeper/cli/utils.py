import asyncio
import functools
import sys

import click
from rich.console import Console

from ..config import Settings, get_settings

console = Console()


def handle_async_command(async_func):
    """Decorator to handle async CLI commands."""
    @functools.wraps(async_func)
    def wrapper(*args, **kwargs):
        try:
            return asyncio.run(async_func(*args, **kwargs))
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)
    return wrapper


def settings_from_context(ctx: click.Context) -> Settings:
    """Process settings, honouring the group-level ``--data-dir`` option."""
    obj = ctx.find_root().obj or {}
    data_dir = obj.get("DATA_DIR")
    if data_dir:
        return Settings(DATA_DIR=data_dir)
    return get_settings()
