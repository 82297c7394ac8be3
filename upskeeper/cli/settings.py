import json
from typing import Any

import click
from rich.console import Console
from rich.json import JSON

from ..core.config_schema import serialize_config
from ..core.config_store import ConfigStore
from .utils import handle_async_command, settings_from_context

console = Console()


@click.group(name='settings')
def settings_cli():
    """Inspect and change the stored settings."""
    pass


def parse_value(raw: str) -> Any:
    """JSON when it parses, otherwise the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def build_patch(dotted_key: str, value: Any) -> dict:
    section, _, key = dotted_key.partition('.')
    if not section or not key or '.' in key:
        raise click.BadParameter("expected <section>.<key>, e.g. polling.intervalMs", param_hint='KEY')
    return {section: {key: value}}


async def _open_store(ctx: click.Context) -> ConfigStore:
    settings = settings_from_context(ctx)
    store = ConfigStore(settings.settings_path)
    await store.load()
    return store


@settings_cli.command()
@click.pass_context
@handle_async_command
async def show(ctx) -> None:
    """Prints the current settings."""
    store = await _open_store(ctx)
    console.print(JSON(json.dumps(serialize_config(store.get()))))


@settings_cli.command(name='set')
@click.argument('key')
@click.argument('value')
@click.pass_context
@handle_async_command
async def set_value(ctx, key: str, value: str) -> None:
    """Sets one value, e.g. `settings set polling.intervalMs 2000`."""
    patch = build_patch(key, parse_value(value))
    store = await _open_store(ctx)
    config = await store.update(patch)
    section = key.partition('.')[0]
    console.print(f"[green]Updated {key}[/green]")
    console.print(JSON(json.dumps(serialize_config(config).get(section, {}))))


@settings_cli.command()
@click.confirmation_option(prompt='Reset all settings to defaults?')
@click.pass_context
@handle_async_command
async def reset(ctx) -> None:
    """Resets every setting to its default."""
    store = await _open_store(ctx)
    await store.reset()
    console.print("[green]Settings reset to defaults[/green]")
