# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
CLI commands for managing CBS configuration.

Values stored here are used as defaults for options that were neither passed on
the command line nor set through their environment variable:
- org, dependent_repo
- gitlab_url, gitlab_dependent_path
- extra_dependencies
"""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from cbs.utils.utils import mask_secret

# Config file location
CBS_DIR = Path.home() / '.cbs'
CONFIG_FILE = CBS_DIR / 'config.json'

SECRET_KEYS = ('gitlab_dependent_token', 'github_api_token', 'redis_password')

console = Console()


def load_config() -> dict:
    """Load configuration from file."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, 'r') as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError):
        return {}


def save_config(config: dict) -> bool:
    """Save configuration to file."""
    CBS_DIR.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, 'w') as f:
            json.dump(config, f, indent=2)
        return True
    except IOError as e:
        console.print(f'[red]Failed to save config: {e}[/red]')
        return False


def get_config_value(key: str, default: str = '') -> str:
    """Get a config value with optional default."""
    config = load_config()
    return config.get(key, default)


@click.group(invoke_without_command=True)
@click.pass_context
def config(ctx):
    """Show or set CBS configuration.

    \b
    Examples:
        cbs config                          # Show current config
        cbs config set org paritytech       # Set the default organization
    """
    if ctx.invoked_subcommand is None:
        show_config()


def show_config():
    """Display current configuration."""
    config = load_config()

    if not config:
        console.print('\n[yellow]No configuration set.[/yellow]')
        console.print('[dim]Use "cbs config set <key> <value>" to set values.[/dim]')
        return

    console.print('\n[bold cyan]CBS Configuration[/bold cyan]\n')

    table = Table(show_header=True, header_style='bold magenta')
    table.add_column('Setting', style='cyan')
    table.add_column('Value', style='green')

    for key, value in sorted(config.items()):
        table.add_row(key, mask_secret(value) if key in SECRET_KEYS else str(value))

    console.print(table)
    console.print(f'\n[dim]Config file: {CONFIG_FILE}[/dim]')


@config.command('set')
@click.argument('key', type=str)
@click.argument('value', type=str)
def config_set(key: str, value: str):
    """Set a configuration value.

    \b
    Examples:
        cbs config set dependent_repo polkadot
        cbs config set gitlab_url gitlab.parity.io
    """
    config = load_config()
    old_value = config.get(key)
    config[key] = value

    if not save_config(config):
        return

    shown = mask_secret(value) if key in SECRET_KEYS else value
    if old_value is not None:
        previous = mask_secret(old_value) if key in SECRET_KEYS else old_value
        console.print(f'[green]Updated {key}:[/green] {previous} → {shown}')
    else:
        console.print(f'[green]Set {key}:[/green] {shown}')
