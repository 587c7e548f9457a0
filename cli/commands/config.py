#!/usr/bin/env python3
"""
Configuration Commands for the Jig Ledger CLI

Commands for inspecting and validating the merged configuration.
"""

import os
import sys
from pathlib import Path
from typing import Optional

import click
import yaml

from cli.config import DEFAULT_CONFIG, ENV_PREFIX, config_search_paths
from cli.main import CLIContext, pass_context, handle_cli_error


@click.group()
@pass_context
def config(ctx: CLIContext):
    """
    Configuration management commands.

    Settings are merged from defaults, a config file and JIG_LEDGER_*
    environment variables, in that order.
    """
    ctx.logger.debug("Config command group invoked")


@config.command('init')
@click.option('--output', type=click.Path(dir_okay=False), default='.jig-ledger.yml',
              help='Output file path')
@click.option('--force', is_flag=True, help='Overwrite existing configuration')
@pass_context
@handle_cli_error
def init_config(ctx: CLIContext, output: str, force: bool):
    """
    Write the default configuration to a YAML file.

    Examples:
        jig-ledger config init
        jig-ledger config init --output ~/.jig-ledger/config.yml
    """
    output_path = Path(output).expanduser()
    if output_path.exists() and not force:
        raise click.ClickException(f"Configuration file already exists: {output}. Use --force to overwrite.")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)

    click.echo(f"Configuration file created: {output_path}")


@config.command('show')
@click.option('--key', help='Specific configuration key to show (dot notation)')
@click.option('--sources', is_flag=True, help='Show configuration sources')
@pass_context
@handle_cli_error
def show_config(ctx: CLIContext, key: Optional[str], sources: bool):
    """
    Display the merged configuration.

    Examples:
        jig-ledger config show
        jig-ledger config show --key provider
        jig-ledger config show --sources
    """
    if sources:
        for i, source in enumerate(ctx.config.get_sources(), 1):
            click.echo(f"{i}. {source}")
        return

    if key:
        value = ctx.config.get(key)
        if value is None:
            click.echo(f"Configuration key not found: {key}", err=True)
            sys.exit(1)
        ctx.output(value if isinstance(value, dict) else {key: value})
    else:
        ctx.output(ctx.config.load())


@config.command('validate')
@pass_context
@handle_cli_error
def validate_config(ctx: CLIContext):
    """Validate configuration values; exits 1 when any are invalid."""
    errors = ctx.config.validate()

    if errors:
        click.echo("Configuration validation failed:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)

    click.echo("Configuration is valid")
    click.echo(f"  Provider: {ctx.config.get('provider.base_url')}/{ctx.config.get('provider.network')}")
    click.echo(f"  Ledger:   {ctx.config.get('ledger.path')}")


@config.command('search-paths')
@pass_context
@handle_cli_error
def search_paths(ctx: CLIContext):
    """Show configuration file search paths in order of precedence."""
    for i, path in enumerate(config_search_paths(), 1):
        marker = "found" if path.exists() else "-"
        click.echo(f"{i}. [{marker}] {path}")

    env_vars = sorted(k for k in os.environ if k.startswith(ENV_PREFIX))
    click.echo(f"\nEnvironment variable prefix: {ENV_PREFIX}")
    for var in env_vars:
        click.echo(f"  {var} = {os.environ[var]}")
