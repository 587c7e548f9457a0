#!/usr/bin/env python3
"""
Ledger Backup Commands for the Jig Ledger CLI
"""

import click

from cli.main import CLIContext, pass_context, handle_cli_error


@click.group('backups')
def backups():
    """Create, list and restore ledger snapshots."""


@backups.command('list')
@pass_context
@handle_cli_error
def list_backups(ctx: CLIContext):
    """List ledger backups, newest first."""
    storage = ctx.build_storage()
    ctx.output([
        {'name': path.name, 'size_bytes': path.stat().st_size}
        for path in storage.list_backups()
    ])


@backups.command('create')
@pass_context
@handle_cli_error
def create_backup(ctx: CLIContext):
    """Snapshot the current ledger."""
    storage = ctx.build_storage()
    with storage.lock():
        path = storage.backup()

    if path is None:
        raise click.ClickException(f"No ledger at {storage.file_path}")
    ctx.output({'backup': str(path)})


@backups.command('restore')
@click.argument('name')
@click.confirmation_option(prompt='Replace the current ledger with this backup?')
@pass_context
@handle_cli_error
def restore_backup(ctx: CLIContext, name: str):
    """Restore the ledger from backup NAME (the current ledger is backed up first)."""
    storage = ctx.build_storage()
    with storage.lock():
        restored = storage.restore_backup(name)

    if not restored:
        raise click.ClickException(f"Backup not found: {name}")
    ctx.output({'restored': name})
