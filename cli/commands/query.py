#!/usr/bin/env python3
"""
Ownership Query Commands for the Jig Ledger CLI

Read-only views over the persisted ledger; none of these touch the network.
"""

import click

from cli.main import CLIContext, pass_context, handle_cli_error
from registry.ledger import AssetNotFoundError


@click.command('owner')
@click.argument('address')
@pass_context
@handle_cli_error
def owner(ctx: CLIContext, address: str):
    """List the asset IDs currently held by ADDRESS."""
    store = ctx.build_store()
    held = store.assets_of(address)
    ctx.output({'address': address, 'count': len(held), 'assets': held})


@click.command('asset')
@click.argument('asset_id')
@pass_context
@handle_cli_error
def asset(ctx: CLIContext, asset_id: str):
    """Show the record and transfer history of ASSET_ID."""
    store = ctx.build_store()
    try:
        record = store.get(asset_id)
    except AssetNotFoundError as e:
        raise click.ClickException(str(e))

    data = record.model_dump(mode="json", by_alias=True)
    if ctx.output_format == 'table':
        transfers = data.pop('transfers')
        ctx.output(data)
        click.echo()
        ctx.output([
            {
                'type': t['type'],
                'txid': t['txid'][:12],
                'from': t.get('from') or '',
                'to': t.get('to') or '',
                'block': t.get('blockHeight') or '',
            }
            for t in transfers
        ])
    else:
        ctx.output(data)


@click.command('stats')
@pass_context
@handle_cli_error
def stats(ctx: CLIContext):
    """Show collection statistics."""
    ctx.output(ctx.build_store().stats())


@click.command('verify')
@click.option('--repair', is_flag=True, help='Rebuild the owner index from the records and save')
@pass_context
@handle_cli_error
def verify(ctx: CLIContext, repair: bool):
    """Check that the owner index matches every record's owner."""
    storage = ctx.build_storage()
    if repair:
        # Load and repair under one lock
        with storage.lock():
            store = ctx.build_store(storage)
            problems = store.verify_index()
            if problems:
                owners = store.rebuild_index()
                store.checkpoint()
                ctx.logger.info(f"Rebuilt owner index: {owners} owners")
    else:
        problems = ctx.build_store(storage).verify_index()

    ctx.output({
        'consistent': not problems,
        'problems': problems,
        'repaired': bool(problems and repair),
    })

    if problems and not repair:
        raise SystemExit(1)
