#!/usr/bin/env python3
"""
Ledger Maintenance Commands for the Jig Ledger CLI

refresh  - run one reconciliation pass (the scheduled entry point)
backfill - resolve missing state output indices
seed     - create records for assets listed in a discovery feed
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from cli.main import CLIContext, pass_context, handle_cli_error


def load_discovery_feed(file_path: str) -> Tuple[List[Tuple[str, str]], Dict[str, int]]:
    """
    Read (asset_id, mint_txid) pairs from a discovery feed file.

    Accepts {"mints": [...]} or a bare list whose items are either
    {"id", "txid", "block"?} objects or [id, txid] pairs.

    Returns:
        (pairs, block heights by asset ID)
    """
    path = Path(file_path)
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise click.FileError(file_path, hint=f"invalid JSON: {e}")

    entries = data.get('mints', []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise click.FileError(file_path, hint="expected a list of mints")

    pairs: List[Tuple[str, str]] = []
    heights: Dict[str, int] = {}
    for entry in entries:
        if isinstance(entry, dict):
            asset_id = entry.get('id', entry.get('number'))
            txid = entry.get('txid')
            if entry.get('block') is not None:
                heights[str(asset_id)] = int(entry['block'])
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            asset_id, txid = entry
        else:
            raise click.FileError(file_path, hint=f"unrecognized feed entry: {entry!r}")

        if asset_id is None or not txid:
            raise click.FileError(file_path, hint=f"feed entry without id or txid: {entry!r}")
        pairs.append((str(asset_id), txid))

    return pairs, heights


@click.command('refresh')
@click.option('--backup/--no-backup', default=True, help='Snapshot the ledger before the pass')
@click.option('--max-hops', type=int, help='Hop ceiling per asset trace')
@click.option('--checkpoint-every', type=int, help='Checkpoint after this many changed/burned assets')
@click.option('--retry-rounds', type=int, help='Retry rounds for assets that failed')
@click.option('--log-dir', type=click.Path(file_okay=False), help='Write a per-run log file here')
@pass_context
@handle_cli_error
def refresh(ctx: CLIContext, backup: bool, max_hops: Optional[int], checkpoint_every: Optional[int],
            retry_rounds: Optional[int], log_dir: Optional[str]):
    """
    Run one reconciliation pass over every tracked asset.

    Re-running after an interruption resumes from the last checkpoint.
    """
    if checkpoint_every is not None:
        ctx.config.set('reconcile.checkpoint_every', checkpoint_every)
    if retry_rounds is not None:
        ctx.config.set('reconcile.retry_rounds', retry_rounds)

    log_dir = log_dir or ctx.config.get('logging.dir')
    if log_dir:
        log_file = ctx.add_run_log(log_dir, 'refresh')
        ctx.logger.info(f"Log: {log_file}")

    storage = ctx.build_storage()
    with storage.lock():
        if backup:
            storage.backup()

        store = ctx.build_store(storage)
        summary = ctx.build_reconciler(store, max_hops).run()

    ctx.output(summary.to_dict())


@click.command('backfill')
@pass_context
@handle_cli_error
def backfill(ctx: CLIContext):
    """Resolve and store the state output index for records missing one."""
    storage = ctx.build_storage()
    with storage.lock():
        store = ctx.build_store(storage)
        result = ctx.build_reconciler(store).backfill_positions()

    ctx.output(result)


@click.command('seed')
@click.argument('feed_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--minter', help='Address that received the freshly minted assets')
@click.option('--mint-vout', type=int, help='State output index in mint transactions')
@click.option('--resolve-vout', is_flag=True, help='Leave the mint output index unknown and resolve it on refresh')
@pass_context
@handle_cli_error
def seed(ctx: CLIContext, feed_file: str, minter: Optional[str], mint_vout: Optional[int], resolve_vout: bool):
    """Create ledger records for newly discovered assets."""
    minter = minter or ctx.config.get('protocol.minter_address')
    if not minter:
        raise click.UsageError("A minting address is required (--minter or protocol.minter_address)")

    if resolve_vout:
        mint_vout = None
    elif mint_vout is None:
        mint_vout = int(ctx.config.get('protocol.mint_output_index', 3))

    pairs, heights = load_discovery_feed(feed_file)

    storage = ctx.build_storage()
    with storage.lock():
        store = ctx.build_store(storage)
        created = store.seed_assets(pairs, minter, mint_output_index=mint_vout, block_heights=heights)
        store.checkpoint()

    ctx.output({
        'feed_entries': len(pairs),
        'created': created,
        'total_assets': len(store.asset_ids()),
    })
