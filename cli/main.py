#!/usr/bin/env python3
"""
Jig Ledger - Command Line Interface

Runs reconciliation passes over the ownership ledger, seeds newly discovered
assets, and answers read-only ownership queries.
"""

import sys
import json
import logging
import functools
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Any

import click
import yaml

from cli.config import ConfigurationManager, ConfigurationError
from indexer.reconciler import Reconciler
from indexer.tracer import ForwardTracer
from network.chain import ChainClient
from registry.ledger import LedgerStore
from registry.storage import LedgerStorage

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
STREAM_HANDLER_NAME = 'jig-ledger-stderr'
RUN_LOG_HANDLER_NAME = 'jig-ledger-run-log'


class CLIContext:
    """Global CLI context for sharing state across commands."""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.ledger_path: Optional[str] = None
        self.output_format: str = "table"
        self.verbose: int = 0
        self.config: Optional[ConfigurationManager] = None
        self.logger: logging.Logger = logging.getLogger('jig-ledger')

    def setup_logging(self):
        """Configure logging based on verbosity level."""
        log_levels = {
            0: logging.WARNING,
            1: logging.INFO,
            2: logging.DEBUG
        }
        level = log_levels.get(min(self.verbose, 2), logging.DEBUG)

        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.set_name(STREAM_HANDLER_NAME)
        handler.setLevel(level)

        root = logging.getLogger()
        for existing in [h for h in root.handlers if h.get_name() in (STREAM_HANDLER_NAME, RUN_LOG_HANDLER_NAME)]:
            root.removeHandler(existing)
            existing.close()
        root.setLevel(min(level, logging.INFO))
        root.addHandler(handler)

        # Suppress verbose third-party logs unless in debug mode
        if self.verbose < 2:
            logging.getLogger('requests').setLevel(logging.WARNING)
            logging.getLogger('urllib3').setLevel(logging.WARNING)

    def add_run_log(self, log_dir: str, prefix: str) -> Path:
        """Also write this run's INFO-and-above log records to a timestamped file."""
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S-%fZ')
        log_file = directory / f"{prefix}-{timestamp}.log"

        handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.set_name(RUN_LOG_HANDLER_NAME)
        handler.setLevel(logging.getLevelName(str(self.config.get('logging.level', 'INFO')).upper()))
        logging.getLogger().addHandler(handler)
        return log_file

    def load_config(self):
        self.config = ConfigurationManager(self.config_file)
        self.config.load()
        if self.ledger_path:
            self.config.set('ledger.path', self.ledger_path)
        self.logger.debug(f"Configuration sources: {self.config.get_sources()}")

    # Component wiring

    def build_storage(self) -> LedgerStorage:
        return LedgerStorage(
            self.config.get('ledger.path'),
            backup_dir=self.config.get('ledger.backup_dir'),
            backup_count=int(self.config.get('ledger.backup_count', 30)),
            lock_timeout=float(self.config.get('ledger.lock_timeout', 30)),
        )

    def build_store(self, storage: Optional[LedgerStorage] = None, load: bool = True) -> LedgerStore:
        store = LedgerStore(storage or self.build_storage())
        if load:
            store.load()
        return store

    def build_tracer(self, max_hops: Optional[int] = None) -> ForwardTracer:
        client = ChainClient(self.config.chain_config())
        return ForwardTracer(
            client,
            max_hops=max_hops or int(self.config.get('reconcile.max_hops', 100)),
            rules=self.config.classifier_rules(),
        )

    def build_reconciler(self, store: LedgerStore, max_hops: Optional[int] = None) -> Reconciler:
        return Reconciler(store, self.build_tracer(max_hops), self.config.reconcile_config())

    # Output

    def output(self, data: Any, format_override: Optional[str] = None):
        """Output data in specified format."""
        format_type = format_override or self.output_format

        if format_type == "json":
            click.echo(json.dumps(data, indent=2, default=str))
        elif format_type == "yaml":
            click.echo(yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False, sort_keys=False))
        else:
            self._output_table(data)

    def _output_table(self, data: Any):
        """Output data in table format."""
        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, (list, dict)):
                    value = json.dumps(value, default=str)
                click.echo(f"{key:20} {value}")
        elif isinstance(data, list) and data and isinstance(data[0], dict):
            headers = list(data[0].keys())
            click.echo(" | ".join(f"{h:15}" for h in headers))
            click.echo("-" * (len(headers) * 17))
            for item in data:
                values = [str(item.get(h, ""))[:15] for h in headers]
                click.echo(" | ".join(f"{v:15}" for v in values))
        elif isinstance(data, list):
            for item in data:
                click.echo(item)
        else:
            click.echo(str(data))


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def handle_cli_error(func):
    """Decorator to handle CLI errors gracefully."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo("\nOperation cancelled by user.", err=True)
            sys.exit(130)
        except click.ClickException:
            raise
        except Exception as e:
            ctx = click.get_current_context(silent=True)
            cli_ctx = ctx.find_object(CLIContext) if ctx else None

            click.echo(f"Error: {e}", err=True)
            if cli_ctx and cli_ctx.verbose >= 2:
                click.echo(traceback.format_exc(), err=True)
            else:
                click.echo("Use -vv for detailed error information.", err=True)

            sys.exit(1)

    return wrapper


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--config-file', '-c', help='Path to configuration file (YAML or JSON)')
@click.option('--ledger', '-l', 'ledger_path', help='Path to the ledger document')
@click.option('--output-format', '-o',
              type=click.Choice(['table', 'json', 'yaml']),
              default='table',
              help='Output format')
@click.option('--verbose', '-v', count=True, help='Increase verbosity (-v for INFO, -vv for DEBUG)')
@click.version_option(package_name='jig-ledger', prog_name='jig-ledger')
@pass_context
def cli(ctx: CLIContext, config_file: Optional[str], ledger_path: Optional[str],
        output_format: str, verbose: int):
    """
    Jig Ledger - incremental ownership index for tokenized assets.

    Examples:
        jig-ledger seed mints.json --minter 12nG9uFESfdyE9SdYHVXQeCGFdfYLcdYZG
        jig-ledger -v refresh
        jig-ledger owner 1BoatSLRHtKNngkdXEeobR76b53LETtpyT
    """
    ctx.config_file = config_file
    ctx.ledger_path = ledger_path
    ctx.output_format = output_format
    ctx.verbose = verbose

    ctx.setup_logging()

    try:
        ctx.load_config()
    except ConfigurationError as e:
        raise click.UsageError(str(e))


def register_commands():
    """Register all command modules with the main CLI."""
    from cli.commands.ledger import refresh, backfill, seed
    from cli.commands.query import owner, asset, stats, verify
    from cli.commands.backups import backups
    from cli.commands.config import config

    for command in (refresh, backfill, seed, owner, asset, stats, verify, backups, config):
        cli.add_command(command)


register_commands()


def main():
    cli()


if __name__ == '__main__':
    main()
