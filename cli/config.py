#!/usr/bin/env python3
"""
Configuration Management Module for the Jig Ledger CLI

Handles hierarchical configuration loading (defaults, config file,
environment variables), validation, and construction of the typed config
objects handed to the chain client, tracer and reconciliation driver.
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Union

import yaml

from indexer.classifier import ClassifierRules
from indexer.reconciler import ReconcileConfig
from network.chain import ChainConfig


# Environment variable prefix; nested keys are separated by a double underscore,
# e.g. JIG_LEDGER_RECONCILE__CHECKPOINT_EVERY=20
ENV_PREFIX = 'JIG_LEDGER_'
ENV_NESTING = '__'

DEFAULT_CONFIG = {
    'provider': {
        'base_url': 'https://api.whatsonchain.com/v1/bsv',
        'network': 'main',
        'timeout': 30,
        'max_retries': 3,
        'max_throttle_retries': 3,
        'backoff_base': 2.0,
        'initial_delay': 0.3,
        'min_delay': 0.2,
        'max_delay': 3.0,
        'delay_step': 0.05
    },

    'ledger': {
        'path': 'ledger.json',
        'backup_dir': None,
        'backup_count': 30,
        'lock_timeout': 30
    },

    'reconcile': {
        'max_hops': 100,
        'checkpoint_every': 10,
        'retry_rounds': 2,
        'retry_cooldown': 5.0,
        'progress_every': 50
    },

    'protocol': {
        'state_dust_ceiling': 1000,
        'escrow_dust_ceiling': 100000,
        'escrow_script_type': 'nonstandard',
        'minter_address': None,
        'mint_output_index': 3
    },

    'logging': {
        'dir': None,
        'level': 'INFO'
    }
}


def config_search_paths() -> List[Path]:
    """Configuration file locations in order of precedence (highest first)."""
    return [
        Path.cwd() / '.jig-ledger.yml',
        Path.cwd() / '.jig-ledger.json',
        Path.home() / '.jig-ledger' / 'config.yml',
        Path.home() / '.jig-ledger' / 'config.json',
    ]


class ConfigurationError(Exception):
    """Invalid or unreadable configuration."""
    pass


class ConfigurationManager:
    """Manages hierarchical configuration with environment variable support."""

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Explicit configuration file path
            environ: Environment mapping (defaults to os.environ)
        """
        self.logger = logging.getLogger('jig-ledger.config')
        self.config_file = config_file
        self.environ = environ if environ is not None else os.environ
        self._config_cache = None
        self._config_sources = []

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources in hierarchical order.

        Returns:
            Merged configuration dictionary
        """
        if self._config_cache is not None:
            return self._config_cache

        configs = [DEFAULT_CONFIG]
        self._config_sources = ["defaults"]

        if self.config_file:
            configs.append(self._load_config_file(Path(self.config_file)))
            self._config_sources.append(f"file:{self.config_file}")
        else:
            for config_path in config_search_paths():
                if config_path.exists():
                    configs.append(self._load_config_file(config_path))
                    self._config_sources.append(f"file:{config_path}")
                    self.logger.debug(f"Loaded config from {config_path}")
                    break

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        self._config_cache = self._deep_merge(*configs)
        self._expand_paths(self._config_cache)
        return self._config_cache

    def _load_config_file(self, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(path, 'r') as f:
                if path.suffix in ['.yml', '.yaml']:
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unknown config file format: {path}")
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config = {}

        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    def _parse_env_value(self, value: str) -> Union[str, int, float, bool, None]:
        """Parse environment variable value to appropriate type."""
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

        if value.lower() in ['true', 'yes']:
            return True
        elif value.lower() in ['false', 'no']:
            return False

        return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple dictionaries."""
        result = {}

        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                elif isinstance(value, dict):
                    result[key] = self._deep_merge(value)
                else:
                    result[key] = value

        return result

    def _expand_paths(self, config: Dict[str, Any]):
        """Expand ~ and environment variables in path values."""
        for key, value in config.items():
            if isinstance(value, dict):
                self._expand_paths(value)
            elif isinstance(value, str):
                if '~' in value or '$' in value:
                    config[key] = os.path.expanduser(os.path.expandvars(value))

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'reconcile.max_hops')
            default: Default value if key not found
        """
        current = self.load()

        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default

        return current

    def set(self, key_path: str, value: Any):
        """Override a configuration value by dot-notation path."""
        config = self.load()

        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})

        current[keys[-1]] = value

    def validate(self) -> List[str]:
        """
        Validate current configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for builder in (self.chain_config, self.reconcile_config, self.classifier_rules):
            try:
                builder()
            except (TypeError, ValueError) as e:
                errors.append(f"{builder.__name__}: {e}")

        max_hops = self.get('reconcile.max_hops')
        if not isinstance(max_hops, int) or max_hops < 1:
            errors.append(f"reconcile.max_hops must be a positive integer, got {max_hops!r}")

        if not self.get('ledger.path'):
            errors.append("ledger.path is required")

        return errors

    def get_sources(self) -> List[str]:
        """Get list of configuration sources that were loaded."""
        self.load()
        return self._config_sources

    # Typed views

    def chain_config(self) -> ChainConfig:
        provider = self.get('provider', {})
        return ChainConfig(
            base_url=provider['base_url'],
            network=provider['network'],
            timeout=float(provider['timeout']),
            max_retries=int(provider['max_retries']),
            max_throttle_retries=int(provider['max_throttle_retries']),
            backoff_base=float(provider['backoff_base']),
            initial_delay=float(provider['initial_delay']),
            min_delay=float(provider['min_delay']),
            max_delay=float(provider['max_delay']),
            delay_step=float(provider['delay_step']),
        )

    def reconcile_config(self) -> ReconcileConfig:
        reconcile = self.get('reconcile', {})
        return ReconcileConfig(
            checkpoint_every=int(reconcile['checkpoint_every']),
            retry_rounds=int(reconcile['retry_rounds']),
            retry_cooldown=float(reconcile['retry_cooldown']),
            progress_every=int(reconcile['progress_every']),
        )

    def classifier_rules(self) -> ClassifierRules:
        protocol = self.get('protocol', {})
        return ClassifierRules(
            state_dust_ceiling=int(protocol['state_dust_ceiling']),
            escrow_dust_ceiling=int(protocol['escrow_dust_ceiling']),
            escrow_script_type=protocol['escrow_script_type'],
        )
