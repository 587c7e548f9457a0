"""
Jig Ledger - Chain Data Provider Access

Resilient HTTP client for spend lookups and transaction fetches.
"""

from .chain import (
    ProviderError,
    ProviderUnavailable,
    ProviderThrottled,
    ProviderDataError,
    ChainConfig,
    TxOutput,
    Transaction,
    HTTPTransport,
    AdaptivePacer,
    RetryPolicy,
    ChainClient,
)

__all__ = [
    'ProviderError',
    'ProviderUnavailable',
    'ProviderThrottled',
    'ProviderDataError',
    'ChainConfig',
    'TxOutput',
    'Transaction',
    'HTTPTransport',
    'AdaptivePacer',
    'RetryPolicy',
    'ChainClient',
]
