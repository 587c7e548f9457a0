"""
Jig Ledger - Ownership Ledger

Schema, durable storage and the store that keeps records and the owner
index consistent.
"""

from .schema import AssetRecord, CollectionMetadata, Ledger, TransferEntry, TransferType
from .storage import FileLock, IntegrityError, LedgerStorage, LockTimeoutError, StorageError
from .ledger import (
    AssetNotFoundError,
    BurnedAssetError,
    LedgerError,
    LedgerStore,
    InvalidUpdateError,
    StaleUpdateError,
)

__all__ = [
    'AssetRecord',
    'CollectionMetadata',
    'Ledger',
    'TransferEntry',
    'TransferType',
    'FileLock',
    'IntegrityError',
    'LedgerStorage',
    'LockTimeoutError',
    'StorageError',
    'AssetNotFoundError',
    'BurnedAssetError',
    'LedgerError',
    'LedgerStore',
    'InvalidUpdateError',
    'StaleUpdateError',
]
