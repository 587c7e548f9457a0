"""
Jig Ledger - Ledger Schema Models

This module defines the Pydantic models for the persisted ownership ledger:
per-asset records with their transfer history, collection metadata, and the
owner-to-assets index.

Field aliases keep the on-disk document compatible with existing ledger.json
files (camelCase keys, "nfts" for the record map, "from"/"to" on transfers).
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


TXID_PATTERN = re.compile(r'^[a-fA-F0-9]{64}$')


def asset_sort_key(asset_id: str) -> Tuple[int, Any]:
    """Ascending ID order: numeric IDs numerically, then the rest lexically."""
    if asset_id.isdigit():
        return (0, int(asset_id))
    return (1, asset_id)


def _validate_txid(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not TXID_PATTERN.match(v):
        raise ValueError('Transaction ID must be 64-character hex string')
    return v.lower()


class TransferType(str, Enum):
    """Transfer event types."""
    MINT = "mint"
    SEND = "send"
    BURN = "burn"


class TransferEntry(BaseModel):
    """One step in an asset's chain of custody."""

    model_config = ConfigDict(populate_by_name=True)

    txid: str = Field(..., description="Transaction ID (hex)")
    type: TransferType
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")
    block_height: Optional[int] = Field(None, alias="blockHeight", ge=0)

    @field_validator('txid')
    @classmethod
    def validate_txid(cls, v):
        return _validate_txid(v)


class AssetRecord(BaseModel):
    """Ownership record for one tracked asset."""

    # Unknown keys (names, image links, traits) survive a load/save round trip
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    mint_txid: Optional[str] = Field(None, alias="mintTxid")
    owner: Optional[str] = Field(None, description="Current holder address")
    last_tx: Optional[str] = Field(None, alias="lastTx")
    last_vout: Optional[int] = Field(None, alias="lastVout", ge=0)
    transfers: List[TransferEntry] = Field(default_factory=list)
    burned: bool = False
    burn_tx: Optional[str] = Field(None, alias="burnTx")

    @field_validator('mint_txid', 'last_tx', 'burn_tx')
    @classmethod
    def validate_txids(cls, v):
        return _validate_txid(v)

    @property
    def has_position(self) -> bool:
        return self.last_tx is not None

    @property
    def position(self) -> Tuple[Optional[str], Optional[int]]:
        return (self.last_tx, self.last_vout)


class CollectionMetadata(BaseModel):
    """Collection-level statistics stamped on every checkpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(default="collection")
    total: int = Field(default=0, ge=0, description="Number of tracked assets")
    ownership_indexed: int = Field(default=0, alias="ownershipIndexed", ge=0)
    unique_owners: int = Field(default=0, alias="uniqueOwners", ge=0)
    burned: int = Field(default=0, ge=0)
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")

    def update_timestamp(self) -> None:
        self.last_updated = datetime.now(timezone.utc)


class Ledger(BaseModel):
    """Aggregate root: metadata, asset records and the owner index."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    collection: CollectionMetadata = Field(default_factory=CollectionMetadata)
    assets: Dict[str, AssetRecord] = Field(default_factory=dict, alias="nfts")
    owners: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator('assets', mode='before')
    @classmethod
    def stringify_asset_ids(cls, v):
        if isinstance(v, dict):
            return {str(k): record for k, record in v.items()}
        return v

    @field_validator('owners', mode='before')
    @classmethod
    def stringify_owner_index(cls, v):
        # Older ledgers list numeric IDs
        if isinstance(v, dict):
            return {str(addr): [str(i) for i in ids] for addr, ids in v.items()}
        return v

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON document layout."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> 'Ledger':
        return cls.model_validate(data)
