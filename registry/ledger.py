"""
Jig Ledger - Ledger Store

This module owns the in-memory ledger and its owner index. Every mutation
goes through LedgerStore so that a record's owner and the owner index never
disagree, and checkpoint() persists the whole document atomically.
"""

import logging
from threading import RLock
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .schema import AssetRecord, Ledger, TransferEntry, TransferType, asset_sort_key
from .storage import IntegrityError, LedgerStorage

if TYPE_CHECKING:
    from indexer.tracer import TraceResult


DEFAULT_MINT_OUTPUT_INDEX = 3


class LedgerError(Exception):
    """Base ledger exception."""
    pass


class AssetNotFoundError(LedgerError):
    """Asset ID is not tracked by the ledger."""
    pass


class BurnedAssetError(LedgerError):
    """Attempt to mutate an asset that is already burned."""
    pass


class StaleUpdateError(LedgerError):
    """Trace result does not start at the record's current position."""
    pass


class InvalidUpdateError(LedgerError):
    """Update would leave a record that fails schema validation."""
    pass


class LedgerStore:
    """Authoritative asset-ID to record mapping plus owner index."""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self._lock = RLock()
        self._ledger: Optional[Ledger] = None
        self.logger = logging.getLogger(__name__)

    @property
    def ledger(self) -> Ledger:
        if self._ledger is None:
            raise LedgerError("Ledger not loaded")
        return self._ledger

    def load(self) -> Ledger:
        """Load the ledger from storage; a missing document yields an empty ledger."""
        with self._lock:
            data = self.storage.read()
            try:
                self._ledger = Ledger.from_document(data) if data else Ledger()
            except ValidationError as e:
                raise IntegrityError(f"Ledger document {self.storage.file_path} is invalid: {e}")

            self.logger.info(
                f"Loaded ledger: {len(self._ledger.assets)} assets, {len(self._ledger.owners)} owners"
            )
            return self._ledger

    # Queries

    def asset_ids(self) -> List[str]:
        """All tracked asset IDs in ascending order."""
        return sorted(self.ledger.assets.keys(), key=asset_sort_key)

    def get(self, asset_id: str) -> AssetRecord:
        record = self.ledger.assets.get(str(asset_id))
        if record is None:
            raise AssetNotFoundError(f"Asset {asset_id} not found")
        return record

    def assets_of(self, address: str) -> List[str]:
        """Asset IDs currently held by an address."""
        return sorted(self.ledger.owners.get(address, []), key=asset_sort_key)

    def owner_count(self) -> int:
        return len(self.ledger.owners)

    def burned_count(self) -> int:
        return sum(1 for r in self.ledger.assets.values() if r.burned)

    # Owner index

    def _index_remove(self, address: Optional[str], asset_id: str) -> None:
        if address is None or address not in self.ledger.owners:
            return
        held = [i for i in self.ledger.owners[address] if i != asset_id]
        if held:
            self.ledger.owners[address] = held
        else:
            del self.ledger.owners[address]

    def _index_add(self, address: Optional[str], asset_id: str) -> None:
        if address is None:
            return
        held = self.ledger.owners.setdefault(address, [])
        if asset_id not in held:
            held.append(asset_id)

    def _reindex(self, asset_id: str, old_owner: Optional[str], new_owner: Optional[str]) -> None:
        if old_owner == new_owner:
            return
        self._index_remove(old_owner, asset_id)
        self._index_add(new_owner, asset_id)

    # Mutations

    @staticmethod
    def _burn(record: AssetRecord, burn_txid: str, block_height: Optional[int]) -> None:
        record.burned = True
        record.burn_tx = burn_txid
        # Validated with the rest of the record by _validated
        record.transfers.append(TransferEntry.model_construct(
            txid=burn_txid,
            type=TransferType.BURN,
            from_address=record.owner,
            block_height=block_height,
        ))
        record.last_tx = burn_txid
        record.last_vout = None

    @staticmethod
    def _validated(asset_id: str, record: AssetRecord) -> AssetRecord:
        try:
            return AssetRecord.model_validate(record.model_dump())
        except ValidationError as e:
            raise InvalidUpdateError(f"Update to asset {asset_id} rejected: {e}")

    def _mutable(self, asset_id: str) -> AssetRecord:
        record = self.get(asset_id)
        if record.burned:
            raise BurnedAssetError(f"Asset {asset_id} is burned")
        return record

    def apply_update(self, asset_id: str, result: 'TraceResult') -> AssetRecord:
        """
        Fold a trace result into an asset record.

        Appends the new transfers, moves owner and position, burns the asset
        if the trace ended in destruction, and moves the asset between owner
        index entries when the owner changed. The updated record replaces the
        old one only once fully built.

        Raises:
            StaleUpdateError: If the trace did not start at the record's position
            BurnedAssetError: If the asset is already burned
            InvalidUpdateError: If the updated record fails validation (nothing is applied)
        """
        asset_id = str(asset_id)
        with self._lock:
            record = self._mutable(asset_id)
            if (result.start_txid, result.start_vout) != record.position:
                raise StaleUpdateError(
                    f"Asset {asset_id} is at {record.last_tx}:{record.last_vout}, "
                    f"trace started at {result.start_txid}:{result.start_vout}"
                )

            updated = record.model_copy(deep=True)
            updated.transfers.extend(t.model_copy() for t in result.transfers)
            updated.owner = result.owner
            updated.last_tx = result.last_txid
            updated.last_vout = result.last_vout
            if result.destroyed:
                self._burn(updated, result.burn_txid, result.burn_block_height)
            updated = self._validated(asset_id, updated)

            self.ledger.assets[asset_id] = updated
            self._reindex(asset_id, record.owner, updated.owner)
            return updated

    def mark_burned(self, asset_id: str, burn_txid: str, block_height: Optional[int] = None) -> AssetRecord:
        """Mark an asset destroyed by burn_txid; its owner stays as last known."""
        asset_id = str(asset_id)
        with self._lock:
            updated = self._mutable(asset_id).model_copy(deep=True)
            self._burn(updated, burn_txid, block_height)
            updated = self._validated(asset_id, updated)
            self.ledger.assets[asset_id] = updated
            return updated

    def cache_output_index(self, asset_id: str, output_index: int) -> None:
        """Record the resolved state output index of the current position."""
        with self._lock:
            asset_id = str(asset_id)
            updated = self._mutable(asset_id).model_copy()
            updated.last_vout = output_index
            self.ledger.assets[asset_id] = self._validated(asset_id, updated)

    def seed_assets(
        self,
        feed: Iterable[Tuple[Any, str]],
        minter_address: str,
        mint_output_index: Optional[int] = DEFAULT_MINT_OUTPUT_INDEX,
        block_heights: Optional[Dict[str, int]] = None
    ) -> int:
        """
        Create records for newly discovered assets.

        Each (asset_id, mint_txid) pair becomes a record held by the minting
        address at the mint output, with a single mint event. Already tracked
        IDs are left untouched.

        Returns:
            Number of records created
        """
        block_heights = block_heights or {}
        created = 0

        with self._lock:
            for asset_id, mint_txid in feed:
                asset_id = str(asset_id)
                if asset_id in self.ledger.assets:
                    continue

                record = AssetRecord(
                    mint_txid=mint_txid,
                    owner=minter_address,
                    last_tx=mint_txid,
                    last_vout=mint_output_index,
                    transfers=[TransferEntry(
                        txid=mint_txid,
                        type=TransferType.MINT,
                        to_address=minter_address,
                        block_height=block_heights.get(asset_id),
                    )],
                )
                self.ledger.assets[asset_id] = record
                self._index_add(minter_address, asset_id)
                created += 1

        self.logger.info(f"Seeded {created} new assets")
        return created

    # Consistency

    def verify_index(self) -> List[str]:
        """Report every disagreement between record owners and the owner index."""
        problems = []
        ledger = self.ledger
        indexed: Dict[str, List[str]] = {}

        for address, ids in ledger.owners.items():
            if not ids:
                problems.append(f"owner {address} has an empty entry")
            for asset_id in ids:
                indexed.setdefault(asset_id, []).append(address)
                record = ledger.assets.get(asset_id)
                if record is None:
                    problems.append(f"owner {address} lists unknown asset {asset_id}")
                elif record.owner != address:
                    problems.append(f"asset {asset_id} indexed under {address} but owned by {record.owner}")

        for asset_id, record in ledger.assets.items():
            if record.owner is None:
                continue
            holders = indexed.get(asset_id, [])
            if record.owner not in holders:
                problems.append(f"asset {asset_id} owned by {record.owner} is missing from the index")
            if len(holders) > 1:
                problems.append(f"asset {asset_id} indexed under {len(holders)} owners")

        return problems

    def rebuild_index(self) -> int:
        """Recompute the owner index from the records."""
        with self._lock:
            owners: Dict[str, List[str]] = {}
            for asset_id in self.asset_ids():
                owner = self.ledger.assets[asset_id].owner
                if owner is not None:
                    owners.setdefault(owner, []).append(asset_id)
            self.ledger.owners = owners
            return len(owners)

    # Persistence

    def checkpoint(self) -> str:
        """
        Stamp metadata and persist the whole ledger atomically.

        Returns:
            Checksum of the written document
        """
        with self._lock:
            ledger = self.ledger
            meta = ledger.collection
            meta.total = len(ledger.assets)
            meta.ownership_indexed = sum(1 for r in ledger.assets.values() if r.owner)
            meta.unique_owners = len(ledger.owners)
            meta.burned = self.burned_count()
            meta.update_timestamp()

            checksum = self.storage.write(ledger.to_document())
            self.logger.debug(f"Checkpoint written to {self.storage.file_path}")
            return checksum

    def stats(self) -> Dict[str, Any]:
        ledger = self.ledger
        return {
            'collection': ledger.collection.name,
            'total_assets': len(ledger.assets),
            'ownership_indexed': sum(1 for r in ledger.assets.values() if r.owner),
            'unique_owners': len(ledger.owners),
            'burned': self.burned_count(),
            'unpositioned': sum(1 for r in ledger.assets.values() if not r.has_position),
            'total_transfers': sum(len(r.transfers) for r in ledger.assets.values()),
            'last_updated': ledger.collection.last_updated,
            'storage_info': self.storage.get_storage_info(),
        }
