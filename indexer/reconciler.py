"""
Jig Ledger - Reconciliation Driver

Runs one reconciliation pass over every tracked asset: extends each record
from its last checkpointed position, applies results to the ledger store,
checkpoints periodically, and retries assets that failed on transient errors.
Assets are processed one at a time so the chain client's adaptive delay
models a single shared rate budget with the provider.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from network.chain import ProviderError
from registry.ledger import InvalidUpdateError, LedgerStore

from .exceptions import TraceError
from .tracer import ForwardTracer


# Per-asset failures; anything else (storage, ledger invariants) aborts the pass
RECOVERABLE_ERRORS = (ProviderError, TraceError, InvalidUpdateError)


class AssetStatus(str, Enum):
    """Per-asset state within a pass."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    BURNED = "burned"
    FAILED = "failed"


@dataclass
class ReconcileConfig:
    """Configuration for a reconciliation pass."""
    checkpoint_every: int = 10
    retry_rounds: int = 2
    retry_cooldown: float = 5.0
    progress_every: int = 50
    backfill_checkpoint_every: int = 50

    def __post_init__(self):
        if self.checkpoint_every < 1:
            raise ValueError("checkpoint_every must be at least 1")
        if self.retry_rounds < 0:
            raise ValueError("retry_rounds cannot be negative")


@dataclass
class ReconcileSummary:
    """Outcome of one pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    checked: int = 0
    changed: int = 0
    unchanged: int = 0
    burned: int = 0
    burned_total: int = 0
    pending: int = 0
    owners: int = 0
    checkpoints: int = 0
    failed: List[str] = field(default_factory=list)
    incomplete: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    statuses: Dict[str, AssetStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'checked': self.checked,
            'changed': self.changed,
            'unchanged': self.unchanged,
            'burned': self.burned,
            'burned_total': self.burned_total,
            'pending': self.pending,
            'errors': len(self.failed),
            'owners': self.owners,
            'unresolved': list(self.failed),
            'incomplete': list(self.incomplete),
        }


class Reconciler:
    """Drives the forward tracer across the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        tracer: ForwardTracer,
        config: Optional[ReconcileConfig] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.tracer = tracer
        self.config = config or ReconcileConfig()
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    def process_asset(self, asset_id: str, summary: Optional[ReconcileSummary] = None) -> AssetStatus:
        """
        Extend one asset's record from its last position.

        Burned assets are terminal and report BURNED without any lookup.

        Raises:
            ProviderError, TraceError, InvalidUpdateError: On per-asset failures (nothing is applied)
        """
        record = self.store.get(asset_id)
        if record.burned:
            return AssetStatus.BURNED
        if not record.has_position:
            return AssetStatus.PENDING

        if summary is not None:
            summary.statuses[asset_id] = AssetStatus.IN_PROGRESS

        vout = record.last_vout
        if vout is None:
            vout = self.tracer.resolve_output(record.last_tx)
            self.store.cache_output_index(asset_id, vout)

        result = self.tracer.trace(record.last_tx, vout, record.owner)

        if result.ceiling_reached:
            self.logger.warning(
                f"#{asset_id}: hop ceiling {self.tracer.max_hops} reached at "
                f"{result.last_txid}:{result.last_vout}; asset may have moved further"
            )
            if summary is not None and asset_id not in summary.incomplete:
                summary.incomplete.append(asset_id)

        if not result.moved:
            return AssetStatus.UNCHANGED

        updated = self.store.apply_update(asset_id, result)

        if result.destroyed:
            self.logger.info(
                f"#{asset_id}: BURNED in {result.burn_txid[:12]}... (owner unchanged: {updated.owner})"
            )
            return AssetStatus.BURNED

        self.logger.info(f"#{asset_id}: moved! {result.hops} hops -> {updated.owner}")
        return AssetStatus.CHANGED

    def _attempt(self, asset_id: str, summary: ReconcileSummary, retry_round: int = 0) -> Tuple[AssetStatus, bool]:
        """Process one asset; returns its status and whether the ledger changed."""
        already_burned = self.store.get(asset_id).burned
        try:
            status = self.process_asset(asset_id, summary)
        except RECOVERABLE_ERRORS as e:
            status = AssetStatus.FAILED
            summary.errors[asset_id] = str(e)
            label = "retry error" if retry_round else "error"
            self.logger.error(f"#{asset_id} {label}: {e}")
        else:
            summary.errors.pop(asset_id, None)

        summary.statuses[asset_id] = status
        mutated = status == AssetStatus.CHANGED or (status == AssetStatus.BURNED and not already_burned)
        if status == AssetStatus.CHANGED:
            summary.changed += 1
        elif mutated:
            summary.burned += 1
        elif status == AssetStatus.UNCHANGED:
            summary.unchanged += 1
        return status, mutated

    def _checkpoint(self, summary: ReconcileSummary) -> None:
        self.store.checkpoint()
        summary.checkpoints += 1

    def run(self) -> ReconcileSummary:
        """
        Run one reconciliation pass.

        Safe to re-run: each asset resumes from its last checkpointed position.

        Returns:
            ReconcileSummary with counts and every asset still unresolved
        """
        summary = ReconcileSummary(started_at=datetime.now(timezone.utc))
        asset_ids = self.store.asset_ids()
        summary.statuses = {asset_id: AssetStatus.PENDING for asset_id in asset_ids}
        failed: List[str] = []
        mutations = 0

        self.logger.info(f"Checking {len(asset_ids)} assets for ownership changes...")

        try:
            for asset_id in asset_ids:
                summary.checked += 1
                status, mutated = self._attempt(asset_id, summary)

                if mutated:
                    mutations += 1
                    if mutations % self.config.checkpoint_every == 0:
                        self._checkpoint(summary)
                        self.logger.info(
                            f"SAVED | {summary.checked}/{len(asset_ids)} checked, "
                            f"{summary.changed} changed, {self.store.owner_count()} owners"
                        )
                elif status == AssetStatus.FAILED:
                    failed.append(asset_id)

                if summary.checked % self.config.progress_every == 0:
                    self.logger.info(
                        f"checked {summary.checked}/{len(asset_ids)} | {summary.changed} changed | "
                        f"{summary.burned} burned | {len(failed)} errors"
                    )

            self._checkpoint(summary)
            self.logger.info(
                f"Main pass done. {summary.checked} checked, {summary.changed} changed, {len(failed)} errors."
            )

            for retry_round in range(1, self.config.retry_rounds + 1):
                if not failed:
                    break
                retry_list, failed = failed, []
                self.logger.info(f"Retry round {retry_round}: {len(retry_list)} assets")
                self._sleep(self.config.retry_cooldown)

                for asset_id in retry_list:
                    status, _ = self._attempt(asset_id, summary, retry_round)
                    if status == AssetStatus.FAILED:
                        failed.append(asset_id)
                    else:
                        self.logger.info(f"  #{asset_id}: resolved ({status.value})")

                self._checkpoint(summary)
        except KeyboardInterrupt:
            self.logger.warning("Interrupted; checkpointing completed updates")
            self._checkpoint(summary)
            raise

        summary.failed = failed
        summary.pending = sum(1 for s in summary.statuses.values() if s == AssetStatus.PENDING)
        summary.owners = self.store.owner_count()
        summary.burned_total = self.store.burned_count()
        summary.finished_at = datetime.now(timezone.utc)

        self._log_summary(summary)
        return summary

    def _log_summary(self, summary: ReconcileSummary) -> None:
        self.logger.info("=" * 60)
        self.logger.info("REFRESH COMPLETE")
        self.logger.info(f"  Checked: {summary.checked}")
        self.logger.info(f"  Changed: {summary.changed}")
        self.logger.info(f"  Burned (this run): {summary.burned}")
        self.logger.info(f"  Burned (total): {summary.burned_total}")
        self.logger.info(f"  Errors:  {len(summary.failed)}")
        self.logger.info(f"  Owners:  {summary.owners}")
        if summary.failed:
            self.logger.warning(f"  UNRESOLVED: {', '.join(summary.failed)}")
        if summary.incomplete:
            self.logger.warning(f"  INCOMPLETE (hop ceiling): {', '.join(summary.incomplete)}")
        self.logger.info("=" * 60)

    def backfill_positions(self) -> Dict[str, Any]:
        """
        Resolve and cache the state output index of every positioned record
        that lacks one.
        """
        need = []
        for asset_id in self.store.asset_ids():
            record = self.store.get(asset_id)
            if record.has_position and record.last_vout is None and not record.burned:
                need.append(asset_id)
        self.logger.info(f"{len(need)} assets need output index backfill")

        resolved = 0
        failed: Dict[str, str] = {}
        for asset_id in need:
            try:
                vout = self.tracer.resolve_output(self.store.get(asset_id).last_tx)
            except RECOVERABLE_ERRORS as e:
                failed[asset_id] = str(e)
                self.logger.error(f"#{asset_id} error: {e}")
                continue

            self.store.cache_output_index(asset_id, vout)
            resolved += 1
            if resolved % self.config.backfill_checkpoint_every == 0:
                self.store.checkpoint()
                self.logger.info(f"Saved. {resolved}/{len(need)}")

        self.store.checkpoint()
        self.logger.info(f"Done. {resolved} backfilled.")
        return {'needed': len(need), 'resolved': resolved, 'failed': failed}
