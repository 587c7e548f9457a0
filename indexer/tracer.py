"""
Jig Ledger - Forward Tracer

Walks the chain of spends forward from an asset's last known state output,
classifying each spending transaction and collecting transfer events until
the state output is unspent, destroyed, or the hop ceiling is reached.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from network.chain import ChainClient, ProviderDataError
from registry.schema import TransferEntry, TransferType

from .classifier import DEFAULT_RULES, ClassifierRules, classify
from .exceptions import TraceIncomplete, UnresolvableState


DEFAULT_MAX_HOPS = 100


class Termination(str, Enum):
    """Why a trace stopped."""
    UNSPENT = "unspent"
    DESTROYED = "destroyed"
    HOP_CEILING = "hop_ceiling"


@dataclass
class TraceResult:
    """Outcome of one forward trace; folded into a record by the ledger store."""
    start_txid: str
    start_vout: int
    owner: Optional[str]
    last_txid: str
    last_vout: int
    transfers: List[TransferEntry] = field(default_factory=list)
    hops: int = 0
    termination: Termination = Termination.UNSPENT
    burn_txid: Optional[str] = None
    burn_block_height: Optional[int] = None

    @property
    def moved(self) -> bool:
        return self.hops > 0

    @property
    def destroyed(self) -> bool:
        return self.termination == Termination.DESTROYED

    @property
    def ceiling_reached(self) -> bool:
        return self.termination == Termination.HOP_CEILING


class ForwardTracer:
    """Follows an asset's state output from spend to spend."""

    def __init__(
        self,
        client: ChainClient,
        max_hops: int = DEFAULT_MAX_HOPS,
        rules: ClassifierRules = DEFAULT_RULES
    ):
        if max_hops < 1:
            raise ValueError("max_hops must be at least 1")
        self.client = client
        self.max_hops = max_hops
        self.rules = rules
        self.logger = logging.getLogger(__name__)

    def resolve_output(self, txid: str) -> int:
        """
        Find the state output index inside a known transaction.

        Raises:
            UnresolvableState: If the transaction is unknown or has no state output
        """
        tx = self.client.get_transaction(txid)
        if tx is None:
            raise UnresolvableState(f"transaction {txid} not found")

        state = classify(tx, self.rules)
        if state is None:
            raise UnresolvableState(f"no state output in {txid}")
        return state.output_index

    def trace(
        self,
        start_txid: str,
        start_vout: int,
        current_owner: Optional[str],
        strict: bool = False
    ) -> TraceResult:
        """
        Trace forward from (start_txid, start_vout).

        Escrow hops and same-owner hops advance the cursor without emitting an
        event; a holder change emits a send event. A spend with no state output
        ends the trace as destroyed, leaving the owner at its last value.

        Args:
            start_txid: Transaction holding the last known state output
            start_vout: Index of that output
            current_owner: Owner at the start position
            strict: Raise TraceIncomplete instead of returning at the hop ceiling

        Raises:
            ProviderError: If a lookup fails after retries
            ProviderDataError: If a reported spender cannot be fetched
        """
        result = TraceResult(
            start_txid=start_txid,
            start_vout=start_vout,
            owner=current_owner,
            last_txid=start_txid,
            last_vout=start_vout,
        )
        txid, vout, owner = start_txid, start_vout, current_owner

        while result.hops < self.max_hops:
            spender = self.client.get_spender(txid, vout)
            if spender is None:
                result.termination = Termination.UNSPENT
                break

            spend_tx = self.client.get_transaction(spender)
            if spend_tx is None:
                # A known spender that cannot be fetched is not "no change"
                raise ProviderDataError(404, f"spending transaction {spender} of {txid}:{vout} unavailable")

            result.hops += 1
            state = classify(spend_tx, self.rules)

            if state is None:
                result.termination = Termination.DESTROYED
                result.burn_txid = spender
                result.burn_block_height = spend_tx.block_height
                self.logger.debug(f"{txid}:{vout} destroyed by {spender}")
                break

            if not state.is_escrow and state.holder_address != owner:
                result.transfers.append(TransferEntry(
                    txid=spender,
                    type=TransferType.SEND,
                    from_address=owner,
                    to_address=state.holder_address,
                    block_height=spend_tx.block_height,
                ))
                owner = state.holder_address

            self.logger.debug(
                f"hop {result.hops}: {txid}:{vout} -> {spender}:{state.output_index}"
                f"{' (escrow)' if state.is_escrow else ''}"
            )
            txid, vout = spender, state.output_index
        else:
            result.termination = Termination.HOP_CEILING

        result.owner = owner
        result.last_txid = txid
        result.last_vout = vout

        if strict and result.ceiling_reached:
            raise TraceIncomplete(
                f"hop ceiling {self.max_hops} reached at {txid}:{vout}", result=result
            )
        return result
