"""
Pytest configuration and fixtures for Jig Ledger tests.
"""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from network.chain import Transaction, TxOutput
from registry.ledger import LedgerStore
from registry.storage import LedgerStorage


MINTER = "12nG9uFESfdyE9SdYHVXQeCGFdfYLcdYZG"


def txid(n: int) -> str:
    """Deterministic 64-hex transaction ID."""
    return f"{n:064x}"


class FakeTransport:
    """
    Scripted provider transport.

    Each path maps to a list of outcomes consumed in order; the last outcome
    repeats. An outcome is a JSON payload, None (404) or an exception to raise.
    Unscripted paths answer 404.
    """

    def __init__(self):
        self.outcomes: Dict[str, List[Any]] = {}
        self.calls: List[str] = []

    def script(self, path: str, *outcomes: Any) -> None:
        self.outcomes[path] = list(outcomes)

    def get(self, path: str) -> Any:
        self.calls.append(path)
        queue = self.outcomes.get(path)
        if not queue:
            return None
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeChain:
    """
    Dictionary-backed stand-in for ChainClient.

    Transactions follow the indexed protocol's layout: output 0 carries the
    OP_RETURN payload, output 1 the asset state, output 2 payment change.
    """

    def __init__(self):
        self.spenders: Dict[Tuple[str, int], str] = {}
        self.transactions: Dict[str, Transaction] = {}
        self.failures: Dict[Any, List[Exception]] = {}
        self.calls: List[Tuple[str, ...]] = []

    @staticmethod
    def data_output(n: int = 0) -> TxOutput:
        return TxOutput(n=n, value=0, script_type="nulldata", asm="0 OP_RETURN 72756e")

    @staticmethod
    def holder_output(n: int, address: str, value: int = 1) -> TxOutput:
        return TxOutput(n=n, value=value, script_type="pubkeyhash", asm="OP_DUP OP_HASH160", addresses=[address])

    @staticmethod
    def escrow_output(n: int, value: int = 546) -> TxOutput:
        return TxOutput(n=n, value=value, script_type="nonstandard", asm="OP_CHECKSIG OP_DROP")

    @staticmethod
    def change_output(n: int, address: str = "1ChangeAddressXXXXXXXXXXXXXXXXXXXX", value: int = 250_000) -> TxOutput:
        return TxOutput(n=n, value=value, script_type="pubkeyhash", asm="OP_DUP OP_HASH160", addresses=[address])

    def add_transaction(self, tx_hash: str, outputs: List[TxOutput], block_height: Optional[int] = None) -> Transaction:
        tx = Transaction(txid=tx_hash, outputs=outputs, block_height=block_height)
        self.transactions[tx_hash] = tx
        return tx

    def add_mint(self, tx_hash: str, holder: str = MINTER, state_vout: int = 3) -> Transaction:
        outputs = [self.data_output(0), self.change_output(1), self.change_output(2)]
        outputs.insert(state_vout, self.holder_output(state_vout, holder))
        for i, output in enumerate(outputs):
            output.n = i
        return self.add_transaction(tx_hash, outputs, block_height=800_000)

    def move(self, from_txid: str, from_vout: int, spender: str, to: str, block_height: Optional[int] = None) -> None:
        """Spend (from_txid, from_vout) into a holder output at index 1 of spender."""
        self.add_transaction(
            spender,
            [self.data_output(0), self.holder_output(1, to), self.change_output(2)],
            block_height=block_height,
        )
        self.spenders[(from_txid, from_vout)] = spender

    def list_in_escrow(self, from_txid: str, from_vout: int, spender: str, block_height: Optional[int] = None) -> None:
        self.add_transaction(
            spender,
            [self.data_output(0), self.escrow_output(1), self.change_output(2)],
            block_height=block_height,
        )
        self.spenders[(from_txid, from_vout)] = spender

    def destroy(self, from_txid: str, from_vout: int, spender: str, block_height: Optional[int] = None) -> None:
        self.add_transaction(spender, [self.data_output(0), self.change_output(1)], block_height=block_height)
        self.spenders[(from_txid, from_vout)] = spender

    def fail(self, key: Any, *errors: Exception) -> None:
        """Raise the given errors (once each, in order) on the next lookups of key."""
        self.failures.setdefault(key, []).extend(errors)

    def _maybe_fail(self, key: Any) -> None:
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    def get_spender(self, tx_hash: str, output_index: int) -> Optional[str]:
        self.calls.append(("spent", tx_hash, output_index))
        self._maybe_fail((tx_hash, output_index))
        return self.spenders.get((tx_hash, output_index))

    def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        self.calls.append(("tx", tx_hash))
        self._maybe_fail(tx_hash)
        return self.transactions.get(tx_hash)


@pytest.fixture
def fake_transport():
    """Create a scripted provider transport."""
    return FakeTransport()


@pytest.fixture
def fake_chain():
    """Create an empty fake chain."""
    return FakeChain()


@pytest.fixture
def ledger_storage(tmp_path):
    """Create ledger storage in a temporary directory."""
    return LedgerStorage(tmp_path / "ledger.json", lock_timeout=0.5)


@pytest.fixture
def ledger_store(ledger_storage):
    """Create a loaded, empty ledger store."""
    store = LedgerStore(ledger_storage)
    store.load()
    return store


@pytest.fixture
def seeded_store(ledger_store, fake_chain):
    """Ledger with three freshly minted assets, each with its mint on the fake chain."""
    feed = [(str(i), txid(i)) for i in (1, 2, 3)]
    for _, mint_txid in feed:
        fake_chain.add_mint(mint_txid)
    ledger_store.seed_assets(feed, MINTER)
    return ledger_store


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
