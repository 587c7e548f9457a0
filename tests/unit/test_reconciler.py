"""
Unit tests for the reconciliation driver.
"""

import pytest

from conftest import MINTER, txid
from indexer.exceptions import UnresolvableState
from indexer.reconciler import AssetStatus, ReconcileConfig, Reconciler
from indexer.tracer import ForwardTracer
from network.chain import ChainClient, ChainConfig, ProviderThrottled, ProviderUnavailable
from registry.ledger import LedgerStore
from registry.schema import AssetRecord, TransferType
from registry.storage import IntegrityError


def document_without_timestamp(storage):
    """Persisted ledger text with the lastUpdated stamp removed."""
    return [line for line in storage.file_path.read_text().splitlines() if '"lastUpdated"' not in line]


def provider_tx(tx_hash, holder=None, blockheight=800_500):
    """Provider payload with the state at output 1: a holder output, or an escrow lock without holder."""
    if holder:
        state = {"type": "pubkeyhash", "asm": "OP_DUP OP_HASH160", "addresses": [holder]}
        value = 0.00000001
    else:
        state = {"type": "nonstandard", "asm": "OP_CHECKSIG OP_DROP"}
        value = 0.00000546
    return {
        "txid": tx_hash,
        "blockheight": blockheight,
        "vout": [
            {"n": 0, "value": 0, "scriptPubKey": {"type": "nulldata", "asm": "0 OP_RETURN 72756e"}},
            {"n": 1, "value": value, "scriptPubKey": state},
        ],
    }


class TestReconcilePass:
    """Test a full pass over the ledger."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def reconciler(self, seeded_store, fake_chain, sleeps):
        return Reconciler(seeded_store, ForwardTracer(fake_chain), ReconcileConfig(), sleep=sleeps.append)

    def test_no_changes(self, reconciler, fake_chain):
        summary = reconciler.run()

        assert summary.checked == 3
        assert summary.unchanged == 3
        assert summary.changed == 0
        assert summary.failed == []
        assert summary.owners == 1
        assert summary.checkpoints == 1
        assert [c for c in fake_chain.calls if c[0] == "spent"] == [
            ("spent", txid(i), 3) for i in (1, 2, 3)
        ]

    def test_transfer_escrow_and_destruction(self, reconciler, seeded_store, fake_chain):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice", block_height=800_100)
        fake_chain.destroy(txid(2), 3, txid(20), block_height=800_200)
        fake_chain.list_in_escrow(txid(3), 3, txid(30))
        fake_chain.move(txid(30), 1, txid(31), to="1Bob", block_height=800_300)

        summary = reconciler.run()

        assert summary.changed == 2
        assert summary.burned == 1
        assert summary.burned_total == 1
        assert summary.statuses == {
            "1": AssetStatus.CHANGED, "2": AssetStatus.BURNED, "3": AssetStatus.CHANGED,
        }

        first = seeded_store.get("1")
        assert first.owner == "1Alice"
        assert first.position == (txid(10), 1)

        burned = seeded_store.get("2")
        assert burned.burned
        assert burned.burn_tx == txid(20)
        assert burned.owner == MINTER
        assert burned.transfers[-1].type == TransferType.BURN
        assert burned.transfers[-1].block_height == 800_200

        escrowed = seeded_store.get("3")
        assert escrowed.owner == "1Bob"
        assert [(t.from_address, t.to_address) for t in escrowed.transfers[1:]] == [(MINTER, "1Bob")]

        assert seeded_store.verify_index() == []
        assert summary.owners == 3

    def test_rerun_is_idempotent(self, reconciler, seeded_store, ledger_storage, fake_chain):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        fake_chain.destroy(txid(2), 3, txid(20))
        reconciler.run()
        first = document_without_timestamp(ledger_storage)

        summary = reconciler.run()

        assert summary.changed == 0
        assert summary.burned == 0
        assert summary.unchanged == 2
        assert summary.statuses["2"] == AssetStatus.BURNED
        assert document_without_timestamp(ledger_storage) == first

    def test_history_only_grows(self, reconciler, seeded_store, fake_chain):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        reconciler.run()
        before = [t.model_dump() for t in seeded_store.get("1").transfers]

        fake_chain.move(txid(10), 1, txid(11), to="1Bob")
        reconciler.run()
        after = [t.model_dump() for t in seeded_store.get("1").transfers]

        assert after[:len(before)] == before
        assert after[-1]["to_address"] == "1Bob"

    def test_burned_assets_are_not_traced(self, reconciler, seeded_store, fake_chain):
        seeded_store.mark_burned("2", txid(20))
        summary = reconciler.run()

        assert ("spent", txid(2), 3) not in fake_chain.calls
        assert summary.statuses["2"] == AssetStatus.BURNED
        assert summary.burned == 0
        assert summary.burned_total == 1
        assert summary.checkpoints == 1

    def test_unpositioned_asset_stays_pending(self, ledger_store, fake_chain, sleeps):
        ledger_store.ledger.assets["9"] = AssetRecord(owner=None)

        summary = Reconciler(ledger_store, ForwardTracer(fake_chain), sleep=sleeps.append).run()

        assert summary.statuses["9"] == AssetStatus.PENDING
        assert summary.pending == 1
        assert fake_chain.calls == []

    def test_missing_output_index_is_resolved(self, ledger_store, fake_chain, sleeps):
        fake_chain.add_mint(txid(1), state_vout=3)
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        ledger_store.seed_assets([("1", txid(1))], MINTER, mint_output_index=None)

        summary = Reconciler(ledger_store, ForwardTracer(fake_chain), sleep=sleeps.append).run()

        assert summary.changed == 1
        assert ledger_store.get("1").position == (txid(10), 1)

    def test_hop_ceiling_resumes_next_pass(self, seeded_store, fake_chain, sleeps):
        reconciler = Reconciler(seeded_store, ForwardTracer(fake_chain, max_hops=2), sleep=sleeps.append)
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        fake_chain.move(txid(10), 1, txid(11), to="1Bob")
        fake_chain.move(txid(11), 1, txid(12), to="1Carol")

        summary = reconciler.run()
        assert summary.incomplete == ["1"]
        assert seeded_store.get("1").owner == "1Bob"

        summary = reconciler.run()
        assert summary.incomplete == []
        assert seeded_store.get("1").owner == "1Carol"
        assert len(seeded_store.get("1").transfers) == 4


class TestFailureHandling:
    """Test per-asset failure isolation and retry rounds."""

    @pytest.fixture
    def sleeps(self):
        return []

    def make(self, store, chain, sleeps, **config):
        return Reconciler(store, ForwardTracer(chain), ReconcileConfig(**config), sleep=sleeps.append)

    def test_transient_failure_recovers_in_retry_round(self, seeded_store, fake_chain, sleeps):
        fake_chain.move(txid(2), 3, txid(20), to="1Alice")
        fake_chain.fail((txid(2), 3), ProviderUnavailable(-1, "timeout"))

        summary = self.make(seeded_store, fake_chain, sleeps).run()

        assert summary.failed == []
        assert summary.errors == {}
        assert summary.statuses["2"] == AssetStatus.CHANGED
        assert seeded_store.get("2").owner == "1Alice"
        assert sleeps == [5.0]
        assert summary.checkpoints == 2

    def test_persistent_failure_is_reported(self, seeded_store, fake_chain, sleeps):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        fake_chain.fail((txid(2), 3), *[ProviderThrottled(429, "slow down") for _ in range(3)])

        summary = self.make(seeded_store, fake_chain, sleeps).run()

        assert summary.failed == ["2"]
        assert "429" in summary.errors["2"]
        assert summary.statuses["2"] == AssetStatus.FAILED
        assert summary.to_dict()["unresolved"] == ["2"]
        assert summary.to_dict()["errors"] == 1
        # the failure did not stop the rest of the pass
        assert seeded_store.get("1").owner == "1Alice"
        assert summary.unchanged == 1
        assert sleeps == [5.0, 5.0]
        assert summary.checkpoints == 3

    def test_failed_asset_is_untouched(self, seeded_store, fake_chain, sleeps):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        fake_chain.fail(txid(10), *[ProviderUnavailable(503, "down") for _ in range(3)])
        before = seeded_store.get("1").model_dump()

        summary = self.make(seeded_store, fake_chain, sleeps).run()

        assert summary.failed == ["1"]
        assert seeded_store.get("1").model_dump() == before

    def test_unresolvable_output_index_fails_asset(self, ledger_store, fake_chain, sleeps):
        ledger_store.seed_assets([("1", txid(1))], MINTER, mint_output_index=None)

        summary = self.make(ledger_store, fake_chain, sleeps, retry_rounds=0).run()

        assert summary.failed == ["1"]
        assert "not found" in summary.errors["1"]

    def test_fatal_errors_abort_the_pass(self, seeded_store, sleeps):
        class BrokenTracer:
            max_hops = 100

            def resolve_output(self, tx_hash):
                raise UnresolvableState("unused")

            def trace(self, *args, **kwargs):
                raise IntegrityError("ledger document is corrupt")

        with pytest.raises(IntegrityError):
            Reconciler(seeded_store, BrokenTracer(), sleep=sleeps.append).run()

    def test_interrupt_checkpoints_completed_updates(self, seeded_store, ledger_storage, fake_chain, sleeps):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        fake_chain.fail((txid(2), 3), KeyboardInterrupt())

        with pytest.raises(KeyboardInterrupt):
            self.make(seeded_store, fake_chain, sleeps).run()

        reloaded = LedgerStore(ledger_storage)
        reloaded.load()
        assert reloaded.get("1").owner == "1Alice"
        assert reloaded.verify_index() == []

    def test_invalid_position_fails_only_that_asset(self, seeded_store, ledger_storage, fake_chain, sleeps):
        fake_chain.move(txid(1), 3, txid(10), to="1Alice")
        # escrow hop emits no transfer, so only the position carries the bad txid
        fake_chain.list_in_escrow(txid(3), 3, "zz")

        summary = self.make(seeded_store, fake_chain, sleeps, retry_rounds=0).run()

        assert summary.failed == ["3"]
        assert "rejected" in summary.errors["3"]
        assert seeded_store.get("3").position == (txid(3), 3)
        assert seeded_store.get("1").owner == "1Alice"

        reloaded = LedgerStore(ledger_storage)
        reloaded.load()
        assert reloaded.get("3").position == (txid(3), 3)
        assert reloaded.verify_index() == []


class TestMalformedProviderData:
    """Test provider payloads that fail decoding, driven through the real client."""

    @pytest.fixture
    def store(self, ledger_store):
        ledger_store.seed_assets([(str(i), txid(i)) for i in (1, 2, 3)], MINTER)
        return ledger_store

    @pytest.fixture
    def reconciler(self, store, fake_transport):
        client = ChainClient(ChainConfig(), transport=fake_transport, sleep=lambda s: None)
        return Reconciler(store, ForwardTracer(client), sleep=lambda s: None)

    @pytest.fixture(autouse=True)
    def second_asset_moves(self, fake_transport):
        fake_transport.script(f"/tx/{txid(2)}/3/spent", {"txid": txid(20)})
        fake_transport.script(f"/tx/hash/{txid(20)}", provider_tx(txid(20), holder="1Bob"))

    def assert_ledger_reloads(self, storage):
        reloaded = LedgerStore(storage)
        reloaded.load()
        assert reloaded.verify_index() == []
        assert reloaded.get("1").position == (txid(1), 3)
        assert reloaded.get("1").owner == MINTER
        assert reloaded.get("2").owner == "1Bob"

    def test_invalid_block_height(self, reconciler, fake_transport, ledger_storage):
        fake_transport.script(f"/tx/{txid(1)}/3/spent", {"txid": txid(10)})
        fake_transport.script(f"/tx/hash/{txid(10)}", provider_tx(txid(10), holder="1Alice", blockheight="n/a"))

        summary = reconciler.run()

        assert summary.failed == ["1"]
        assert "block height" in summary.errors["1"]
        assert summary.statuses["2"] == AssetStatus.CHANGED
        assert summary.unchanged == 1
        self.assert_ledger_reloads(ledger_storage)

    @pytest.mark.parametrize("spender", ["zz", "g" * 64])
    def test_invalid_spender_txid(self, reconciler, fake_transport, ledger_storage, spender):
        fake_transport.script(f"/tx/{txid(1)}/3/spent", {"txid": spender})
        fake_transport.script(f"/tx/hash/{spender}", provider_tx(spender))

        summary = reconciler.run()

        assert summary.failed == ["1"]
        assert "invalid txid" in summary.errors["1"]
        assert summary.changed == 1
        assert f"/tx/hash/{spender}" not in fake_transport.calls
        self.assert_ledger_reloads(ledger_storage)


class TestCheckpointing:
    """Test checkpoint cadence."""

    def test_checkpoint_every_n_changes(self, ledger_store, fake_chain):
        feed = [(str(i), txid(i)) for i in range(1, 6)]
        for asset_id, mint in feed:
            fake_chain.add_mint(mint)
            fake_chain.move(mint, 3, txid(100 + int(asset_id)), to=f"1Owner{asset_id}")
        ledger_store.seed_assets(feed, MINTER)

        writes = []
        original = ledger_store.storage.write

        def counting_write(data):
            writes.append(len(data["owners"]))
            return original(data)

        ledger_store.storage.write = counting_write
        summary = Reconciler(
            ledger_store, ForwardTracer(fake_chain), ReconcileConfig(checkpoint_every=2), sleep=lambda s: None
        ).run()

        assert summary.changed == 5
        assert summary.checkpoints == 3
        # owners index at each write: after 2 changes, after 4, end of pass
        assert writes == [3, 5, 5]


class TestBackfill:
    """Test resolving missing output indices."""

    def test_backfill_positions(self, ledger_store, fake_chain):
        ledger_store.seed_assets([(str(i), txid(i)) for i in (1, 2, 3)], MINTER, mint_output_index=None)
        fake_chain.add_mint(txid(1), state_vout=3)
        fake_chain.add_mint(txid(2), state_vout=2)

        result = Reconciler(ledger_store, ForwardTracer(fake_chain), sleep=lambda s: None).backfill_positions()

        assert result["needed"] == 3
        assert result["resolved"] == 2
        assert list(result["failed"]) == ["3"]
        assert ledger_store.get("1").last_vout == 3
        assert ledger_store.get("2").last_vout == 2
        assert ledger_store.get("3").last_vout is None
        assert ledger_store.storage.exists()

    def test_backfill_skips_known_positions(self, seeded_store, fake_chain):
        result = Reconciler(seeded_store, ForwardTracer(fake_chain), sleep=lambda s: None).backfill_positions()
        assert result == {"needed": 0, "resolved": 0, "failed": {}}
        assert fake_chain.calls == []
