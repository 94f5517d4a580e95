"""
End-to-end tests: a settlement node with three local validators runs batches
from submission through proving, voting and settlement, and survives restarts,
operator halts and disputes.
"""
import asyncio
import shutil
import tempfile
import time
import pytest
import nacl.signing
from gridsettle.config import Config
from gridsettle.core import BatchStatus, DisputeOutcome, Transaction, SIDE_BUY, SIDE_SELL, market_key
from gridsettle.crypto import generate_key_pair, serialize_public_key, validator_address
from gridsettle.db import DB, MemoryDB
from gridsettle.disputes import build_evidence
from gridsettle.errors import SystemHalted
from gridsettle.genesis_tool import apply_genesis
from gridsettle.node import SettlementNode
from gridsettle.settlement import decode_transaction_list
from gridsettle.state_tree import BLANK_ROOT


def genesis_config(keys):
    return {
        "markets": [
            {"market_id": "PJM-RT", "min_price": "-150.00", "max_price": "3000.00", "precision": 2},
        ],
        "initial_validators": [
            {"verify_key": bytes(k.verify_key).hex(), "stake": 1000} for k in keys
        ],
        "initial_prices": {"PJM-RT": "40.00"},
    }


@pytest.fixture
def validator_keys():
    return [nacl.signing.SigningKey.generate() for _ in range(3)]


@pytest.fixture
def node(validator_keys):
    db = MemoryDB()
    apply_genesis(genesis_config(validator_keys), db)
    node = SettlementNode(Config.default(), db=db, validator_keys=validator_keys)
    yield node
    node.prover.shutdown()


@pytest.fixture
def submitter_keys():
    priv, pub = generate_key_pair()
    return priv, serialize_public_key(pub)


def price_update(node, submitter_keys, price, offset=0.0):
    priv, pem = submitter_keys
    tx = Transaction.price_update(pem, node.markets.get("PJM-RT"), price, timestamp=time.time() + offset)
    tx.sign(priv)
    return tx


def buy(node, submitter_keys, volume, price):
    priv, pem = submitter_keys
    tx = Transaction.trade(pem, node.markets.get("PJM-RT"), "acct-1", SIDE_BUY, volume, price,
                           timestamp=time.time())
    tx.sign(priv)
    return tx


class TestGenesis:
    def test_genesis_registers_markets_and_validators(self, node, validator_keys):
        assert "PJM-RT" in node.markets
        assert len(node.validator_set) == 3
        assert node.validator_set.total_stake == 3000
        for key in validator_keys:
            assert validator_address(key.verify_key) in node.validator_set

    def test_genesis_seeds_prices(self, node):
        assert node.tree.committed_root != BLANK_ROOT
        assert node.tree.get(market_key("PJM-RT")).latest_price == 4000

    def test_genesis_rejects_unknown_market_price(self):
        with pytest.raises(ValueError):
            apply_genesis({"initial_prices": {"CAISO": "10.00"}}, MemoryDB())


class TestConfiguration:
    def test_node_refuses_other_tree_depth(self, validator_keys):
        config = Config.default()
        config.tree.depth = 128
        with pytest.raises(ValueError):
            SettlementNode(config, db=MemoryDB(), validator_keys=validator_keys)


class TestEpochs:
    def test_run_epoch_finalizes(self, node, submitter_keys):
        genesis_root = node.tree.committed_root
        tx = price_update(node, submitter_keys, "42.50")
        assert node.submit(tx) == (True, "")

        receipt = node.run_epoch()

        assert receipt is not None
        assert receipt.epoch == 1
        assert receipt.previous_root == genesis_root
        assert node.tree.committed_root == receipt.new_root
        assert node.tree.get(market_key("PJM-RT")).latest_price == 4250
        assert len(node.collector) == 0

        entry = node.log.by_digest(receipt.batch_digest)
        assert len(entry.quorum_signatures) >= 2
        published = decode_transaction_list(node.da_store.fetch(entry.tx_list_ref))
        assert [t.id for t in published] == [tx.id]

    def test_consecutive_epochs_chain(self, node, submitter_keys):
        node.submit(price_update(node, submitter_keys, "42.50", offset=-2))
        first = node.run_epoch()
        node.submit(buy(node, submitter_keys, 5, "42.50"))
        node.submit(price_update(node, submitter_keys, "43.00"))
        second = node.run_epoch()

        assert second.epoch == 2
        assert second.previous_root == first.new_root
        assert node.tree.committed_epoch == 2
        assert [e.epoch for e in node.log.entries()] == [1, 2]

    def test_nothing_pending(self, node):
        assert node.run_epoch() is None

    def test_skipped_transactions_do_not_block(self, node, submitter_keys):
        priv, pem = submitter_keys
        sell = Transaction.trade(pem, node.markets.get("PJM-RT"), "acct-9", SIDE_SELL, 5, "42.00",
                                 timestamp=time.time())
        sell.sign(priv)
        node.submit(sell)
        assert node.run_epoch() is None
        assert node.tree.committed_epoch == 0

        node.submit(price_update(node, submitter_keys, "41.00"))
        receipt = node.run_epoch()
        assert receipt.epoch == 2

    def test_operator_alert_halts_proposals(self, node, submitter_keys):
        node.submit(price_update(node, submitter_keys, "42.50"))
        node.alerts.raise_alert("proving", "prover out of memory")

        with pytest.raises(SystemHalted):
            node.run_epoch()
        assert len(node.collector) == 1

        node.alerts.clear()
        assert node.run_epoch().epoch == 1


class TestDisputesOnNode:
    def test_honest_batch_survives_dispute(self, node, submitter_keys):
        node.submit(price_update(node, submitter_keys, "42.50"))
        receipt = node.run_epoch()
        batch = node.submitter.finalized[receipt.batch_digest]

        node.ledger.deposit("challenger", 500)
        evidence = build_evidence(receipt.previous_root, b'\x05' * 32, [tx.id for tx in batch.transactions])
        dispute = node.disputes.open_dispute("challenger", receipt.batch_digest, evidence, 200)
        node.disputes.resolve(dispute.dispute_id)

        assert dispute.outcome == DisputeOutcome.REJECTED
        assert batch.status == BatchStatus.FINALIZED
        assert node.tree.committed_root == receipt.new_root
        assert node.ledger.balance_of("challenger") == 300


class TestRestart:
    def test_state_survives_restart(self, validator_keys, submitter_keys):
        temp_dir = tempfile.mkdtemp()
        try:
            config = Config.default()
            config.database.path = temp_dir

            db = DB(temp_dir)
            apply_genesis(genesis_config(validator_keys), db)
            node = SettlementNode(config, db=db, validator_keys=validator_keys)
            node.submit(price_update(node, submitter_keys, "42.50"))
            receipt = node.run_epoch()
            node.prover.shutdown()
            db.close()

            db = DB(temp_dir)
            reopened = SettlementNode(config, db=db, validator_keys=validator_keys)
            try:
                assert reopened.tree.committed_root == receipt.new_root
                assert reopened.tree.committed_epoch == 1
                assert reopened.log.latest().batch_digest == receipt.batch_digest
                assert len(reopened.validator_set) == 3

                reopened.submit(price_update(reopened, submitter_keys, "43.00"))
                assert reopened.run_epoch().epoch == 2
            finally:
                reopened.prover.shutdown()
                db.close()
        finally:
            shutil.rmtree(temp_dir)


class SlowValidator:
    """Reviews like the wrapped validator after holding its thread."""

    def __init__(self, validator, delay):
        self.validator = validator
        self.delay = delay

    def review(self, proposal):
        time.sleep(self.delay)
        return self.validator.review(proposal)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_async_pipeline_finalizes(self, validator_keys, submitter_keys):
        db = MemoryDB()
        apply_genesis(genesis_config(validator_keys), db)
        node = SettlementNode(Config.default(), db=db, validator_keys=validator_keys)

        runner = asyncio.create_task(node.start())
        await asyncio.sleep(0.05)
        await node.submit_async(price_update(node, submitter_keys, "42.50"))

        deadline = time.time() + 15
        while node.tree.committed_epoch < 1 and time.time() < deadline:
            await asyncio.sleep(0.05)

        assert node.tree.committed_epoch == 1
        assert node.tree.get(market_key("PJM-RT")).latest_price == 4250

        await node.stop()
        await runner

    @pytest.mark.asyncio
    async def test_reviews_leave_event_loop_responsive(self, validator_keys, submitter_keys):
        db = MemoryDB()
        apply_genesis(genesis_config(validator_keys), db)
        node = SettlementNode(Config.default(), db=db, validator_keys=validator_keys)
        node.validators = [SlowValidator(v, 0.5) for v in node.validators]

        runner = asyncio.create_task(node.start())
        await asyncio.sleep(0.05)
        await node.submit_async(price_update(node, submitter_keys, "42.50"))

        ticks = []
        deadline = time.time() + 15
        while node.tree.committed_epoch < 1 and time.time() < deadline:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

        assert node.tree.committed_epoch == 1
        assert max(b - a for a, b in zip(ticks, ticks[1:])) < 0.4

        await node.stop()
        await runner
