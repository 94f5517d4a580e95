"""
Tests for batch compilation and the per-transaction transition rules.
"""
import unittest
from decimal import Decimal
from gridsettle.collector import order_key
from gridsettle.compiler import BatchCompiler, Witness
from gridsettle.core import (
    Market,
    StateLeaf,
    Transaction,
    BatchStatus,
    SIDE_BUY,
    SIDE_SELL,
    account_key,
    market_key,
    meter_key,
    compute_batch_digest,
)
from gridsettle.crypto import generate_key_pair, serialize_public_key
from gridsettle.db import MemoryDB
from gridsettle.errors import CompileError, ValidationError
from gridsettle.markets import MarketRegistry
from gridsettle.state_tree import StateTreeManager, verify
from gridsettle import transition

T0 = 1_700_000_000.0


class CompilerTestCase(unittest.TestCase):
    def setUp(self):
        self.priv, pub = generate_key_pair()
        self.pem = serialize_public_key(pub)
        self.market = Market("PJM-RT", Decimal("-150.00"), Decimal("3000.00"))
        self.markets = MarketRegistry()
        self.markets.register(self.market)
        self.tree = StateTreeManager(MemoryDB())
        self.compiler = BatchCompiler(self.tree, self.markets)

    def signed(self, tx):
        tx.sign(self.priv)
        return tx

    def price(self, value, timestamp):
        return self.signed(Transaction.price_update(self.pem, self.market, value, timestamp=timestamp))

    def trade(self, account, side, volume, price, timestamp):
        return self.signed(Transaction.trade(self.pem, self.market, account, side, volume, price,
                                             timestamp=timestamp))

    def reading(self, account, produced, consumed, timestamp):
        return self.signed(Transaction.energy_datum(self.pem, self.market, account, produced, consumed,
                                                    timestamp=timestamp))

    def ordered(self, *txs):
        return sorted(txs, key=order_key)


class TestBatchCompiler(CompilerTestCase):
    def test_compile_is_deterministic(self):
        """Compiling the same sequence twice from the same root gives the same result."""
        txs = self.ordered(
            self.price("42.50", T0 + 1),
            self.trade("acct-1", SIDE_BUY, 10, "42.50", T0 + 2),
            self.reading("meter-1", 1500, 200, T0 + 3),
        )
        first = self.compiler.compile(txs)
        second = self.compiler.compile(txs)

        self.assertEqual(first.new_root, second.new_root)
        self.assertEqual(first.digest, second.digest)
        self.assertEqual(first.witness.to_bytes(), second.witness.to_bytes())

    def test_compile_does_not_touch_committed_state(self):
        before = self.tree.committed_root
        compiled = self.compiler.compile([self.price("42.50", T0)])
        self.assertEqual(self.tree.committed_root, before)
        self.assertNotEqual(compiled.new_root, before)
        self.assertIsNone(self.tree.get(market_key("PJM-RT")))

    def test_batch_fields(self):
        txs = [self.price("42.50", T0)]
        compiled = self.compiler.compile(txs, proposer="validator-a")
        batch = compiled.batch

        self.assertEqual(batch.epoch, 1)
        self.assertEqual(batch.status, BatchStatus.COMPILED)
        self.assertEqual(batch.previous_root, self.tree.committed_root)
        self.assertEqual(batch.proposer, "validator-a")
        self.assertEqual(batch.digest, compute_batch_digest(1, batch.previous_root, [txs[0].id]))
        self.assertEqual(batch.witness_ref, compiled.witness.ref)
        self.assertEqual(compiled.witness.public_inputs,
                         (batch.previous_root, batch.new_root, batch.digest))

    def test_rejects_non_canonical_order(self):
        a = self.price("42.50", T0)
        b = self.price("43.00", T0 + 1)
        with self.assertRaises(CompileError):
            self.compiler.compile([b, a])

    def test_empty_transition(self):
        compiled = self.compiler.compile([])
        self.assertEqual(compiled.new_root, compiled.previous_root)
        self.assertEqual(compiled.batch.transactions, ())

    def test_stale_price_is_skipped(self):
        genesis = self.tree.genesis({market_key("PJM-RT"): StateLeaf(4000, {}, T0 + 10)})
        stale = self.price("42.50", T0 + 5)
        fresh = self.price("43.00", T0 + 11)

        compiled = self.compiler.compile(self.ordered(stale, fresh))

        self.assertEqual([tx.id for tx in compiled.batch.transactions], [fresh.id])
        self.assertEqual(len(compiled.skipped), 1)
        self.assertEqual(compiled.skipped[0].tx_id, stale.id)
        self.assertEqual(compiled.skipped[0].reason, transition.STALE_PRICE)
        self.assertEqual(compiled.previous_root, genesis)

    def test_sell_without_position_is_skipped(self):
        sell = self.trade("acct-1", SIDE_SELL, 5, "42.00", T0)
        compiled = self.compiler.compile([sell])
        self.assertEqual(compiled.skipped[0].reason, transition.INSUFFICIENT_POSITION)
        self.assertEqual(compiled.new_root, compiled.previous_root)

    def test_buy_then_sell(self):
        buy = self.trade("acct-1", SIDE_BUY, 10, "40.00", T0)
        sell = self.trade("acct-1", SIDE_SELL, 4, "45.00", T0 + 1)
        compiled = self.compiler.compile([buy, sell])
        self.assertEqual(compiled.skipped, [])

        leaf = self.tree.get(account_key("PJM-RT", "acct-1"), root=compiled.new_root)
        self.assertEqual(leaf.balances['position'], 6)
        self.assertEqual(leaf.balances['notional'], 10 * 4000 - 4 * 4500)
        market_leaf = self.tree.get(market_key("PJM-RT"), root=compiled.new_root)
        self.assertEqual(market_leaf.balances['traded_volume'], 14)

    def test_duplicate_within_batch_is_skipped(self):
        tx = self.price("42.50", T0)
        compiled = self.compiler.compile([tx, tx])
        self.assertEqual(len(compiled.batch.transactions), 1)
        self.assertEqual(compiled.skipped[0].reason, "Duplicate")

    def test_energy_readings_accumulate(self):
        r1 = self.reading("meter-1", 1000, 100, T0)
        r2 = self.reading("meter-1", 500, 0, T0 + 1)
        compiled = self.compiler.compile([r1, r2])
        leaf = self.tree.get(meter_key("PJM-RT", "meter-1"), root=compiled.new_root)
        self.assertEqual(leaf.balances, {'produced': 1500, 'consumed': 100, 'readings': 2})

    def test_witness_proofs_verify_against_new_root(self):
        """After finalization every touched key proves against the new root."""
        txs = self.ordered(
            self.price("42.50", T0 + 1),
            self.trade("acct-1", SIDE_BUY, 10, "42.50", T0 + 2),
        )
        compiled = self.compiler.compile(txs)
        self.tree.commit(compiled.new_root, compiled.previous_root, compiled.batch.epoch)

        for key in compiled.touched_keys:
            leaf = self.tree.get(key)
            self.assertIsNotNone(leaf)
            self.assertTrue(verify(self.tree.committed_root, key, leaf, self.tree.prove(key)))

    def test_witness_serialization(self):
        compiled = self.compiler.compile([self.trade("acct-1", SIDE_BUY, 1, "42.00", T0)])
        restored = Witness.from_bytes(compiled.witness.to_bytes())
        self.assertEqual(restored.public_inputs, compiled.witness.public_inputs)
        self.assertEqual(restored.ref, compiled.witness.ref)

    def test_recompute_root(self):
        txs = [self.price("42.50", T0)]
        compiled = self.compiler.compile(txs)
        self.assertEqual(self.compiler.recompute_root(txs, compiled.previous_root), compiled.new_root)

    def test_compile_from_unknown_root(self):
        with self.assertRaises(CompileError):
            self.compiler.compile([self.price("42.50", T0)], previous_root=b'\x07' * 32)


class TestTransition(CompilerTestCase):
    def test_unknown_market(self):
        tx = self.price("42.50", T0)
        with self.assertRaises(ValidationError) as ctx:
            transition.apply_transaction(tx, None, {})
        self.assertEqual(ctx.exception.reason, transition.UNKNOWN_MARKET)
        self.assertEqual(ctx.exception.tx_id, tx.id)

    def test_malformed_reading(self):
        tx = self.reading("meter-1", 0, 0, T0)
        with self.assertRaises(ValidationError) as ctx:
            transition.apply_transaction(tx, self.market, {})
        self.assertEqual(ctx.exception.reason, transition.MALFORMED_READING)

    def test_stale_reading(self):
        tx = self.reading("meter-1", 10, 0, T0)
        key = meter_key("PJM-RT", "meter-1")
        with self.assertRaises(ValidationError) as ctx:
            transition.apply_transaction(tx, self.market, {key: StateLeaf(0, {}, T0)})
        self.assertEqual(ctx.exception.reason, transition.STALE_READING)

    def test_touched_keys(self):
        trade = self.trade("acct-1", SIDE_BUY, 1, "42.00", T0)
        self.assertEqual(transition.touched_keys(trade),
                         [account_key("PJM-RT", "acct-1"), market_key("PJM-RT")])
        self.assertEqual(transition.touched_keys(self.price("42.00", T0)), [market_key("PJM-RT")])


if __name__ == '__main__':
    unittest.main()
