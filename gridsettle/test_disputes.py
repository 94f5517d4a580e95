"""
Tests for challenge windows, evidence checks, fraud re-execution and slashing.
"""
import unittest
from decimal import Decimal
from gridsettle.collector import TransactionCollector
from gridsettle.compiler import BatchCompiler
from gridsettle.consensus import ValidatorSet
from gridsettle.core import (
    Batch,
    BatchStatus,
    DisputeOutcome,
    DisputeStatus,
    Market,
    Proof,
    Transaction,
    SIDE_BUY,
)
from gridsettle.crypto import generate_key_pair, serialize_public_key
from gridsettle.db import MemoryDB
from gridsettle.disputes import DisputeHandler, StakeLedger, build_evidence, parse_evidence
from gridsettle.errors import DisputeError, SubmissionError
from gridsettle.markets import MarketRegistry
from gridsettle.settlement import (
    ENTRY_REVERTED,
    FinalizedBatchLog,
    LocalDataAvailabilityStore,
    LocalProofAcceptor,
    SettlementSubmitter,
)
from gridsettle.state_tree import BLANK_ROOT, StateTreeManager

T0 = 1_700_000_000.0
WINDOW = 3600.0
PROPOSER = "ab" * 20
CHALLENGER = "challenger-1"


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class PermissiveAcceptor(LocalProofAcceptor):
    """Accepts anything that binds its public inputs, standing in for a faulty verifier."""

    def __init__(self):
        super().__init__(verifier=None)

    def accept(self, proof, public_inputs):
        self.accepted[proof.previous_root] = proof.seal
        return True


class DisputeTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.priv, pub = generate_key_pair()
        self.pem = serialize_public_key(pub)
        self.market = Market("PJM-RT", Decimal("-150.00"), Decimal("3000.00"))
        self.markets = MarketRegistry()
        self.markets.register(self.market)

        self.db = MemoryDB()
        self.tree = StateTreeManager(self.db)
        self.compiler = BatchCompiler(self.tree, self.markets)
        self.collector = TransactionCollector(self.markets, clock=self.clock)
        self.log = FinalizedBatchLog(self.db)
        self.da_store = LocalDataAvailabilityStore(self.db)
        self.acceptor = PermissiveAcceptor()
        self.submitter = SettlementSubmitter(self.tree, self.acceptor, self.da_store, self.log,
                                             collector=self.collector, clock=self.clock)

        self.validators = ValidatorSet()
        self.validators.add(PROPOSER, 1000, "00" * 32)
        self.ledger = StakeLedger(self.validators)
        self.ledger.deposit(CHALLENGER, 500)
        self.handler = DisputeHandler(
            self.tree, self.compiler, self.log, self.da_store, self.ledger,
            collector=self.collector,
            acceptor=self.acceptor,
            batch_lookup=self.submitter.finalized.get,
            challenge_window=WINDOW,
            min_challenger_stake=100,
            slash_percentage=50,
            clock=self.clock,
        )

        self.tx1 = self.signed(Transaction.price_update(self.pem, self.market, "42.50", timestamp=T0))
        self.tx2 = self.signed(Transaction.trade(self.pem, self.market, "acct-1", SIDE_BUY, 10, "42.50",
                                                 timestamp=T0 + 1))
        self.tx3 = self.signed(Transaction.price_update(self.pem, self.market, "43.00", timestamp=T0 + 2))

    def signed(self, tx):
        tx.sign(self.priv)
        return tx

    def finalize(self, batch):
        for status in (BatchStatus.PROVING, BatchStatus.PROVEN, BatchStatus.PROPOSED):
            batch.transition(status)
        proof = Proof(batch.previous_root, batch.new_root, batch.digest, b'', b'')
        return self.submitter.submit(batch, proof, [])

    def honest_batch(self):
        batch = self.compiler.compile([self.tx1], proposer=PROPOSER).batch
        self.finalize(batch)
        return batch

    def fraudulent_batch(self):
        """Claims only tx1 but commits the root that tx1 and tx2 together produce."""
        inflated = self.compiler.compile([self.tx1, self.tx2])
        batch = Batch(1, [self.tx1], BLANK_ROOT, inflated.new_root, proposer=PROPOSER)
        self.finalize(batch)
        return batch

    def follow_on_batch(self, parent):
        batch = self.compiler.compile([self.tx3], previous_root=parent.new_root, epoch=parent.epoch + 1,
                                      proposer=PROPOSER).batch
        self.finalize(batch)
        return batch

    def evidence_for(self, batch, claimed_root=None):
        claimed_root = claimed_root or self.compiler.recompute_root(list(batch.transactions),
                                                                    batch.previous_root)
        return build_evidence(batch.previous_root, claimed_root, [tx.id for tx in batch.transactions])


class TestFraudResolution(DisputeTestCase):
    def test_upheld_dispute_reverts_and_slashes(self):
        """A batch whose root does not recompute is reverted with everything after it."""
        bad = self.fraudulent_batch()
        later = self.follow_on_batch(bad)
        self.assertEqual(self.tree.committed_epoch, 2)

        dispute = self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)
        self.assertEqual(self.ledger.balance_of(CHALLENGER), 300)
        self.handler.resolve(dispute.dispute_id)

        self.assertEqual(dispute.outcome, DisputeOutcome.UPHELD)
        self.assertEqual(dispute.status, DisputeStatus.RESOLVED)
        self.assertNotEqual(dispute.recomputed_root, bad.new_root)

        self.assertEqual(self.tree.committed_root, BLANK_ROOT)
        self.assertEqual(self.tree.committed_epoch, 0)
        self.assertEqual([e.status for e in self.log.entries()], [ENTRY_REVERTED, ENTRY_REVERTED])
        self.assertEqual(bad.status, BatchStatus.REVERTED)
        self.assertEqual(later.status, BatchStatus.REVERTED)
        self.assertEqual(self.acceptor.accepted, {})

        self.assertEqual(self.validators.stake_of(PROPOSER), 500)
        self.assertEqual(self.ledger.balance_of(CHALLENGER), 500)
        self.assertTrue(self.collector.has_transaction(self.tx1.id))
        self.assertTrue(self.collector.has_transaction(self.tx3.id))

    def test_settlement_resumes_after_revert(self):
        """The next batch compiled with defaults finalizes on a fresh epoch."""
        bad = self.fraudulent_batch()
        dispute = self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)
        self.handler.resolve(dispute.dispute_id)

        batch = self.compiler.compile([self.tx3], proposer=PROPOSER).batch
        self.assertEqual(batch.epoch, 2)
        receipt = self.finalize(batch)

        self.assertEqual(receipt.epoch, 2)
        self.assertEqual(self.tree.committed_root, batch.new_root)
        self.assertEqual(self.log.latest().batch_digest, batch.digest)
        self.assertEqual(self.submitter.notifications.qsize(), 2)

    def test_reverted_epoch_is_not_reused(self):
        bad = self.fraudulent_batch()
        dispute = self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)
        self.handler.resolve(dispute.dispute_id)

        batch = self.compiler.compile([self.tx3], epoch=1, proposer=PROPOSER).batch
        with self.assertRaises(SubmissionError):
            self.finalize(batch)

        self.assertEqual(batch.status, BatchStatus.REJECTED)
        self.assertEqual(self.tree.committed_root, BLANK_ROOT)
        self.assertEqual(self.acceptor.accepted, {})
        self.assertIsNone(self.log.by_digest(batch.digest))
        self.assertTrue(self.collector.has_transaction(self.tx3.id))

    def test_reverted_batch_cannot_be_disputed_again(self):
        bad = self.fraudulent_batch()
        dispute = self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)
        self.handler.resolve(dispute.dispute_id)
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)

    def test_disputes_on_later_batches_lapse(self):
        bad = self.fraudulent_batch()
        later = self.follow_on_batch(bad)
        self.ledger.deposit("challenger-2", 300)
        lapsed = self.handler.open_dispute("challenger-2", later.digest, self.evidence_for(later), 150)
        dispute = self.handler.open_dispute(CHALLENGER, bad.digest, self.evidence_for(bad), 200)

        self.handler.resolve(dispute.dispute_id)

        self.assertEqual(lapsed.outcome, DisputeOutcome.DISMISSED)
        self.assertEqual(self.ledger.balance_of("challenger-2"), 300)
        self.assertEqual(self.handler.active_disputes(), [])

    def test_rejected_dispute_forfeits_stake(self):
        good = self.honest_batch()
        evidence = self.evidence_for(good, claimed_root=b'\x05' * 32)
        dispute = self.handler.open_dispute(CHALLENGER, good.digest, evidence, 200)

        self.handler.submit_evidence(dispute.dispute_id)
        self.assertEqual(dispute.status, DisputeStatus.EVIDENCE_SUBMISSION)
        self.handler.start_voting(dispute.dispute_id)
        self.handler.resolve(dispute.dispute_id)

        self.assertEqual(dispute.outcome, DisputeOutcome.REJECTED)
        self.assertEqual(dispute.recomputed_root, good.new_root)
        self.assertEqual(self.tree.committed_root, good.new_root)
        self.assertEqual(good.status, BatchStatus.FINALIZED)
        self.assertEqual(self.ledger.balance_of(CHALLENGER), 300)
        self.assertEqual(self.ledger.forfeited, 200)
        self.assertEqual(self.validators.stake_of(PROPOSER), 1000)


class TestDisputeAdmission(DisputeTestCase):
    def test_malformed_evidence_is_dismissed(self):
        good = self.honest_batch()
        dispute = self.handler.open_dispute(CHALLENGER, good.digest, b'junk', 200)

        with self.assertRaises(DisputeError):
            self.handler.submit_evidence(dispute.dispute_id)
        self.assertEqual(dispute.outcome, DisputeOutcome.DISMISSED)
        self.assertEqual(self.ledger.balance_of(CHALLENGER), 500)
        self.assertEqual(self.tree.committed_root, good.new_root)

    def test_evidence_must_match_published_transactions(self):
        good = self.honest_batch()
        evidence = build_evidence(good.previous_root, b'\x05' * 32, [self.tx2.id])
        dispute = self.handler.open_dispute(CHALLENGER, good.digest, evidence, 200)
        with self.assertRaises(DisputeError):
            self.handler.resolve(dispute.dispute_id)
        self.assertEqual(dispute.outcome, DisputeOutcome.DISMISSED)

    def test_evidence_claiming_finalized_root(self):
        good = self.honest_batch()
        evidence = self.evidence_for(good, claimed_root=good.new_root)
        dispute = self.handler.open_dispute(CHALLENGER, good.digest, evidence, 200)
        with self.assertRaises(DisputeError):
            self.handler.submit_evidence(dispute.dispute_id)

    def test_challenge_window_closes(self):
        good = self.honest_batch()
        self.clock.now += WINDOW + 1
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, good.digest, self.evidence_for(good), 200)
        self.assertEqual(self.ledger.balance_of(CHALLENGER), 500)

    def test_one_active_dispute_per_batch(self):
        good = self.honest_batch()
        self.handler.open_dispute(CHALLENGER, good.digest, self.evidence_for(good), 200)
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, good.digest, self.evidence_for(good), 200)

    def test_only_finalized_batches(self):
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, b'\x07' * 32, b'', 200)

    def test_stake_requirements(self):
        good = self.honest_batch()
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, good.digest, self.evidence_for(good), 50)
        with self.assertRaises(DisputeError):
            self.handler.open_dispute(CHALLENGER, good.digest, self.evidence_for(good), 1000)
        self.assertEqual(self.handler.active_disputes(), [])

    def test_unknown_dispute(self):
        with self.assertRaises(DisputeError):
            self.handler.resolve(b'\x00' * 32)


class TestEvidence(unittest.TestCase):
    def test_parse_round_trip(self):
        blob = build_evidence(b'\x01' * 32, b'\x02' * 32, [b'\x03' * 32])
        parsed = parse_evidence(blob)
        self.assertEqual(parsed["transaction_ids"], [b'\x03' * 32])

    def test_parse_rejects_short_roots(self):
        blob = build_evidence(b'\x01' * 31, b'\x02' * 32, [])
        with self.assertRaises(DisputeError):
            parse_evidence(blob)


class TestStakeLedger(unittest.TestCase):
    def test_lock_release_forfeit(self):
        ledger = StakeLedger()
        ledger.deposit("a", 100)
        ledger.lock("a", 60)
        self.assertEqual(ledger.balance_of("a"), 40)
        ledger.release("a", 20)
        ledger.forfeit("a", 40)
        self.assertEqual(ledger.balance_of("a"), 60)
        self.assertEqual(ledger.forfeited, 40)

    def test_slash_plain_balance(self):
        ledger = StakeLedger()
        ledger.deposit("a", 100)
        self.assertEqual(ledger.slash("a", 25), 25)
        self.assertEqual(ledger.balance_of("a"), 75)


if __name__ == '__main__':
    unittest.main()
