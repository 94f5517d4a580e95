"""
Dispute and fraud-proof handling.

A challenger bonds stake against a finalized batch inside its challenge
window. Resolution re-executes the logged transaction list from the batch's
previous root. A diverging root reverts the batch and everything finalized
after it, rolls the state tree back and slashes the proposer; a matching
root forfeits the challenger's bond.
"""
import time
import struct
import logging
import threading
import msgpack
from typing import Callable, Optional
from gridsettle.core import BatchStatus, Dispute, DisputeOutcome, DisputeStatus
from gridsettle.compiler import BatchCompiler
from gridsettle.crypto import generate_hash
from gridsettle.errors import DisputeError
from gridsettle.settlement import (
    ENTRY_FINALIZED,
    DataAvailabilityStore,
    FinalizedBatchLog,
    FinalizedEntry,
    decode_transaction_list,
)
from gridsettle.state_tree import StateTreeManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EVIDENCE_FIELDS = ("previous_root", "claimed_root", "transaction_ids")


class StakeLedger:
    """
    Bonded stake for challengers and validators.
    Validator slashes are mirrored into the ValidatorSet so quorum weights follow.
    """

    def __init__(self, validators=None):
        self.validators = validators
        self.balances: dict[str, int] = {}
        self.locked: dict[str, int] = {}
        self.slashed: dict[str, int] = {}
        self.forfeited = 0
        self._lock = threading.Lock()

    def deposit(self, address: str, amount: int):
        if amount <= 0:
            raise ValueError("Deposit must be positive")
        with self._lock:
            self.balances[address] = self.balances.get(address, 0) + amount

    def balance_of(self, address: str) -> int:
        if self.validators is not None and address in self.validators:
            return self.validators.stake_of(address)
        return self.balances.get(address, 0)

    def lock(self, address: str, amount: int):
        with self._lock:
            free = self.balances.get(address, 0)
            if free < amount:
                raise DisputeError(f"{address} has {free} free stake, needs {amount}")
            self.balances[address] = free - amount
            self.locked[address] = self.locked.get(address, 0) + amount

    def release(self, address: str, amount: int):
        with self._lock:
            self.locked[address] -= amount
            self.balances[address] = self.balances.get(address, 0) + amount

    def forfeit(self, address: str, amount: int):
        with self._lock:
            self.locked[address] -= amount
            self.forfeited += amount

    def slash(self, address: str, percentage: int) -> int:
        """Remove a percentage of an address's stake. Returns the amount slashed."""
        with self._lock:
            if self.validators is not None and address in self.validators:
                stake = self.validators.stake_of(address)
                amount = stake * percentage // 100
                self.validators.set_stake(address, stake - amount)
            else:
                stake = self.balances.get(address, 0)
                amount = stake * percentage // 100
                self.balances[address] = stake - amount
            self.slashed[address] = self.slashed.get(address, 0) + amount
        logger.warning(f"Slashed {amount} stake ({percentage}%) from {address[:16]}")
        return amount


def parse_evidence(blob: bytes) -> dict:
    """Decode an evidence blob. Raises DisputeError if it is malformed."""
    try:
        evidence = msgpack.unpackb(blob, raw=False)
    except (msgpack.ExtraData, ValueError, TypeError) as e:
        raise DisputeError(f"Evidence is not a msgpack blob: {e}") from e
    if not isinstance(evidence, dict) or any(f not in evidence for f in EVIDENCE_FIELDS):
        raise DisputeError(f"Evidence must be a map with {', '.join(EVIDENCE_FIELDS)}")
    for name in ("previous_root", "claimed_root"):
        if not isinstance(evidence[name], bytes) or len(evidence[name]) != 32:
            raise DisputeError(f"Evidence field {name} must be a 32-byte root")
    ids = evidence["transaction_ids"]
    if not isinstance(ids, list) or not all(isinstance(i, bytes) and len(i) == 32 for i in ids):
        raise DisputeError("Evidence transaction_ids must be a list of 32-byte ids")
    return evidence


def build_evidence(previous_root: bytes, claimed_root: bytes, transaction_ids: list[bytes]) -> bytes:
    return msgpack.packb({
        "previous_root": previous_root,
        "claimed_root": claimed_root,
        "transaction_ids": list(transaction_ids),
    }, use_bin_type=True)


class DisputeHandler:
    def __init__(self,
                 tree: StateTreeManager,
                 compiler: BatchCompiler,
                 log: FinalizedBatchLog,
                 da_store: DataAvailabilityStore,
                 ledger: StakeLedger,
                 collector=None,
                 acceptor=None,
                 batch_lookup: Optional[Callable] = None,
                 challenge_window: float = 7 * 86400.0,
                 min_challenger_stake: int = 100,
                 slash_percentage: int = 50,
                 clock: Callable[[], float] = time.time,
                 monitor=None):
        self.tree = tree
        self.compiler = compiler
        self.log = log
        self.da_store = da_store
        self.ledger = ledger
        self.collector = collector
        self.acceptor = acceptor
        self.batch_lookup = batch_lookup
        self.challenge_window = challenge_window
        self.min_challenger_stake = min_challenger_stake
        self.slash_percentage = slash_percentage
        self.clock = clock
        self.monitor = monitor
        self.disputes: dict[bytes, Dispute] = {}
        # {batch_digest: dispute_id} for disputes not yet resolved
        self.active: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, tree, compiler, log, da_store, ledger, config, **kwargs) -> 'DisputeHandler':
        return cls(
            tree, compiler, log, da_store, ledger,
            challenge_window=config.challenge_window,
            min_challenger_stake=config.min_challenger_stake,
            slash_percentage=config.slash_percentage,
            **kwargs,
        )

    def _entry(self, batch_digest: bytes) -> FinalizedEntry:
        entry = self.log.by_digest(batch_digest)
        if entry is None or entry.status != ENTRY_FINALIZED:
            raise DisputeError(f"Batch {batch_digest.hex()[:16]} is not finalized")
        return entry

    def open_dispute(self, challenger: str, batch_digest: bytes, evidence: bytes, stake: int) -> Dispute:
        """Bond stake against a finalized batch still inside its challenge window."""
        with self._lock:
            entry = self._entry(batch_digest)
            now = self.clock()
            if now - entry.finalized_at > self.challenge_window:
                raise DisputeError(f"Challenge window for epoch {entry.epoch} has closed")
            if batch_digest in self.active:
                raise DisputeError(f"Batch {batch_digest.hex()[:16]} already has an active dispute")
            if stake < self.min_challenger_stake:
                raise DisputeError(f"Stake {stake} below minimum {self.min_challenger_stake}")
            self.ledger.lock(challenger, stake)

            dispute_id = generate_hash(
                challenger.encode() + batch_digest + struct.pack('>d', now)
            )
            dispute = Dispute(dispute_id, challenger, batch_digest, evidence, stake, opened_at=now)
            self.disputes[dispute_id] = dispute
            self.active[batch_digest] = dispute_id

        logger.info(f"Dispute {dispute_id.hex()[:16]} opened by {challenger[:16]} "
                    f"against epoch {entry.epoch}")
        return dispute

    def get(self, dispute_id: bytes) -> Dispute:
        dispute = self.disputes.get(dispute_id)
        if dispute is None:
            raise DisputeError(f"Unknown dispute {dispute_id.hex()[:16]}")
        return dispute

    def submit_evidence(self, dispute_id: bytes, evidence: Optional[bytes] = None) -> Dispute:
        """
        Check the evidence against the logged batch. Malformed evidence
        dismisses the dispute and raises DisputeError.
        """
        dispute = self.get(dispute_id)
        if dispute.status != DisputeStatus.OPENED:
            raise DisputeError(f"Dispute is {dispute.status}, cannot take evidence")
        if evidence is not None:
            dispute.evidence = evidence

        try:
            parsed = parse_evidence(dispute.evidence)
            entry = self._entry(dispute.batch_digest)
            if parsed["previous_root"] != entry.previous_root:
                raise DisputeError("Evidence previous_root does not match the finalized batch")
            if parsed["claimed_root"] == entry.new_root:
                raise DisputeError("Evidence claims the finalized root itself")
            logged = self._transactions(entry)
            if parsed["transaction_ids"] != [tx.id for tx in logged]:
                raise DisputeError("Evidence transaction list does not match the published list")
        except DisputeError as e:
            self._finish(dispute, DisputeOutcome.DISMISSED)
            self.ledger.release(dispute.challenger, dispute.stake)
            logger.warning(f"Dispute {dispute_id.hex()[:16]} dismissed: {e}")
            raise

        dispute.status = DisputeStatus.EVIDENCE_SUBMISSION
        return dispute

    def start_voting(self, dispute_id: bytes) -> Dispute:
        dispute = self.get(dispute_id)
        if dispute.status != DisputeStatus.EVIDENCE_SUBMISSION:
            raise DisputeError(f"Dispute is {dispute.status}, cannot start voting")
        dispute.status = DisputeStatus.VOTING
        return dispute

    def resolve(self, dispute_id: bytes) -> Dispute:
        """
        Re-execute the disputed batch and settle the dispute.
        Earlier phases are run first if the caller skipped them.
        """
        dispute = self.get(dispute_id)
        if dispute.status == DisputeStatus.OPENED:
            self.submit_evidence(dispute_id)
        if dispute.status == DisputeStatus.EVIDENCE_SUBMISSION:
            self.start_voting(dispute_id)
        if dispute.status != DisputeStatus.VOTING:
            raise DisputeError(f"Dispute is {dispute.status}, cannot resolve")

        entry = self._entry(dispute.batch_digest)
        transactions = self._transactions(entry)
        recomputed = self.compiler.recompute_root(transactions, entry.previous_root)
        dispute.recomputed_root = recomputed

        if recomputed != entry.new_root:
            self._revert_from(entry)
            self.ledger.slash(entry.proposer, self.slash_percentage)
            self.ledger.release(dispute.challenger, dispute.stake)
            self._finish(dispute, DisputeOutcome.UPHELD)
            logger.warning(f"Dispute {dispute_id.hex()[:16]} upheld: epoch {entry.epoch} recomputes to "
                           f"{recomputed.hex()[:16]}, finalized {entry.new_root.hex()[:16]}")
        else:
            self.ledger.forfeit(dispute.challenger, dispute.stake)
            self._finish(dispute, DisputeOutcome.REJECTED)
            logger.info(f"Dispute {dispute_id.hex()[:16]} rejected: epoch {entry.epoch} root confirmed")
        return dispute

    def _transactions(self, entry: FinalizedEntry):
        blob = self.da_store.fetch(entry.tx_list_ref)
        if blob is None:
            raise DisputeError(f"Transaction list for epoch {entry.epoch} is not available")
        return decode_transaction_list(blob)

    def _revert_from(self, entry: FinalizedEntry):
        """Revert a batch and every batch finalized after it."""
        reverted = [e for e in self.log.entries_from(entry.epoch) if e.status == ENTRY_FINALIZED]
        self.tree.rollback(entry.previous_root, entry.epoch)

        requeue = []
        for later in reverted:
            self.log.mark_reverted(later.epoch)
            if self.acceptor is not None:
                self.acceptor.revoke(later.previous_root)
            batch = self.batch_lookup(later.batch_digest) if self.batch_lookup else None
            if batch is not None and batch.status == BatchStatus.FINALIZED:
                batch.transition(BatchStatus.REVERTED)
            requeue.extend(self._transactions(later))
            # Disputes against later batches lapse with them
            pending = self.active.get(later.batch_digest)
            if pending is not None and later.batch_digest != entry.batch_digest:
                stale = self.disputes[pending]
                self.ledger.release(stale.challenger, stale.stake)
                self._finish(stale, DisputeOutcome.DISMISSED)

        if self.collector is not None and requeue:
            self.collector.requeue(requeue)
        logger.warning(f"Reverted {len(reverted)} batches from epoch {entry.epoch}; "
                       f"root restored to {entry.previous_root.hex()[:16]}")

    def _finish(self, dispute: Dispute, outcome: str):
        dispute.status = DisputeStatus.RESOLVED
        dispute.outcome = outcome
        self.active.pop(dispute.batch_digest, None)
        if self.monitor is not None:
            self.monitor.record_dispute(outcome)

    def active_disputes(self) -> list[Dispute]:
        return [self.disputes[d] for d in self.active.values()]
