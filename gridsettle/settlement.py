"""
Settlement submission: hands quorate batches to the external proof acceptor,
and on acceptance commits the state root, publishes the transaction list for
data availability and appends the finalized batch log.
"""
import time
import queue
import struct
import logging
import msgpack
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional
from gridsettle.core import Batch, BatchStatus, Proof, Transaction
from gridsettle.crypto import generate_hash
from gridsettle.errors import StaleRootError, SubmissionError
from gridsettle.prover import ProofVerifier
from gridsettle.state_tree import StateTreeManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EPOCH_PREFIX = b'epoch:'
DIGEST_PREFIX = b'digest:'
DA_PREFIX = b'da:'

ENTRY_FINALIZED = "Finalized"
ENTRY_REVERTED = "Reverted"

TRANSIENT_ERRORS = (ConnectionError, TimeoutError)


def encode_transaction_list(transactions) -> bytes:
    return msgpack.packb([tx.to_dict() for tx in transactions], use_bin_type=True)


def decode_transaction_list(blob: bytes) -> list[Transaction]:
    return [Transaction.from_dict(tx) for tx in msgpack.unpackb(blob, raw=False)]


# --- External collaborators ---

class ProofAcceptor(ABC):
    """The external verifier that grants finality."""

    @abstractmethod
    def accept(self, proof: Proof, public_inputs: tuple) -> bool:
        """Return True when the proof is accepted. May raise ConnectionError/TimeoutError."""


class LocalProofAcceptor(ProofAcceptor):
    """
    In-process acceptor. Verifies the proof and accepts at most one proof per
    previous root, so two different transitions can never both finalize.
    """

    def __init__(self, verifier: ProofVerifier):
        self.verifier = verifier
        # {previous_root: seal}
        self.accepted: dict[bytes, bytes] = {}

    def accept(self, proof: Proof, public_inputs: tuple) -> bool:
        if tuple(public_inputs) != proof.public_inputs:
            logger.warning("Acceptor: public inputs do not match the proof")
            return False
        previous_root = proof.previous_root
        existing = self.accepted.get(previous_root)
        if existing is not None:
            return existing == proof.seal
        if not self.verifier.verify(proof):
            return False
        self.accepted[previous_root] = proof.seal
        return True

    def revoke(self, previous_root: bytes):
        """Forget the acceptance from a root that was rolled back."""
        self.accepted.pop(previous_root, None)


class DataAvailabilityStore(ABC):
    @abstractmethod
    def publish(self, blob: bytes) -> bytes:
        """Store a blob and return its content hash."""

    @abstractmethod
    def fetch(self, content_hash: bytes) -> Optional[bytes]:
        """Return a published blob, or None."""


class LocalDataAvailabilityStore(DataAvailabilityStore):
    """Content-addressed blobs kept in the node database."""

    def __init__(self, db):
        self.db = db

    def publish(self, blob: bytes) -> bytes:
        content_hash = generate_hash(blob)
        self.db.put(DA_PREFIX + content_hash, blob)
        return content_hash

    def fetch(self, content_hash: bytes) -> Optional[bytes]:
        return self.db.get(DA_PREFIX + content_hash)


# --- Finalized batch log ---

@dataclass
class FinalizedEntry:
    epoch: int
    previous_root: bytes
    new_root: bytes
    batch_digest: bytes
    tx_list_ref: bytes
    quorum_signatures: list = field(default_factory=list)
    proposer: str = ""
    finalized_at: float = 0.0
    status: str = ENTRY_FINALIZED

    def to_bytes(self) -> bytes:
        return msgpack.packb([
            self.epoch, self.previous_root, self.new_root, self.batch_digest,
            self.tx_list_ref, self.quorum_signatures, self.proposer,
            self.finalized_at, self.status,
        ], use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'FinalizedEntry':
        return cls(*msgpack.unpackb(raw, raw=False))


class FinalizedBatchLog:
    """
    Append-only log of finalized batches keyed by epoch. Entries are never
    removed; a successful dispute only flips their status to Reverted.
    """

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _key(epoch: int) -> bytes:
        return EPOCH_PREFIX + struct.pack('>Q', epoch)

    def append(self, entry: FinalizedEntry):
        latest = self.latest()
        if latest is not None and entry.epoch <= latest.epoch:
            raise ValueError(f"Epoch {entry.epoch} does not follow logged epoch {latest.epoch}")
        with self.db.write_batch() as batch:
            batch.put(self._key(entry.epoch), entry.to_bytes())
            batch.put(DIGEST_PREFIX + entry.batch_digest, struct.pack('>Q', entry.epoch))

    def get(self, epoch: int) -> Optional[FinalizedEntry]:
        raw = self.db.get(self._key(epoch))
        return FinalizedEntry.from_bytes(raw) if raw is not None else None

    def by_digest(self, digest: bytes) -> Optional[FinalizedEntry]:
        raw = self.db.get(DIGEST_PREFIX + digest)
        if raw is None:
            return None
        return self.get(struct.unpack('>Q', raw)[0])

    def entries(self) -> list[FinalizedEntry]:
        return [FinalizedEntry.from_bytes(v) for _, v in self.db.get_prefix(EPOCH_PREFIX)]

    def entries_from(self, epoch: int) -> list[FinalizedEntry]:
        return [e for e in self.entries() if e.epoch >= epoch]

    def latest(self) -> Optional[FinalizedEntry]:
        for _, raw in self.db.iterator(prefix=EPOCH_PREFIX, reverse=True):
            return FinalizedEntry.from_bytes(raw)
        return None

    def mark_reverted(self, epoch: int):
        entry = self.get(epoch)
        if entry is None:
            raise KeyError(epoch)
        entry.status = ENTRY_REVERTED
        self.db.put(self._key(epoch), entry.to_bytes())


# --- Submitter ---

@dataclass
class SubmissionReceipt:
    batch_digest: bytes
    epoch: int
    previous_root: bytes
    new_root: bytes
    tx_list_ref: bytes
    accepted_at: float

    @classmethod
    def from_entry(cls, entry: FinalizedEntry) -> 'SubmissionReceipt':
        return cls(entry.batch_digest, entry.epoch, entry.previous_root,
                   entry.new_root, entry.tx_list_ref, entry.finalized_at)


@dataclass
class FinalizationNotice:
    new_root: bytes
    timestamp: float
    epoch: int


class SettlementSubmitter:
    def __init__(self,
                 tree: StateTreeManager,
                 acceptor: ProofAcceptor,
                 da_store: DataAvailabilityStore,
                 log: FinalizedBatchLog,
                 collector=None,
                 max_retries: int = 5,
                 backoff_base: float = 0.5,
                 backoff_max: float = 10.0,
                 notification_queue_size: int = 1000,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 monitor=None,
                 retention: Optional[float] = None):
        self.tree = tree
        self.acceptor = acceptor
        self.da_store = da_store
        self.log = log
        self.collector = collector
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self.clock = clock
        self.monitor = monitor
        self.notifications: queue.Queue = queue.Queue(maxsize=notification_queue_size)
        # Finalized batches still open to dispute, by digest
        self.finalized: dict[bytes, Batch] = {}
        self.retention = retention
        self._finalized_order: deque = deque()  # (finalized_at, digest), oldest first

    @classmethod
    def from_config(cls, tree, acceptor, da_store, log, config, **kwargs) -> 'SettlementSubmitter':
        return cls(
            tree, acceptor, da_store, log,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            notification_queue_size=config.notification_queue_size,
            **kwargs,
        )

    def receipt_for(self, digest: bytes) -> Optional[SubmissionReceipt]:
        entry = self.log.by_digest(digest)
        if entry is None or entry.status != ENTRY_FINALIZED:
            return None
        return SubmissionReceipt.from_entry(entry)

    def submit(self, batch: Batch, proof: Proof, quorum_signatures: list) -> SubmissionReceipt:
        """
        Post a quorate batch for finality. Re-submitting a finalized batch
        returns its original receipt.
        Raises StaleRootError if the tree moved past batch.previous_root and
        SubmissionError if the acceptor refuses the proof or the epoch was
        already used, reverted epochs included.
        """
        existing = self.receipt_for(batch.digest)
        if existing is not None:
            logger.info(f"Batch {batch.digest.hex()[:16]} already finalized at epoch {existing.epoch}")
            return existing

        if proof.public_inputs != (batch.previous_root, batch.new_root, batch.digest):
            raise SubmissionError(f"Proof does not bind batch {batch.digest.hex()[:16]}")
        if batch.previous_root != self.tree.committed_root:
            raise StaleRootError(batch.previous_root, self.tree.committed_root)
        # Epochs never repeat, even after a revert
        latest = self.log.latest()
        floor = max(self.tree.last_epoch, latest.epoch if latest else 0)
        if batch.epoch <= floor:
            self._reject(batch, f"epoch {batch.epoch} does not follow epoch {floor}")
            raise SubmissionError(f"Batch {batch.digest.hex()[:16]} reuses epoch {batch.epoch}")

        try:
            tx_list_ref = self._with_retry(
                self.da_store.publish, encode_transaction_list(batch.transactions)
            )
            accepted = self._with_retry(self.acceptor.accept, proof, proof.public_inputs)
        except TRANSIENT_ERRORS as e:
            self._reject(batch, f"transport failed after {self.max_retries} retries: {e}")
            raise SubmissionError(f"Submission of {batch.digest.hex()[:16]} failed: {e}") from e

        if not accepted:
            self._reject(batch, "proof acceptor refused the proof")
            raise SubmissionError(f"Batch {batch.digest.hex()[:16]} rejected by proof acceptor")

        return self._finalize(batch, tx_list_ref, quorum_signatures)

    def _with_retry(self, fn, *args):
        for attempt in range(self.max_retries + 1):
            try:
                return fn(*args)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise
                delay = min(self.backoff_max, self.backoff_base * (2 ** attempt))
                logger.warning(f"Transient submission error ({e}), retrying in {delay:.2f}s")
                self.sleep(delay)

    def _reject(self, batch: Batch, reason: str):
        logger.error(f"Batch {batch.digest.hex()[:16]} (epoch {batch.epoch}) rejected: {reason}")
        if batch.status not in (BatchStatus.REJECTED, BatchStatus.FINALIZED, BatchStatus.REVERTED):
            batch.transition(BatchStatus.REJECTED)
        if self.collector is not None:
            self.collector.requeue(list(batch.transactions))
        if self.monitor is not None:
            self.monitor.record_batch("rejected")

    def _finalize(self, batch: Batch, tx_list_ref: bytes, quorum_signatures: list) -> SubmissionReceipt:
        self.tree.commit(batch.new_root, batch.previous_root, batch.epoch)
        batch.transition(BatchStatus.FINALIZED)

        entry = FinalizedEntry(
            epoch=batch.epoch,
            previous_root=batch.previous_root,
            new_root=batch.new_root,
            batch_digest=batch.digest,
            tx_list_ref=tx_list_ref,
            quorum_signatures=list(quorum_signatures),
            proposer=batch.proposer,
            finalized_at=self.clock(),
        )
        self.log.append(entry)
        self.finalized[batch.digest] = batch
        self._finalized_order.append((entry.finalized_at, batch.digest))
        self.prune_finalized(entry.finalized_at)
        self._notify(FinalizationNotice(batch.new_root, entry.finalized_at, batch.epoch))

        if self.monitor is not None:
            self.monitor.record_finalized(batch.epoch)
        logger.info(f"Finalized epoch {batch.epoch}: root {batch.new_root.hex()[:16]}, "
                    f"{len(batch.transactions)} transactions")
        return SubmissionReceipt.from_entry(entry)

    def prune_finalized(self, now: Optional[float] = None) -> int:
        """Forget batches whose challenge window has closed. Their log entries stay."""
        if self.retention is None:
            return 0
        now = self.clock() if now is None else now
        pruned = 0
        while self._finalized_order and now - self._finalized_order[0][0] > self.retention:
            _, digest = self._finalized_order.popleft()
            if self.finalized.pop(digest, None) is not None:
                pruned += 1
        if pruned:
            logger.debug(f"Released {pruned} batches past their challenge window")
        return pruned

    def _notify(self, notice: FinalizationNotice):
        try:
            self.notifications.put_nowait(notice)
        except queue.Full:
            # Drop the oldest notice; consumers only need the latest root
            self.notifications.get_nowait()
            self.notifications.put_nowait(notice)
            logger.warning("Finalization notice queue full, dropped oldest notice")
