"""
Batch compiler: applies an ordered transaction list to a scratch view of the
state tree and emits the candidate root plus the witness for proving.
"""
import logging
import msgpack
from dataclasses import dataclass, field
from typing import Optional
from gridsettle.core import Batch, StateLeaf, Transaction, compute_batch_digest
from gridsettle.collector import order_key
from gridsettle.crypto import generate_hash
from gridsettle.errors import CompileError, ValidationError, StateCorruptionError
from gridsettle.markets import MarketRegistry
from gridsettle.state_tree import StateTreeManager, InclusionProof
from gridsettle.transition import apply_transaction, touched_keys

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class SkippedEntry:
    tx_id: bytes
    reason: str


@dataclass
class WitnessStep:
    """One leaf write: the pre-state, the post-state and the path they share."""
    tx_index: int
    key: bytes
    pre_leaf: Optional[StateLeaf]
    post_leaf: StateLeaf
    proof: InclusionProof

    def to_list(self) -> list:
        return [
            self.tx_index,
            self.key,
            self.pre_leaf.encode() if self.pre_leaf is not None else None,
            self.post_leaf.encode(),
            self.proof.to_bytes(),
        ]

    @classmethod
    def from_list(cls, data: list) -> 'WitnessStep':
        tx_index, key, pre, post, proof = data
        return cls(
            tx_index=tx_index,
            key=key,
            pre_leaf=StateLeaf.decode(pre) if pre is not None else None,
            post_leaf=StateLeaf.decode(post),
            proof=InclusionProof.from_bytes(proof),
        )


@dataclass
class Witness:
    """
    Everything needed to prove a transition.
    Public: previous_root, new_root, batch_digest. Private: transactions and steps.
    """
    epoch: int
    previous_root: bytes
    new_root: bytes
    batch_digest: bytes
    transactions: list[Transaction]
    steps: list[WitnessStep] = field(default_factory=list)

    @property
    def public_inputs(self) -> tuple[bytes, bytes, bytes]:
        return (self.previous_root, self.new_root, self.batch_digest)

    def to_bytes(self) -> bytes:
        return msgpack.packb([
            self.epoch,
            self.previous_root,
            self.new_root,
            self.batch_digest,
            [tx.to_dict() for tx in self.transactions],
            [step.to_list() for step in self.steps],
        ], use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Witness':
        epoch, prev_root, new_root, digest, txs, steps = msgpack.unpackb(raw, raw=False)
        return cls(
            epoch=epoch,
            previous_root=prev_root,
            new_root=new_root,
            batch_digest=digest,
            transactions=[Transaction.from_dict(tx) for tx in txs],
            steps=[WitnessStep.from_list(s) for s in steps],
        )

    @property
    def ref(self) -> bytes:
        return generate_hash(self.to_bytes())


@dataclass
class CompiledBatch:
    batch: Batch
    witness: Witness
    skipped: list[SkippedEntry] = field(default_factory=list)

    @property
    def previous_root(self) -> bytes:
        return self.batch.previous_root

    @property
    def new_root(self) -> bytes:
        return self.batch.new_root

    @property
    def digest(self) -> bytes:
        return self.batch.digest

    @property
    def touched_keys(self) -> list[bytes]:
        seen = []
        for step in self.witness.steps:
            if step.key not in seen:
                seen.append(step.key)
        return seen


class BatchCompiler:
    def __init__(self, tree: StateTreeManager, markets: MarketRegistry):
        self.tree = tree
        self.markets = markets

    def compile(self, transactions: list[Transaction],
                previous_root: Optional[bytes] = None,
                epoch: Optional[int] = None,
                proposer: str = "") -> CompiledBatch:
        """
        Apply transactions in order from `previous_root` (default: committed root).
        Transactions that break a market rule are skipped, never fatal.
        Raises CompileError when the batch as a whole cannot be built.
        """
        if previous_root is None:
            previous_root = self.tree.committed_root
        if epoch is None:
            epoch = self.tree.last_epoch + 1

        keys = [order_key(tx) for tx in transactions]
        if keys != sorted(keys):
            raise CompileError("Transactions are not in canonical order")

        view = self.tree.snapshot(previous_root)
        applied: list[Transaction] = []
        steps: list[WitnessStep] = []
        skipped: list[SkippedEntry] = []
        seen_ids = set()

        try:
            for tx in transactions:
                tx_id = tx.id
                if tx_id in seen_ids:
                    skipped.append(SkippedEntry(tx_id, "Duplicate"))
                    continue
                seen_ids.add(tx_id)

                tx_keys = touched_keys(tx)
                pre = {key: view.get(key) for key in tx_keys}
                try:
                    post = apply_transaction(tx, self.markets.get(tx.market_id), pre)
                except ValidationError as e:
                    logger.warning(f"Skipping transaction {tx_id.hex()[:16]}: {e.reason}")
                    skipped.append(SkippedEntry(tx_id, e.reason))
                    continue

                index = len(applied)
                applied.append(tx)
                for key in tx_keys:
                    _, proof = view.set(key, post[key])
                    steps.append(WitnessStep(index, key, pre[key], post[key], proof))
        except StateCorruptionError as e:
            raise CompileError(f"Cannot read state at {previous_root.hex()[:16]}: {e}") from e

        digest = compute_batch_digest(epoch, previous_root, [tx.id for tx in applied])
        witness = Witness(
            epoch=epoch,
            previous_root=previous_root,
            new_root=view.root,
            batch_digest=digest,
            transactions=applied,
            steps=steps,
        )
        batch = Batch(
            epoch=epoch,
            transactions=applied,
            previous_root=previous_root,
            new_root=view.root,
            witness_ref=witness.ref,
            proposer=proposer,
        )

        logger.info(
            f"Compiled epoch {epoch}: {len(applied)} applied, {len(skipped)} skipped, "
            f"root {previous_root.hex()[:16]} -> {view.root.hex()[:16]}"
        )
        return CompiledBatch(batch=batch, witness=witness, skipped=skipped)

    def recompute_root(self, transactions: list[Transaction], previous_root: bytes) -> bytes:
        """Re-execute a transaction list from `previous_root` and return the resulting root."""
        return self.compile(transactions, previous_root=previous_root, epoch=0).new_root
