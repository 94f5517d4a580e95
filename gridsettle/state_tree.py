"""
A sparse Merkle tree over a fixed 256-bit key space.

Keys are hashed to a 256-bit path. Empty subtrees hash to precomputed
per-height defaults, so the tree stores only non-empty nodes. Nodes are
content-addressed and rlp-encoded, which lets any number of candidate roots
coexist in the same store; the committed root decides which one is live.
"""
import logging
import threading
import struct
import rlp
import msgpack
from typing import Optional
from gridsettle.crypto import generate_hash
from gridsettle.core import StateLeaf
from gridsettle.errors import StaleRootError, StateCorruptionError
from gridsettle.utils.encoding import bytes_to_bits, encode_bitmap, decode_bitmap

logger = logging.getLogger(__name__)

DEPTH = 256

NODE_PREFIX = b'node:'
LEAF_PREFIX = b'leaf:'
ROOT_KEY = b'meta:committed_root'
EPOCH_KEY = b'meta:committed_epoch'
HIGH_EPOCH_KEY = b'meta:high_epoch'
HISTORY_PREFIX = b'meta:history:'

EMPTY_LEAF = b'\x00' * 32


def hash_node(left: bytes, right: bytes) -> bytes:
    return generate_hash(b'\x01' + left + right)


def _build_defaults(depth: int) -> list[bytes]:
    # defaults[h] is the hash of an empty subtree of height h
    defaults = [EMPTY_LEAF]
    for _ in range(depth):
        defaults.append(hash_node(defaults[-1], defaults[-1]))
    return defaults


DEFAULTS = _build_defaults(DEPTH)
BLANK_ROOT = DEFAULTS[DEPTH]


def key_path(key: bytes) -> tuple[int, ...]:
    """Bit path of a key, root first."""
    return bytes_to_bits(generate_hash(key))


def leaf_hash(leaf: Optional[StateLeaf]) -> bytes:
    return leaf.hash() if leaf is not None else EMPTY_LEAF


class InclusionProof:
    """
    Sibling hashes from the root down to a key's leaf slot.

    Serialized as a bitmap of non-default siblings followed by those
    siblings only, which keeps proofs for sparse trees small.
    """

    def __init__(self, key: bytes, siblings: list[bytes]):
        if len(siblings) != DEPTH:
            raise ValueError(f"Proof needs {DEPTH} siblings, got {len(siblings)}")
        self.key = key
        self.siblings = list(siblings)

    def compute_root(self, leaf: Optional[StateLeaf]) -> bytes:
        """Fold a leaf (None for an empty slot) up the path to a root."""
        path = key_path(self.key)
        node = leaf_hash(leaf)
        for depth in range(DEPTH - 1, -1, -1):
            sibling = self.siblings[depth]
            if path[depth] == 0:
                node = hash_node(node, sibling)
            else:
                node = hash_node(sibling, node)
        return node

    def to_bytes(self) -> bytes:
        flags = []
        present = []
        for depth, sibling in enumerate(self.siblings):
            is_default = sibling == DEFAULTS[DEPTH - depth - 1]
            flags.append(not is_default)
            if not is_default:
                present.append(sibling)
        return msgpack.packb([self.key, encode_bitmap(flags), present], use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'InclusionProof':
        key, bitmap, present = msgpack.unpackb(raw, raw=False)
        flags = decode_bitmap(bitmap, DEPTH)
        if sum(flags) != len(present):
            raise ValueError("Proof bitmap does not match sibling count")
        siblings = []
        it = iter(present)
        for depth, flag in enumerate(flags):
            siblings.append(next(it) if flag else DEFAULTS[DEPTH - depth - 1])
        return cls(key, siblings)

    def __eq__(self, other):
        return isinstance(other, InclusionProof) and \
            self.key == other.key and self.siblings == other.siblings


def verify(root: bytes, key: bytes, leaf: Optional[StateLeaf], proof: InclusionProof) -> bool:
    """Check that `leaf` (or absence, when None) sits at `key` under `root`."""
    if proof.key != key:
        return False
    return proof.compute_root(leaf) == root


class StateTree:
    """A view of the tree at one root. Writes only ever add nodes."""

    def __init__(self, db, root: Optional[bytes] = None):
        self.db = db
        self.root = root or BLANK_ROOT

    def _children(self, node: bytes, height: int) -> tuple[bytes, bytes]:
        if node == DEFAULTS[height]:
            return DEFAULTS[height - 1], DEFAULTS[height - 1]
        raw = self.db.get(NODE_PREFIX + node)
        if raw is None:
            raise StateCorruptionError(f"Missing tree node {node.hex()[:16]} at height {height}")
        left, right = rlp.decode(raw)
        return left, right

    def _descend(self, key: bytes) -> tuple[bytes, list[bytes]]:
        """Return (leaf hash, siblings) for a key under the current root."""
        path = key_path(key)
        node = self.root
        siblings = []
        for depth in range(DEPTH):
            left, right = self._children(node, DEPTH - depth)
            if path[depth] == 0:
                siblings.append(right)
                node = left
            else:
                siblings.append(left)
                node = right
        return node, siblings

    def get(self, key: bytes) -> Optional[StateLeaf]:
        """Get the leaf stored at key, or None."""
        node = self.root
        path = key_path(key)
        for depth in range(DEPTH):
            height = DEPTH - depth
            if node == DEFAULTS[height]:
                return None
            left, right = self._children(node, height)
            node = left if path[depth] == 0 else right
        if node == EMPTY_LEAF:
            return None
        raw = self.db.get(LEAF_PREFIX + node)
        if raw is None:
            raise StateCorruptionError(f"Missing leaf {node.hex()[:16]}")
        return StateLeaf.decode(raw)

    def prove(self, key: bytes) -> InclusionProof:
        _, siblings = self._descend(key)
        return InclusionProof(key, siblings)

    def set(self, key: bytes, leaf: Optional[StateLeaf]) -> tuple[bytes, InclusionProof]:
        """
        Write a leaf (None clears the slot) and move this view to the new root.
        Returns (new_root, proof of the written leaf under new_root).
        """
        _, siblings = self._descend(key)
        path = key_path(key)
        node = leaf_hash(leaf)

        with self.db.write_batch() as batch:
            if leaf is not None:
                batch.put(LEAF_PREFIX + node, leaf.encode())
            for depth in range(DEPTH - 1, -1, -1):
                sibling = siblings[depth]
                if path[depth] == 0:
                    left, right = node, sibling
                else:
                    left, right = sibling, node
                node = hash_node(left, right)
                if node != DEFAULTS[DEPTH - depth]:
                    batch.put(NODE_PREFIX + node, rlp.encode([left, right]))

        self.root = node
        return node, InclusionProof(key, siblings)


class StateTreeManager:
    """
    Owns the committed root. Staged updates compute candidate roots without
    touching it; `commit` advances it under optimistic concurrency.
    """

    def __init__(self, db):
        self.db = db
        self._lock = threading.Lock()
        root = db.get(ROOT_KEY)
        epoch = db.get(EPOCH_KEY)
        self._committed_root = root or BLANK_ROOT
        self._committed_epoch = struct.unpack('>Q', epoch)[0] if epoch else 0
        high = db.get(HIGH_EPOCH_KEY)
        self._high_epoch = max(self._committed_epoch, struct.unpack('>Q', high)[0] if high else 0)
        if root is None:
            self._record(self._committed_root, 0)

    @property
    def committed_root(self) -> bytes:
        return self._committed_root

    @property
    def committed_epoch(self) -> int:
        return self._committed_epoch

    @property
    def last_epoch(self) -> int:
        """Highest epoch ever committed. Rollback does not lower it."""
        return self._high_epoch

    def snapshot(self, root: Optional[bytes] = None) -> StateTree:
        """A scratch view at `root` (default: the committed root)."""
        return StateTree(self.db, root or self._committed_root)

    def get(self, key: bytes, root: Optional[bytes] = None) -> Optional[StateLeaf]:
        return self.snapshot(root).get(key)

    def prove(self, key: bytes, root: Optional[bytes] = None) -> InclusionProof:
        return self.snapshot(root).prove(key)

    def staged_update(self, key: bytes, new_leaf: StateLeaf,
                      base_root: Optional[bytes] = None) -> tuple[bytes, InclusionProof]:
        """Compute a candidate root for one write. The committed root is untouched."""
        return self.snapshot(base_root).set(key, new_leaf)

    @staticmethod
    def verify(root: bytes, key: bytes, leaf: Optional[StateLeaf], proof: InclusionProof) -> bool:
        return verify(root, key, leaf, proof)

    def genesis(self, leaves: dict[bytes, StateLeaf]) -> bytes:
        """Seed initial state. Only allowed before any batch has been committed."""
        with self._lock:
            if self._high_epoch != 0:
                raise ValueError("Genesis state can only be written at epoch 0")
            tree = self.snapshot()
            for key in sorted(leaves):
                tree.set(key, leaves[key])
            self._committed_root = tree.root
            self._record(tree.root, 0)
        logger.info(f"Genesis root {tree.root.hex()[:16]} with {len(leaves)} leaves")
        return tree.root

    def commit(self, candidate_root: bytes, previous_root: bytes, epoch: Optional[int] = None):
        """
        Make `candidate_root` the committed root.
        Raises StaleRootError if `previous_root` is no longer current or the
        epoch is not above every epoch committed so far, reverted ones included.
        """
        with self._lock:
            if previous_root != self._committed_root:
                raise StaleRootError(previous_root, self._committed_root)
            if epoch is None:
                epoch = self._high_epoch + 1
            if epoch <= self._high_epoch:
                raise StaleRootError(previous_root, self._committed_root)
            # Fail before committing a root whose nodes are not in the store
            self.snapshot(candidate_root)._children(candidate_root, DEPTH)
            self._committed_root = candidate_root
            self._committed_epoch = epoch
            self._high_epoch = epoch
            self._record(candidate_root, epoch)
        logger.info(f"Committed root {candidate_root.hex()[:16]} at epoch {epoch}")

    def rollback(self, previous_root: bytes, from_epoch: int):
        """
        Discard every commit at or after `from_epoch` and restore
        `previous_root`, which must be the root committed just before it.
        """
        with self._lock:
            history = self._history()
            kept = [(e, r) for e, r in history if e < from_epoch]
            if not kept or kept[-1][1] != previous_root:
                raise ValueError(
                    f"Root {previous_root.hex()[:16]} was not committed before epoch {from_epoch}"
                )
            with self.db.write_batch() as batch:
                for e, _ in history:
                    if e >= from_epoch:
                        batch.delete(HISTORY_PREFIX + struct.pack('>Q', e))
                batch.put(ROOT_KEY, previous_root)
                batch.put(EPOCH_KEY, struct.pack('>Q', kept[-1][0]))
            self._committed_root = previous_root
            self._committed_epoch = kept[-1][0]
        logger.warning(f"Rolled back to root {previous_root.hex()[:16]} (epoch {self._committed_epoch})")

    def root_at(self, epoch: int) -> Optional[bytes]:
        return self.db.get(HISTORY_PREFIX + struct.pack('>Q', epoch))

    def _history(self) -> list[tuple[int, bytes]]:
        return [
            (struct.unpack('>Q', k[len(HISTORY_PREFIX):])[0], v)
            for k, v in self.db.get_prefix(HISTORY_PREFIX)
        ]

    def _record(self, root: bytes, epoch: int):
        with self.db.write_batch() as batch:
            batch.put(ROOT_KEY, root)
            batch.put(EPOCH_KEY, struct.pack('>Q', epoch))
            batch.put(HISTORY_PREFIX + struct.pack('>Q', epoch), root)
            if epoch >= self._high_epoch:
                batch.put(HIGH_EPOCH_KEY, struct.pack('>Q', epoch))
