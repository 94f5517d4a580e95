"""
Proof generation and verification.

The certificate is a stateless re-execution trace: every leaf write with its
pre-state, post-state and sibling path, sealed together with the public
inputs. Verifying it needs no access to the state store, only the market
registry, because each step is replayed through the same transition rules
the compiler used and every path is re-hashed from previous_root to new_root.

Aggregation folds chained proofs into one whose public inputs are the first
previous_root and the last new_root.
"""
import time
import logging
import threading
import msgpack
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional
from gridsettle.core import Proof, Transaction, compute_batch_digest
from gridsettle.compiler import Witness, WitnessStep
from gridsettle.crypto import generate_hash
from gridsettle.errors import (
    CompileError,
    ProvingError,
    ProvingTimeout,
    ResourceExhausted,
    ValidationError,
    WitnessError,
)
from gridsettle.markets import MarketRegistry
from gridsettle.transition import apply_transaction, touched_keys

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

KIND_BATCH = "batch"
KIND_AGGREGATE = "aggregate"

# How a malformed proof body fails to decode
BODY_DECODE_ERRORS = (msgpack.UnpackException, ValueError, TypeError, KeyError, IndexError, AttributeError)


def _batch_seal(previous_root: bytes, new_root: bytes, digest: bytes, body: bytes) -> bytes:
    return generate_hash(b'seal:batch' + previous_root + new_root + digest + generate_hash(body))


def _aggregate_seal(previous_root: bytes, new_root: bytes, digest: bytes, seals: list[bytes]) -> bytes:
    level = list(seals)
    while len(level) > 1:
        next_level = [generate_hash(level[i] + level[i + 1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2 == 1:
            next_level.append(level[-1])
        level = next_level
    return generate_hash(b'seal:aggregate' + previous_root + new_root + digest + level[0])


def aggregate_digest(digests: list[bytes]) -> bytes:
    return generate_hash(msgpack.packb(["aggregate", list(digests)], use_bin_type=True))


def decode_batch_body(body: bytes) -> tuple[int, list[Transaction], list[WitnessStep]]:
    """Raises WitnessError if the body is not an (epoch, transactions, steps) trace."""
    try:
        epoch, txs, steps = msgpack.unpackb(body, raw=False)
        transactions = [Transaction.from_dict(tx) for tx in txs]
        steps = [WitnessStep.from_list(s) for s in steps]
    except BODY_DECODE_ERRORS as e:
        raise WitnessError(f"Malformed batch proof body: {e!r}") from e
    if not isinstance(epoch, int) or isinstance(epoch, bool):
        raise WitnessError(f"Malformed batch proof body: epoch {epoch!r}")
    return epoch, transactions, steps


def decode_sub_proofs(body: bytes) -> list[Proof]:
    try:
        return [Proof.from_bytes(raw) for raw in msgpack.unpackb(body, raw=False)]
    except BODY_DECODE_ERRORS as e:
        raise WitnessError(f"Malformed aggregate proof body: {e!r}") from e


def replay_steps(transactions: list[Transaction], steps: list[WitnessStep],
                 previous_root: bytes, markets: MarketRegistry) -> bytes:
    """
    Re-execute a trace from previous_root and return the root it ends at.
    Raises WitnessError on any inconsistency.
    """
    root = previous_root
    cursor = 0
    for index, tx in enumerate(transactions):
        keys = touched_keys(tx)
        tx_steps = steps[cursor:cursor + len(keys)]
        cursor += len(keys)
        if [s.key for s in tx_steps] != keys or any(s.tx_index != index for s in tx_steps):
            raise WitnessError(f"Trace does not match transaction {index}")

        pre = {s.key: s.pre_leaf for s in tx_steps}
        try:
            post = apply_transaction(tx, markets.get(tx.market_id), pre)
        except ValidationError as e:
            raise WitnessError(f"Transaction {index} is invalid: {e.reason}") from e

        for step in tx_steps:
            if step.proof.key != step.key:
                raise WitnessError(f"Path for step {step.key!r} proves another key")
            if step.proof.compute_root(step.pre_leaf) != root:
                raise WitnessError(f"Pre-state of {step.key!r} is not under root {root.hex()[:16]}")
            if post[step.key] != step.post_leaf:
                raise WitnessError(f"Post-state of {step.key!r} does not follow from transition")
            root = step.proof.compute_root(step.post_leaf)

    if cursor != len(steps):
        raise WitnessError("Trace has steps beyond the last transaction")
    return root


class ProofVerifier:
    """Checks proofs against their public inputs. Stateless apart from markets."""

    def __init__(self, markets: MarketRegistry):
        self.markets = markets

    def verify(self, proof: Proof) -> bool:
        try:
            self.check(proof)
            return True
        except (WitnessError,) + BODY_DECODE_ERRORS as e:
            logger.warning(f"Proof for {proof.batch_digest.hex()[:16]} rejected: {e}")
            return False

    def check(self, proof: Proof):
        """Raise WitnessError if the proof does not establish its public inputs."""
        if proof.kind == KIND_BATCH:
            self._check_batch(proof)
        elif proof.kind == KIND_AGGREGATE:
            self._check_aggregate(proof)
        else:
            raise WitnessError(f"Unknown proof kind {proof.kind!r}")

    def _check_batch(self, proof: Proof):
        if _batch_seal(proof.previous_root, proof.new_root, proof.batch_digest, proof.body) != proof.seal:
            raise WitnessError("Seal does not bind the public inputs")
        epoch, transactions, steps = decode_batch_body(proof.body)
        digest = compute_batch_digest(epoch, proof.previous_root, [tx.id for tx in transactions])
        if digest != proof.batch_digest:
            raise WitnessError("Batch digest does not match the proven transactions")
        end_root = replay_steps(transactions, steps, proof.previous_root, self.markets)
        if end_root != proof.new_root:
            raise WitnessError(f"Trace ends at {end_root.hex()[:16]}, not {proof.new_root.hex()[:16]}")

    def _check_aggregate(self, proof: Proof):
        subs = decode_sub_proofs(proof.body)
        if not subs:
            raise WitnessError("Aggregate has no sub-proofs")
        _check_chain(subs)
        for sub in subs:
            self.check(sub)
        if subs[0].previous_root != proof.previous_root or subs[-1].new_root != proof.new_root:
            raise WitnessError("Aggregate endpoints do not match sub-proofs")
        digest = aggregate_digest([s.batch_digest for s in subs])
        if digest != proof.batch_digest:
            raise WitnessError("Aggregate digest mismatch")
        if _aggregate_seal(proof.previous_root, proof.new_root, digest, [s.seal for s in subs]) != proof.seal:
            raise WitnessError("Aggregate seal mismatch")


def _check_chain(proofs: list[Proof]):
    for i in range(1, len(proofs)):
        if proofs[i].previous_root != proofs[i - 1].new_root:
            raise WitnessError(f"Root chain break at proof {i}")


class ProofGenerationService:
    """
    Proves witnesses on a thread pool.

    Proving runs as two stages (trace expansion, then sealing) so that
    `prove_many` can overlap the stages of different witnesses.
    """

    def __init__(self,
                 markets: MarketRegistry,
                 max_workers: int = 4,
                 timeout: float = 30.0,
                 max_retries: int = 3,
                 backoff_base: float = 0.5,
                 backoff_max: float = 8.0,
                 monitor=None):
        self.markets = markets
        self.verifier = ProofVerifier(markets)
        self.max_workers = max_workers
        self.concurrency = max_workers
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.monitor = monitor
        self.executor = ThreadPoolExecutor(max_workers=max_workers * 2, thread_name_prefix="prover")
        self._in_flight = 0
        self._slots = threading.Condition()

    @classmethod
    def from_config(cls, markets: MarketRegistry, config, **kwargs) -> 'ProofGenerationService':
        return cls(
            markets,
            max_workers=config.max_workers,
            timeout=config.timeout,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            **kwargs,
        )

    # --- stages ---

    def _expand(self, witness: Witness) -> bytes:
        """Stage 1: check the witness replays and encode it as a trace body."""
        end_root = replay_steps(witness.transactions, witness.steps, witness.previous_root, self.markets)
        if end_root != witness.new_root:
            raise WitnessError(f"Witness ends at {end_root.hex()[:16]}, not {witness.new_root.hex()[:16]}")
        digest = compute_batch_digest(
            witness.epoch, witness.previous_root, [tx.id for tx in witness.transactions]
        )
        if digest != witness.batch_digest:
            raise WitnessError("Witness digest does not match its transactions")
        return msgpack.packb([
            witness.epoch,
            [tx.to_dict() for tx in witness.transactions],
            [step.to_list() for step in witness.steps],
        ], use_bin_type=True)

    def _seal(self, witness: Witness, body: bytes) -> Proof:
        """Stage 2: bind the trace to the public inputs."""
        seal = _batch_seal(witness.previous_root, witness.new_root, witness.batch_digest, body)
        return Proof(witness.previous_root, witness.new_root, witness.batch_digest, seal, body)

    # --- slots ---

    def _acquire_slot(self):
        with self._slots:
            if not self._slots.wait_for(lambda: self._in_flight < self.concurrency, timeout=self.timeout):
                raise ResourceExhausted(f"All {self.concurrency} proving slots busy")
            self._in_flight += 1

    def _release_slot(self):
        with self._slots:
            self._in_flight -= 1
            self._slots.notify_all()

    def _attempt(self, witness: Witness) -> Proof:
        self._acquire_slot()
        try:
            deadline = time.monotonic() + self.timeout
            body = self._wait(self.executor.submit(self._expand, witness), deadline)
            return self._wait(self.executor.submit(self._seal, witness, body), deadline)
        finally:
            self._release_slot()

    @staticmethod
    def _wait(future, deadline: float):
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout:
            future.cancel()
            raise ProvingTimeout("Proof construction timed out")
        except MemoryError as e:
            raise ResourceExhausted(str(e)) from e

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    # --- public API ---

    def prove(self, witness: Witness) -> Proof:
        """
        Produce a proof for one witness.
        Timeouts and exhaustion are retried with backoff; exhausting the retry
        budget raises CompileError. WitnessError is never retried.
        """
        start = time.time()
        last_error: Optional[ProvingError] = None
        for attempt in range(self.max_retries + 1):
            try:
                proof = self._attempt(witness)
                if self.monitor is not None:
                    self.monitor.record_proof(time.time() - start)
                logger.info(f"Proved batch {witness.batch_digest.hex()[:16]} "
                            f"({len(witness.steps)} steps) in {time.time() - start:.3f}s")
                return proof
            except WitnessError:
                logger.error(f"Malformed witness for batch {witness.batch_digest.hex()[:16]}")
                raise
            except ResourceExhausted as e:
                last_error = e
                self.concurrency = max(1, self.concurrency // 2)
                logger.warning(f"Proving resources exhausted, concurrency now {self.concurrency}: {e}")
            except ProvingTimeout as e:
                last_error = e
                logger.warning(f"Proving attempt {attempt + 1}/{self.max_retries + 1} timed out")
            if attempt < self.max_retries:
                time.sleep(self._backoff(attempt))

        raise CompileError(
            f"Proving failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    def prove_many(self, witnesses: list[Witness]) -> list[Proof]:
        """Prove several witnesses in parallel, preserving order."""
        with ThreadPoolExecutor(max_workers=max(1, self.concurrency), thread_name_prefix="prove-many") as pool:
            return list(pool.map(self.prove, witnesses))

    def aggregate(self, proofs: list[Proof]) -> Proof:
        """
        Compose chained proofs into one. Public inputs become
        (first.previous_root, last.new_root, aggregate digest).
        """
        if not proofs:
            raise ValueError("No proofs to aggregate")
        _check_chain(proofs)
        for proof in proofs:
            self.verifier.check(proof)

        previous_root = proofs[0].previous_root
        new_root = proofs[-1].new_root
        digest = aggregate_digest([p.batch_digest for p in proofs])
        seal = _aggregate_seal(previous_root, new_root, digest, [p.seal for p in proofs])
        body = msgpack.packb([p.to_bytes() for p in proofs], use_bin_type=True)
        logger.info(f"Aggregated {len(proofs)} proofs: {previous_root.hex()[:16]} -> {new_root.hex()[:16]}")
        return Proof(previous_root, new_root, digest, seal, body,
                     kind=KIND_AGGREGATE, size=sum(p.size for p in proofs))

    def verify(self, proof: Proof) -> bool:
        return self.verifier.verify(proof)

    def shutdown(self):
        self.executor.shutdown(wait=False, cancel_futures=True)
