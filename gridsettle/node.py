"""
Main node entry point for running a settlement node.
"""
import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import nacl.signing

from gridsettle.collector import TransactionCollector
from gridsettle.compiler import BatchCompiler, CompiledBatch
from gridsettle.config import Config
from gridsettle.consensus import ConsensusModule, ValidatorSet, Validator
from gridsettle.core import BatchStatus, Transaction
from gridsettle.crypto import validator_address
from gridsettle.db import DB
from gridsettle.disputes import DisputeHandler, StakeLedger
from gridsettle.errors import (
    CompileError,
    ConsensusTimeout,
    StaleRootError,
    StateCorruptionError,
    SubmissionError,
    WitnessError,
)
from gridsettle.markets import MarketRegistry
from gridsettle.monitoring import Monitor, OperatorAlerts
from gridsettle.prover import ProofGenerationService
from gridsettle.settlement import (
    FinalizedBatchLog,
    LocalDataAvailabilityStore,
    LocalProofAcceptor,
    SettlementSubmitter,
    SubmissionReceipt,
)
from gridsettle.state_tree import DEPTH, StateTreeManager

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SettlementNode:
    """Main settlement node orchestrator."""

    def __init__(self, config: Config, db=None, validator_keys: list = None,
                 acceptor=None, monitor: Monitor = None):
        self.config = config
        if config.tree.depth != DEPTH:
            raise ValueError(f"Tree depth is fixed at {DEPTH}, config asks for {config.tree.depth}")

        if db is None:
            logger.info(f"Opening node database at {config.database.path}")
            db = DB(
                config.database.path,
                write_buffer_size=config.database.write_buffer_size,
                max_open_files=config.database.max_open_files,
                compression=config.database.compression,
            )
        self.db = db

        self.monitor = monitor or Monitor.from_config(config.monitoring)
        self.alerts = OperatorAlerts(self.monitor)

        self.markets = MarketRegistry(self.db)
        self.validator_set = ValidatorSet(self.db)
        self.tree = StateTreeManager(self.db)
        self.collector = TransactionCollector.from_config(self.markets, config.collector, monitor=self.monitor)
        self.compiler = BatchCompiler(self.tree, self.markets)
        self.prover = ProofGenerationService.from_config(self.markets, config.prover, monitor=self.monitor)
        self.consensus = ConsensusModule.from_config(self.validator_set, config.consensus, monitor=self.monitor)

        # Validators whose signing keys this node holds
        self.validators = [
            Validator(validator_address(key.verify_key), key, self.tree, self.prover.verifier)
            for key in (validator_keys or [])
        ]

        self.acceptor = acceptor or LocalProofAcceptor(self.prover.verifier)
        self.da_store = LocalDataAvailabilityStore(self.db)
        self.log = FinalizedBatchLog(self.db)
        self.submitter = SettlementSubmitter.from_config(
            self.tree, self.acceptor, self.da_store, self.log, config.settlement,
            collector=self.collector, monitor=self.monitor,
            retention=config.dispute.challenge_window,
        )
        self.ledger = StakeLedger(self.validator_set)
        self.disputes = DisputeHandler.from_config(
            self.tree, self.compiler, self.log, self.da_store, self.ledger, config.dispute,
            collector=self.collector,
            acceptor=self.acceptor if isinstance(self.acceptor, LocalProofAcceptor) else None,
            batch_lookup=self.submitter.finalized.get,
            monitor=self.monitor,
        )

        self._last_epoch = self.tree.last_epoch
        self.running = False
        self._tasks: list[asyncio.Task] = []

    # --- epoch driver ---

    def submit(self, tx: Transaction) -> tuple[bool, str]:
        return self.collector.submit(tx)

    def _next_epoch(self) -> int:
        """Epochs only grow, including across abandoned proposals and reverts."""
        latest = self.log.latest()
        epoch = max(self._last_epoch, self.tree.last_epoch, latest.epoch if latest else 0) + 1
        self._last_epoch = epoch
        return epoch

    def compile_next(self, previous_root: Optional[bytes] = None) -> Optional[CompiledBatch]:
        """Drain the collector and compile one batch. Returns None when nothing applies."""
        self.alerts.check()
        transactions = self.collector.drain_batch(self.config.collector.max_batch_size)
        if not transactions:
            return None

        previous_root = previous_root or self.tree.committed_root
        epoch = self._next_epoch()
        proposer = self.consensus.leader_for(previous_root, epoch) or ""
        try:
            compiled = self.compiler.compile(transactions, previous_root, epoch, proposer)
        except CompileError as e:
            self.collector.requeue(transactions)
            if isinstance(e.__cause__, StateCorruptionError):
                self.alerts.raise_alert("state-corruption", str(e))
            raise

        if compiled.skipped:
            self.monitor.record_batch("skipped-transactions")
        if not compiled.batch.transactions:
            logger.info(f"Epoch {epoch}: every transaction was skipped, nothing to propose")
            return None
        return compiled

    def prove(self, compiled: CompiledBatch):
        batch = compiled.batch
        batch.transition(BatchStatus.PROVING)
        try:
            proof = self.prover.prove(compiled.witness)
        except (CompileError, WitnessError) as e:
            batch.transition(BatchStatus.REJECTED)
            self.collector.requeue(list(batch.transactions))
            self.alerts.raise_alert("proving", f"epoch {batch.epoch}: {e}")
            raise
        batch.transition(BatchStatus.PROVEN)
        return proof

    def _reject_and_requeue(self, batch, reason: str):
        logger.warning(f"Batch {batch.digest.hex()[:16]} (epoch {batch.epoch}) dropped: {reason}")
        if batch.status in (BatchStatus.PROVEN, BatchStatus.PROPOSED):
            batch.transition(BatchStatus.REJECTED)
        self.collector.requeue(list(batch.transactions))
        self.monitor.record_batch("rejected")

    def settle(self, batch, proof, round_) -> SubmissionReceipt:
        try:
            receipt = self.submitter.submit(batch, proof, round_.quorum_signatures())
        except StaleRootError as e:
            self.consensus.reject(round_)
            self._reject_and_requeue(batch, str(e))
            raise
        except SubmissionError:
            self.consensus.reject(round_)
            raise
        self.consensus.mark_submitted(round_)
        return receipt

    def run_epoch(self) -> Optional[SubmissionReceipt]:
        """
        Run one batch end to end: compile, prove, vote, submit.
        Returns the receipt, or None when there was nothing to propose.
        """
        compiled = self.compile_next()
        if compiled is None:
            return None
        batch = compiled.batch
        proof = self.prove(compiled)

        self.alerts.check()
        round_ = self.consensus.propose(batch, proof, batch.proposer)
        votes = [validator.review(round_.proposal) for validator in self.validators]
        try:
            self.consensus.decide(round_, votes)
        except ConsensusTimeout:
            self._reject_and_requeue(batch, "no quorum")
            raise

        receipt = self.settle(batch, proof, round_)
        self.monitor.update(self.collector, self.tree)
        return receipt

    # --- async pipeline ---

    async def start(self):
        """Start the pipeline workers."""
        self.running = True
        size = self.config.collector.max_batch_size
        self.ingress: asyncio.Queue = asyncio.Queue(maxsize=self.config.collector.max_pending)
        self.compiled_queue: asyncio.Queue = asyncio.Queue(maxsize=2)
        self.proven_queue: asyncio.Queue = asyncio.Queue(maxsize=2)
        self.vote_queue: asyncio.Queue = asyncio.Queue(maxsize=max(16, len(self.validator_set) * 4))
        self._tip: Optional[bytes] = None

        logger.info(f"Starting settlement node at epoch {self.tree.committed_epoch}, "
                    f"root {self.tree.committed_root.hex()[:16]}, batch size {size}")
        self._tasks = [
            asyncio.create_task(self._ingest_worker()),
            asyncio.create_task(self._compile_worker()),
            asyncio.create_task(self._prove_worker()),
            asyncio.create_task(self._consensus_worker()),
            asyncio.create_task(self._status_reporter()),
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Node shutdown initiated")

    async def stop(self):
        """Stop all node components."""
        logger.info("Stopping settlement node...")
        self.running = False
        for task in self._tasks:
            task.cancel()
        self.prover.shutdown()
        self.monitor.stop_server()
        self.db.close()
        logger.info("Node stopped successfully")

    async def submit_async(self, tx: Transaction):
        """Queue a transaction for ingestion; waits while the ingress queue is full."""
        await self.ingress.put(tx)

    async def receive_vote(self, vote):
        await self.vote_queue.put(vote)

    async def _ingest_worker(self):
        while self.running:
            tx = await self.ingress.get()
            self.collector.submit(tx)

    async def _compile_worker(self):
        loop = asyncio.get_running_loop()
        while self.running:
            if self.alerts.halted or self.collector.size() == 0:
                await asyncio.sleep(0.1)
                continue
            try:
                compiled = await loop.run_in_executor(None, self.compile_next, self._tip)
            except CompileError as e:
                logger.error(f"Compilation failed: {e}")
                self._tip = None
                continue
            if compiled is not None:
                # Next batch builds on this candidate root
                self._tip = compiled.new_root
                await self.compiled_queue.put(compiled)

    async def _prove_worker(self):
        loop = asyncio.get_running_loop()
        while self.running:
            compiled = await self.compiled_queue.get()
            try:
                proof = await loop.run_in_executor(None, self.prove, compiled)
            except (CompileError, WitnessError):
                self._tip = None
                continue
            await self.proven_queue.put((compiled.batch, proof))

    async def _consensus_worker(self):
        loop = asyncio.get_running_loop()
        while self.running:
            batch, proof = await self.proven_queue.get()
            if self.alerts.halted or batch.previous_root != self.tree.committed_root:
                self._reject_and_requeue(batch, "halted" if self.alerts.halted else "stale previous root")
                self._tip = None
                continue

            round_ = self.consensus.propose(batch, proof, batch.proposer)
            reviews = [asyncio.create_task(self._review(validator, round_.proposal))
                       for validator in self.validators]
            try:
                await self.consensus.collect(round_, self.vote_queue)
                await loop.run_in_executor(None, self.settle, batch, proof, round_)
            except ConsensusTimeout:
                self._reject_and_requeue(batch, "no quorum")
                self._tip = None
            except (StaleRootError, SubmissionError) as e:
                logger.error(f"Settlement of epoch {batch.epoch} failed: {e}")
                self._tip = None
            finally:
                for task in reviews:
                    task.cancel()

    async def _review(self, validator, proposal):
        """Replay the proof on a worker thread and cast the vote."""
        loop = asyncio.get_running_loop()
        vote = await loop.run_in_executor(None, validator.review, proposal)
        await self.vote_queue.put(vote)

    async def _status_reporter(self):
        """Periodically report node status."""
        while self.running:
            await asyncio.sleep(60)  # Report every minute
            self.submitter.prune_finalized()
            self.monitor.update(self.collector, self.tree)
            stats = self.collector.get_stats()
            logger.info("=== Node Status ===")
            logger.info(f"Epoch: {self.tree.committed_epoch} root {self.tree.committed_root.hex()[:16]}")
            logger.info(f"Pending: {stats['current_size']} transactions")
            logger.info(f"Active disputes: {len(self.disputes.active)}")
            if self.alerts.halted:
                logger.info(f"HALTED: {self.alerts.alerts[-1]['message']}")
            logger.info("==================")


def load_or_generate_key(keys_dir: Path) -> nacl.signing.SigningKey:
    """Load an existing validator signing key or generate a new one."""
    key_file = keys_dir / "validator.key"

    if key_file.exists():
        logger.info(f"Loading existing validator key from {key_file}")
        return nacl.signing.SigningKey(bytes.fromhex(key_file.read_text().strip()))

    logger.info("Generating new validator key...")
    signing_key = nacl.signing.SigningKey.generate()
    keys_dir.mkdir(parents=True, exist_ok=True)
    key_file.write_text(bytes(signing_key).hex())
    logger.info(f"Generated validator address: {validator_address(signing_key.verify_key)}")
    logger.info(f"Verify key: {bytes(signing_key.verify_key).hex()}")
    return signing_key


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Run a settlement node')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--data-dir', type=str, default='./data', help='Data directory')
    parser.add_argument('--validator', action='store_true', help='Vote with a local validator key')
    parser.add_argument('--metrics-port', type=int, help='Serve Prometheus metrics on this port')

    args = parser.parse_args()

    if args.config and Path(args.config).exists():
        config = Config.from_file(args.config)
    else:
        config = Config.default()

    data_dir = Path(args.data_dir)
    config.database.path = str(data_dir / 'settlement')
    if args.metrics_port:
        config.monitoring.port = args.metrics_port
        config.monitoring.enabled = True

    validator_keys = [load_or_generate_key(data_dir / 'keys')] if args.validator else []

    node = SettlementNode(config=config, validator_keys=validator_keys)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(node.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await node.start()
    finally:
        if node.running:
            await node.stop()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Exiting...")
        sys.exit(0)


if __name__ == '__main__':
    cli()
