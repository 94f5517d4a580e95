"""
Validator consensus over proven batches:
- Validator set with stake and Ed25519 vote keys
- Stake-weighted leader schedule seeded by (previous_root, epoch)
- Per-batch voting rounds with an exact-fraction stake quorum
"""
import time
import struct
import asyncio
import logging
import msgpack
from collections import deque
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Dict, Optional
from gridsettle.core import Batch, BatchStatus, Proof, Vote
from gridsettle.crypto import generate_hash
from gridsettle.errors import ConsensusTimeout
from gridsettle.prover import ProofVerifier
from gridsettle.state_tree import StateTreeManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VALIDATOR_PREFIX = b'registry:validator:'


@dataclass
class ValidatorInfo:
    address: str
    stake: int
    verify_key: str  # hex Ed25519 verify key

    def to_dict(self) -> dict:
        return {"address": self.address, "stake": self.stake, "verify_key": self.verify_key}

    @classmethod
    def from_dict(cls, data: dict) -> 'ValidatorInfo':
        return cls(data["address"], int(data["stake"]), data["verify_key"])


class ValidatorSet:
    """Registered validators. Optionally persisted so a node restarts with the same set."""

    def __init__(self, db=None):
        self.db = db
        self.validators: Dict[str, ValidatorInfo] = {}
        if db is not None:
            for _, raw in db.get_prefix(VALIDATOR_PREFIX):
                info = ValidatorInfo.from_dict(msgpack.unpackb(raw, raw=False))
                self.validators[info.address] = info

    def add(self, address: str, stake: int, verify_key: str) -> ValidatorInfo:
        if stake < 0:
            raise ValueError("Stake must be non-negative")
        info = ValidatorInfo(address, stake, verify_key)
        self.validators[address] = info
        self._persist(info)
        return info

    def set_stake(self, address: str, stake: int):
        info = self.validators[address]
        info.stake = max(0, stake)
        self._persist(info)

    def _persist(self, info: ValidatorInfo):
        if self.db is not None:
            self.db.put(VALIDATOR_PREFIX + info.address.encode(), msgpack.packb(info.to_dict(), use_bin_type=True))

    def get(self, address: str) -> Optional[ValidatorInfo]:
        return self.validators.get(address)

    def stake_of(self, address: str) -> int:
        info = self.validators.get(address)
        return info.stake if info else 0

    @property
    def stakes(self) -> Dict[str, int]:
        return {addr: info.stake for addr, info in self.validators.items()}

    @property
    def total_stake(self) -> int:
        return sum(info.stake for info in self.validators.values())

    def __contains__(self, address):
        return address in self.validators

    def __len__(self):
        return len(self.validators)


class LeaderScheduler:
    def __init__(self, validators: Dict[str, int]):
        """
        validators: {address_hex: stake_amount}
        """
        self.validators = validators
        self.total_stake = sum(validators.values())

    def get_leader(self, seed: bytes) -> Optional[str]:
        """
        Stake-weighted hash lottery.
        Lowest hash(address + seed) scaled by stake wins.
        """
        if not self.validators or self.total_stake == 0:
            return None

        best_score = None
        leader = None

        for addr_hex in sorted(self.validators):
            stake = self.validators[addr_hex]
            if stake <= 0:
                continue
            draw = int.from_bytes(generate_hash(bytes.fromhex(addr_hex) + seed), 'big')
            score = Fraction(draw, stake)
            if best_score is None or score < best_score:
                best_score = score
                leader = addr_hex

        return leader

    def leader_for(self, previous_root: bytes, epoch: int) -> Optional[str]:
        return self.get_leader(epoch_seed(previous_root, epoch))


def epoch_seed(previous_root: bytes, epoch: int) -> bytes:
    return previous_root + struct.pack('>Q', epoch)


def is_valid_leader(proposer: str, validators: Dict[str, int], previous_root: bytes, epoch: int) -> bool:
    """Check the proposer is staked and won the lottery for this slot."""
    if validators.get(proposer, 0) <= 0:
        return False
    return LeaderScheduler(validators).leader_for(previous_root, epoch) == proposer


class Proposal:
    """A proven batch offered to the validators by the epoch leader."""

    def __init__(self, batch: Batch, proof: Proof, proposer: str, proposed_at: Optional[float] = None):
        self.batch = batch
        self.proof = proof
        self.proposer = proposer
        self.proposed_at = proposed_at if proposed_at is not None else time.time()

    @property
    def digest(self) -> bytes:
        return self.batch.digest

    @property
    def epoch(self) -> int:
        return self.batch.epoch

    @property
    def previous_root(self) -> bytes:
        return self.batch.previous_root


class RoundStatus:
    PROPOSED  = "Proposed"
    VOTING    = "Voting"
    QUORATE   = "Quorate"
    REJECTED  = "Rejected"
    SUBMITTED = "Submitted"
    ABANDONED = "Abandoned"


_ROUND_TRANSITIONS = {
    RoundStatus.PROPOSED: {RoundStatus.VOTING, RoundStatus.ABANDONED},
    RoundStatus.VOTING: {RoundStatus.QUORATE, RoundStatus.REJECTED, RoundStatus.ABANDONED},
    RoundStatus.QUORATE: {RoundStatus.SUBMITTED, RoundStatus.REJECTED},
    RoundStatus.REJECTED: set(),
    RoundStatus.SUBMITTED: set(),
    RoundStatus.ABANDONED: set(),
}


class ConsensusRound:
    def __init__(self,
                 proposal: Proposal,
                 validators: ValidatorSet,
                 threshold: Fraction,
                 voting_window: float,
                 clock: Callable[[], float] = time.time):
        self.proposal = proposal
        self.validators = validators
        self.threshold = threshold
        self.voting_window = voting_window
        self.clock = clock
        self.status = RoundStatus.PROPOSED
        self.votes: Dict[str, Vote] = {}
        self.opened_at: Optional[float] = None
        self.closes_at: Optional[float] = None
        # Stake snapshot taken when voting opens
        self._stakes: Dict[str, int] = {}

    @property
    def digest(self) -> bytes:
        return self.proposal.digest

    @property
    def finished(self) -> bool:
        return self.status not in (RoundStatus.PROPOSED, RoundStatus.VOTING)

    def _move(self, status: str):
        if status not in _ROUND_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal round transition {self.status} -> {status}")
        logger.info(f"Round {self.digest.hex()[:16]} (epoch {self.proposal.epoch}): {self.status} -> {status}")
        self.status = status

    def open(self):
        self._move(RoundStatus.VOTING)
        self.opened_at = self.clock()
        self.closes_at = self.opened_at + self.voting_window
        self._stakes = self.validators.stakes

    @property
    def total_stake(self) -> int:
        return sum(self._stakes.values())

    def _stake_for(self, accept: bool) -> int:
        return sum(self._stakes.get(v.validator, 0) for v in self.votes.values() if v.accept == accept)

    @property
    def accept_stake(self) -> int:
        return self._stake_for(True)

    @property
    def reject_stake(self) -> int:
        return self._stake_for(False)

    def is_quorate(self) -> bool:
        total = self.total_stake
        if total == 0:
            return False
        return Fraction(self.accept_stake, total) >= self.threshold

    def _quorum_impossible(self) -> bool:
        total = self.total_stake
        if total == 0:
            return True
        return Fraction(total - self.reject_stake, total) < self.threshold

    def add_vote(self, vote: Vote) -> bool:
        """Count a vote. Returns False when the vote is ignored."""
        if self.status != RoundStatus.VOTING:
            return self._ignore(vote, f"round is {self.status}")
        if self.clock() > self.closes_at:
            return self._ignore(vote, "outside voting window")
        info = self.validators.get(vote.validator)
        if info is None or vote.validator not in self._stakes:
            return self._ignore(vote, "unregistered validator")
        if vote.batch_digest != self.digest or vote.epoch != self.proposal.epoch:
            return self._ignore(vote, "wrong batch")
        if vote.validator in self.votes:
            return self._ignore(vote, "duplicate")
        if not vote.verify_signature(info.verify_key):
            return self._ignore(vote, "bad signature")

        self.votes[vote.validator] = vote
        if self.is_quorate():
            self._move(RoundStatus.QUORATE)
        elif self._quorum_impossible():
            self._move(RoundStatus.REJECTED)
        return True

    def _ignore(self, vote: Vote, why: str) -> bool:
        logger.debug(f"Ignoring vote from {vote.validator[:16]} on {self.digest.hex()[:16]}: {why}")
        return False

    def close(self) -> str:
        """Close the voting window. A round still undecided becomes Rejected."""
        if self.status == RoundStatus.VOTING:
            self._move(RoundStatus.QUORATE if self.is_quorate() else RoundStatus.REJECTED)
        return self.status

    def mark_submitted(self):
        self._move(RoundStatus.SUBMITTED)

    def reject(self):
        self._move(RoundStatus.REJECTED)

    def abandon(self):
        self._move(RoundStatus.ABANDONED)

    def quorum_signatures(self) -> list[dict]:
        """Signed accept votes, the evidence of quorum handed to settlement."""
        return [self.votes[addr].to_dict() for addr in sorted(self.votes) if self.votes[addr].accept]

    def summary(self) -> dict:
        return {
            "digest": self.digest,
            "epoch": self.proposal.epoch,
            "status": self.status,
            "accept_stake": self.accept_stake,
            "total_stake": self.total_stake,
            "votes": [self.votes[addr].to_dict() for addr in sorted(self.votes)],
        }


class Validator:
    """A voting validator: re-verifies proofs against its own view of the tree."""

    def __init__(self, address: str, signing_key, tree: StateTreeManager, verifier: ProofVerifier,
                 clock: Callable[[], float] = time.time):
        self.address = address
        self.signing_key = signing_key
        self.tree = tree
        self.verifier = verifier
        self.clock = clock

    def review(self, proposal: Proposal) -> Vote:
        accept = self._check(proposal)
        vote = Vote(self.address, proposal.digest, proposal.epoch, accept, timestamp=self.clock())
        vote.sign(self.signing_key)
        return vote

    def _check(self, proposal: Proposal) -> bool:
        batch, proof = proposal.batch, proposal.proof
        if batch.previous_root != self.tree.committed_root:
            logger.info(f"Validator {self.address[:16]} rejects {proposal.digest.hex()[:16]}: stale previous root")
            return False
        if proof.public_inputs != (batch.previous_root, batch.new_root, batch.digest):
            logger.info(f"Validator {self.address[:16]} rejects {proposal.digest.hex()[:16]}: public input mismatch")
            return False
        return self.verifier.verify(proof)


class ConsensusModule:
    def __init__(self,
                 validators: ValidatorSet,
                 quorum_numerator: int = 2,
                 quorum_denominator: int = 3,
                 voting_window: float = 10.0,
                 clock: Callable[[], float] = time.time,
                 monitor=None,
                 archive_size: int = 256):
        if quorum_denominator <= 0 or not 0 < quorum_numerator <= quorum_denominator:
            raise ValueError("Quorum threshold must be a fraction in (0, 1]")
        self.validators = validators
        self.threshold = Fraction(quorum_numerator, quorum_denominator)
        self.voting_window = voting_window
        self.clock = clock
        self.monitor = monitor
        # Undecided and quorate rounds only; finished ones move to the archive
        self.rounds: Dict[bytes, ConsensusRound] = {}
        self.archive: deque = deque(maxlen=archive_size)

    @classmethod
    def from_config(cls, validators: ValidatorSet, config, **kwargs) -> 'ConsensusModule':
        return cls(
            validators,
            quorum_numerator=config.quorum_numerator,
            quorum_denominator=config.quorum_denominator,
            voting_window=config.voting_window,
            archive_size=config.archive_size,
            **kwargs,
        )

    def scheduler(self) -> LeaderScheduler:
        return LeaderScheduler(self.validators.stakes)

    def leader_for(self, previous_root: bytes, epoch: int) -> Optional[str]:
        return self.scheduler().leader_for(previous_root, epoch)

    def propose(self, batch: Batch, proof: Proof, proposer: str) -> ConsensusRound:
        """
        Open a voting round for a proven batch. An undecided round on the same
        previous root is superseded and abandoned.
        """
        for other in list(self.rounds.values()):
            if other.proposal.previous_root == batch.previous_root and not other.finished:
                self.abandon(other)

        batch.transition(BatchStatus.PROPOSED)
        round_ = ConsensusRound(Proposal(batch, proof, proposer, self.clock()),
                                self.validators, self.threshold, self.voting_window, self.clock)
        round_.open()
        self.rounds[batch.digest] = round_
        return round_

    def add_vote(self, vote: Vote) -> bool:
        round_ = self.rounds.get(vote.batch_digest)
        if round_ is None:
            return False
        counted = round_.add_vote(vote)
        if counted and round_.finished:
            self._settle_round(round_)
        return counted

    def decide(self, round_: ConsensusRound, votes: list[Vote]) -> ConsensusRound:
        """
        Synchronous tally: feed votes then close the window.
        Raises ConsensusTimeout when quorum was not reached.
        """
        for vote in votes:
            if round_.finished:
                break
            self.add_vote(vote)
        return self._close(round_)

    async def collect(self, round_: ConsensusRound, votes: asyncio.Queue) -> ConsensusRound:
        """
        Pull votes from a queue until the round is decided or the window closes.
        Raises ConsensusTimeout when quorum was not reached.
        """
        while not round_.finished:
            remaining = round_.closes_at - self.clock()
            if remaining <= 0:
                break
            try:
                vote = await asyncio.wait_for(votes.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            self.add_vote(vote)
        return self._close(round_)

    def _close(self, round_: ConsensusRound) -> ConsensusRound:
        if not round_.finished:
            round_.close()
            self._settle_round(round_)
        if round_.status != RoundStatus.QUORATE:
            raise ConsensusTimeout(
                f"Batch {round_.digest.hex()[:16]} {round_.status}: "
                f"{round_.accept_stake}/{round_.total_stake} stake accepted, needed {self.threshold}"
            )
        return round_

    def _settle_round(self, round_: ConsensusRound):
        if self.monitor is not None:
            self.monitor.record_round(round_.status)
        if round_.status in (RoundStatus.REJECTED, RoundStatus.ABANDONED):
            if round_.proposal.batch.status == BatchStatus.PROPOSED:
                round_.proposal.batch.transition(BatchStatus.REJECTED)
            self._archive(round_)

    def _archive(self, round_: ConsensusRound):
        if self.rounds.get(round_.digest) is round_:
            del self.rounds[round_.digest]
        self.archive.append(round_.summary())

    def abandon(self, round_: ConsensusRound):
        """Withdraw a proposal before quorum, releasing its epoch slot."""
        round_.abandon()
        self._settle_round(round_)

    def mark_submitted(self, round_: ConsensusRound):
        round_.mark_submitted()
        if self.monitor is not None:
            self.monitor.record_round(round_.status)
        self._archive(round_)

    def reject(self, round_: ConsensusRound):
        """Reject a quorate round whose batch settlement refused."""
        round_.reject()
        self._settle_round(round_)
