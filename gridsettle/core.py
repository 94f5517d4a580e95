"""
Core data structures for the settlement network.
"""
import math
import time
import msgpack
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional
from gridsettle.crypto import (
    generate_hash,
    sign,
    verify_signature,
    sign_vote,
    verify_vote_signature,
)

PRICE_UPDATE = "PRICE_UPDATE"
TRADE        = "TRADE"
ENERGY_DATUM = "ENERGY_DATUM"
TX_TYPES = (PRICE_UPDATE, TRADE, ENERGY_DATUM)

SIDE_BUY  = "BUY"
SIDE_SELL = "SELL"

# Lower tier is served first
PRIORITY_HIGH   = 0
PRIORITY_NORMAL = 1
PRIORITY_LOW    = 2

EMPTY_HASH = b'\x00' * 32


@dataclass(frozen=True)
class Market:
    """A registered energy market. Prices are integers scaled by 10**precision."""
    market_id: str
    min_price: Decimal
    max_price: Decimal
    precision: int = 2
    heartbeat: int = 60  # seconds between expected price updates

    def __post_init__(self):
        object.__setattr__(self, 'min_price', Decimal(str(self.min_price)))
        object.__setattr__(self, 'max_price', Decimal(str(self.max_price)))
        if not self.market_id:
            raise ValueError("market_id must be non-empty")
        if self.precision < 0:
            raise ValueError("precision must be non-negative")
        if self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")

    def to_units(self, price) -> int:
        """Convert a decimal price to integer units, rejecting excess precision."""
        try:
            value = Decimal(str(price))
        except InvalidOperation:
            raise ValueError(f"Not a price: {price!r}")
        scaled = value.scaleb(self.precision)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Price {price} exceeds {self.precision} decimal places")
        return int(scaled)

    def from_units(self, units: int) -> Decimal:
        return Decimal(units).scaleb(-self.precision)

    @property
    def min_units(self) -> int:
        return self.to_units(self.min_price)

    @property
    def max_units(self) -> int:
        return self.to_units(self.max_price)

    def in_bounds(self, units: int) -> bool:
        return self.min_units <= units <= self.max_units

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "min_price": str(self.min_price),
            "max_price": str(self.max_price),
            "precision": self.precision,
            "heartbeat": self.heartbeat,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Market':
        return cls(
            market_id=data["market_id"],
            min_price=Decimal(data["min_price"]),
            max_price=Decimal(data["max_price"]),
            precision=data.get("precision", 2),
            heartbeat=data.get("heartbeat", 60),
        )


class Transaction:
    def __init__(self,
                 sender_public_key: str,
                 tx_type: str,
                 market_id: str,
                 payload: dict,
                 account: str = "",
                 priority: int = PRIORITY_NORMAL,
                 timestamp: Optional[float] = None,
                 signature: Optional[bytes] = None):
        self.sender_public_key = sender_public_key
        self.tx_type = tx_type
        self.market_id = market_id
        self.payload = payload
        self.account = account
        self.priority = priority
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.signature = signature

    @classmethod
    def price_update(cls, sender_public_key: str, market: Market, price,
                     timestamp: Optional[float] = None, priority: int = PRIORITY_NORMAL):
        return cls(sender_public_key, PRICE_UPDATE, market.market_id,
                   {"price": market.to_units(price)},
                   priority=priority, timestamp=timestamp)

    @classmethod
    def trade(cls, sender_public_key: str, market: Market, account: str, side: str,
              volume: int, price, timestamp: Optional[float] = None,
              priority: int = PRIORITY_NORMAL):
        return cls(sender_public_key, TRADE, market.market_id,
                   {"side": side, "volume": volume, "price": market.to_units(price)},
                   account=account, priority=priority, timestamp=timestamp)

    @classmethod
    def energy_datum(cls, sender_public_key: str, market: Market, account: str,
                     produced: int, consumed: int, timestamp: Optional[float] = None,
                     priority: int = PRIORITY_NORMAL):
        return cls(sender_public_key, ENERGY_DATUM, market.market_id,
                   {"produced": produced, "consumed": consumed},
                   account=account, priority=priority, timestamp=timestamp)

    @classmethod
    def from_dict(cls, data: dict):
        """Creates a Transaction object from a dictionary."""
        signature = data.get("signature")
        if isinstance(signature, str):
            signature = bytes.fromhex(signature)
        return cls(
            sender_public_key=data["sender_public_key"],
            tx_type=data["tx_type"],
            market_id=data["market_id"],
            payload=dict(data["payload"]),
            account=data.get("account", ""),
            priority=data.get("priority", PRIORITY_NORMAL),
            timestamp=data.get("timestamp"),
            signature=signature,
        )

    def to_dict(self, include_signature=True):
        data = {
            "sender_public_key": self.sender_public_key,
            "tx_type": self.tx_type,
            "market_id": self.market_id,
            "account": self.account,
            "payload": dict(sorted(self.payload.items())),
            "priority": self.priority,
            "timestamp": self.timestamp,
        }
        if include_signature and self.signature:
            data["signature"] = self.signature
        return data

    def get_signing_data(self) -> bytes:
        """Returns the canonical byte representation for signing."""
        return msgpack.packb(self.to_dict(include_signature=False), use_bin_type=True)

    def sign(self, private_key):
        """Signs the transaction."""
        self.signature = sign(private_key, self.get_signing_data())

    def verify_signature(self) -> bool:
        if not self.signature:
            return False
        return verify_signature(
            self.sender_public_key,
            self.signature,
            self.get_signing_data()
        )

    @property
    def id(self) -> bytes:
        """Content hash. The signature is excluded, so a re-signed copy keeps its id."""
        return generate_hash(self.get_signing_data())

    @property
    def leaf_key(self) -> bytes:
        """State tree key this transaction primarily touches."""
        if self.tx_type == PRICE_UPDATE:
            return market_key(self.market_id)
        if self.tx_type == TRADE:
            return account_key(self.market_id, self.account)
        return meter_key(self.market_id, self.account)

    def validate_basic(self) -> tuple[bool, str]:
        """
        Structural checks that need no market or state lookup.
        Returns (is_valid, error_message)
        """
        if not self.verify_signature():
            return False, "Invalid signature"

        if self.tx_type not in TX_TYPES:
            return False, f"Unknown transaction type: {self.tx_type}"

        if not isinstance(self.priority, int) or self.priority < 0:
            return False, "Priority must be a non-negative integer"

        if not _is_finite_number(self.timestamp):
            return False, "Timestamp must be a finite number"

        if self.tx_type == PRICE_UPDATE:
            if not _is_int(self.payload.get('price')):
                return False, "PRICE_UPDATE requires integer 'price'"

        elif self.tx_type == TRADE:
            if not self.account:
                return False, "TRADE requires an account"
            if self.payload.get('side') not in (SIDE_BUY, SIDE_SELL):
                return False, "TRADE side must be BUY or SELL"
            if not _is_int(self.payload.get('volume')) or self.payload['volume'] <= 0:
                return False, "Trade volume must be a positive integer"
            if not _is_int(self.payload.get('price')):
                return False, "TRADE requires integer 'price'"

        elif self.tx_type == ENERGY_DATUM:
            if not self.account:
                return False, "ENERGY_DATUM requires a meter account"
            for name in ('produced', 'consumed'):
                if not _is_int(self.payload.get(name)):
                    return False, f"ENERGY_DATUM requires integer '{name}'"

        return True, ""

    def __repr__(self):
        return f"Transaction({self.tx_type}, {self.market_id}, {self.id.hex()[:16]})"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_finite_number(value) -> bool:
    return _is_int(value) or (isinstance(value, float) and math.isfinite(value))


def market_key(market_id: str) -> bytes:
    return f"market:{market_id}".encode()


def account_key(market_id: str, account: str) -> bytes:
    return f"account:{market_id}:{account}".encode()


def meter_key(market_id: str, account: str) -> bytes:
    return f"meter:{market_id}:{account}".encode()


@dataclass(frozen=True)
class StateLeaf:
    """Per-key state. Treated as immutable; transitions build new leaves."""
    latest_price: int = 0
    balances: dict = field(default_factory=dict)
    last_update: float = 0.0

    def encode(self) -> bytes:
        return msgpack.packb({
            "price": self.latest_price,
            "balances": dict(sorted(self.balances.items())),
            "updated": self.last_update,
        }, use_bin_type=True)

    @classmethod
    def decode(cls, raw: bytes) -> 'StateLeaf':
        data = msgpack.unpackb(raw, raw=False)
        return cls(
            latest_price=data["price"],
            balances=dict(data["balances"]),
            last_update=data["updated"],
        )

    def hash(self) -> bytes:
        return generate_hash(b'leaf:' + self.encode())

    def with_balance(self, name: str, delta: int, timestamp: float) -> 'StateLeaf':
        balances = dict(self.balances)
        balances[name] = balances.get(name, 0) + delta
        return StateLeaf(self.latest_price, balances, timestamp)


def compute_batch_digest(epoch: int, previous_root: bytes, tx_ids: list[bytes]) -> bytes:
    """Public digest binding a batch's epoch, starting root and applied transactions."""
    return generate_hash(msgpack.packb(
        ["batch", epoch, previous_root, list(tx_ids)], use_bin_type=True
    ))


class BatchStatus:
    COMPILED  = "Compiled"
    PROVING   = "Proving"
    PROVEN    = "Proven"
    PROPOSED  = "Proposed"
    FINALIZED = "Finalized"
    REJECTED  = "Rejected"
    REVERTED  = "Reverted"


_BATCH_TRANSITIONS = {
    BatchStatus.COMPILED: {BatchStatus.PROVING, BatchStatus.REJECTED},
    BatchStatus.PROVING: {BatchStatus.PROVEN, BatchStatus.REJECTED},
    BatchStatus.PROVEN: {BatchStatus.PROPOSED, BatchStatus.REJECTED},
    BatchStatus.PROPOSED: {BatchStatus.FINALIZED, BatchStatus.REJECTED},
    BatchStatus.FINALIZED: {BatchStatus.REVERTED},
    BatchStatus.REJECTED: set(),
    BatchStatus.REVERTED: set(),
}


class Batch:
    def __init__(self,
                 epoch: int,
                 transactions: list[Transaction],
                 previous_root: bytes,
                 new_root: bytes,
                 witness_ref: bytes = EMPTY_HASH,
                 status: str = BatchStatus.COMPILED,
                 proposer: str = ""):
        self.epoch = epoch
        self.transactions = tuple(transactions)
        self.previous_root = previous_root
        self.new_root = new_root
        self.witness_ref = witness_ref
        self.status = status
        self.proposer = proposer
        self.finalized_at: Optional[float] = None
        self._digest = None

    @property
    def digest(self) -> bytes:
        if self._digest is None:
            self._digest = compute_batch_digest(
                self.epoch, self.previous_root, [tx.id for tx in self.transactions]
            )
        return self._digest

    def transition(self, status: str):
        """Move to a new status, enforcing the batch lifecycle."""
        if status not in _BATCH_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal batch transition {self.status} -> {status}")
        self.status = status
        if status == BatchStatus.FINALIZED:
            self.finalized_at = time.time()

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "transactions": [tx.to_dict() for tx in self.transactions],
            "previous_root": self.previous_root.hex(),
            "new_root": self.new_root.hex(),
            "witness_ref": self.witness_ref.hex(),
            "status": self.status,
            "proposer": self.proposer,
        }

    def __repr__(self):
        return f"Batch(epoch={self.epoch}, txs={len(self.transactions)}, status={self.status})"


class Proof:
    """
    Opaque certificate plus the public inputs it binds.

    `kind` is "batch" for a single transition and "aggregate" for a
    composition of sub-proofs; `body` is interpreted by the prover only.
    """

    def __init__(self,
                 previous_root: bytes,
                 new_root: bytes,
                 batch_digest: bytes,
                 seal: bytes,
                 body: bytes,
                 kind: str = "batch",
                 size: int = 1):
        self.previous_root = previous_root
        self.new_root = new_root
        self.batch_digest = batch_digest
        self.seal = seal
        self.body = body
        self.kind = kind
        self.size = size

    @property
    def public_inputs(self) -> tuple[bytes, bytes, bytes]:
        return (self.previous_root, self.new_root, self.batch_digest)

    def to_bytes(self) -> bytes:
        return msgpack.packb([
            self.kind, self.previous_root, self.new_root, self.batch_digest,
            self.seal, self.body, self.size,
        ], use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Proof':
        kind, prev_root, new_root, digest, seal, body, size = msgpack.unpackb(raw, raw=False)
        return cls(prev_root, new_root, digest, seal, body, kind=kind, size=size)

    def __eq__(self, other):
        return isinstance(other, Proof) and self.to_bytes() == other.to_bytes()

    def __hash__(self):
        return hash(self.seal)


class Vote:
    """A validator's signed verdict on a proposed batch."""

    def __init__(self, validator: str, batch_digest: bytes, epoch: int, accept: bool,
                 timestamp: Optional[float] = None, signature: Optional[bytes] = None):
        self.validator = validator
        self.batch_digest = batch_digest
        self.epoch = epoch
        self.accept = accept
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.signature = signature

    def to_dict(self, include_signature=True):
        data = {
            "validator": self.validator,
            "batch_digest": self.batch_digest.hex(),
            "epoch": self.epoch,
            "accept": self.accept,
            "timestamp": self.timestamp,
        }
        if include_signature and self.signature:
            data["signature"] = self.signature.hex()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Vote':
        return cls(
            validator=data["validator"],
            batch_digest=bytes.fromhex(data["batch_digest"]),
            epoch=data["epoch"],
            accept=data["accept"],
            timestamp=data["timestamp"],
            signature=bytes.fromhex(data["signature"]) if data.get("signature") else None,
        )

    def get_signing_data(self) -> bytes:
        return msgpack.packb(self.to_dict(include_signature=False), use_bin_type=True)

    def sign(self, signing_key):
        self.signature = sign_vote(signing_key, self.get_signing_data())

    def verify_signature(self, verify_key_hex: str) -> bool:
        if not self.signature:
            return False
        return verify_vote_signature(verify_key_hex, self.signature, self.get_signing_data())


class DisputeStatus:
    OPENED              = "Opened"
    EVIDENCE_SUBMISSION = "EvidenceSubmission"
    VOTING              = "Voting"
    RESOLVED            = "Resolved"


class DisputeOutcome:
    PENDING   = "Pending"
    UPHELD    = "Upheld"      # batch reverted, proposer slashed
    REJECTED  = "Rejected"    # finalized root confirmed, challenger forfeits
    DISMISSED = "Dismissed"   # malformed evidence


class Dispute:
    def __init__(self, dispute_id: bytes, challenger: str, batch_digest: bytes,
                 evidence: bytes, stake: int, opened_at: Optional[float] = None):
        self.dispute_id = dispute_id
        self.challenger = challenger
        self.batch_digest = batch_digest
        self.evidence = evidence
        self.stake = stake
        self.opened_at = opened_at if opened_at is not None else time.time()
        self.status = DisputeStatus.OPENED
        self.outcome = DisputeOutcome.PENDING
        self.recomputed_root: Optional[bytes] = None

    @property
    def active(self) -> bool:
        return self.status != DisputeStatus.RESOLVED

    def to_dict(self) -> dict:
        return {
            "dispute_id": self.dispute_id.hex(),
            "challenger": self.challenger,
            "batch_digest": self.batch_digest.hex(),
            "stake": self.stake,
            "opened_at": self.opened_at,
            "status": self.status,
            "outcome": self.outcome,
            "recomputed_root": self.recomputed_root.hex() if self.recomputed_root else None,
        }
