"""
Transaction collector: validation, deduplication, deterministic ordering and
batch formation with backpressure.
"""
import time
import logging
import threading
from collections import OrderedDict
from typing import Optional, Callable
from gridsettle.core import Transaction, PRICE_UPDATE, TRADE, PRIORITY_HIGH
from gridsettle.markets import MarketRegistry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Rejection reasons
INVALID_SIGNATURE = "InvalidSignature"
UNKNOWN_MARKET    = "UnknownMarket"
OUT_OF_BOUNDS     = "OutOfBounds"
FUTURE_TIMESTAMP  = "FutureTimestamp"
DUPLICATE         = "Duplicate"
POOL_FULL         = "PoolFull"
MALFORMED         = "Malformed"

# Collector defaults
MAX_PENDING = 10000
CLOCK_SKEW_TOLERANCE = 5.0
DEDUP_WINDOW = 3600.0


def order_key(tx: Transaction) -> tuple:
    """
    Canonical batch order: priority tier, then timestamp, then content hash.
    Anyone re-executing a batch can re-derive it from the transactions alone.
    """
    return (tx.priority, tx.timestamp, tx.id)


class TransactionCollector:
    def __init__(self,
                 markets: MarketRegistry,
                 max_pending: int = MAX_PENDING,
                 clock_skew_tolerance: float = CLOCK_SKEW_TOLERANCE,
                 dedup_window: float = DEDUP_WINDOW,
                 clock: Callable[[], float] = time.time,
                 monitor=None):
        self.markets = markets
        self.max_pending = max_pending
        self.clock_skew_tolerance = clock_skew_tolerance
        self.dedup_window = dedup_window
        self.clock = clock
        self.monitor = monitor
        # {tx_id: Transaction}
        self.pending: dict[bytes, Transaction] = {}
        # {tx_id: drained_at}, oldest first
        self.seen: OrderedDict[bytes, float] = OrderedDict()
        self.lock = threading.Lock()
        self.stats = {
            'total_added': 0,
            'total_rejected': 0,
            'total_drained': 0,
            'total_evicted': 0,
            'total_requeued': 0,
        }

    @classmethod
    def from_config(cls, markets: MarketRegistry, config, **kwargs) -> 'TransactionCollector':
        return cls(
            markets,
            max_pending=config.max_pending,
            clock_skew_tolerance=config.clock_skew_tolerance,
            dedup_window=config.dedup_window,
            **kwargs,
        )

    def submit(self, tx: Transaction) -> tuple[bool, str]:
        """
        Validate and queue a transaction.
        Returns (accepted, reason); reason is empty when accepted.
        """
        accepted, reason = self._submit(tx)
        if self.monitor is not None:
            self.monitor.record_tx("accepted" if accepted else reason)
        return accepted, reason

    def _submit(self, tx: Transaction) -> tuple[bool, str]:
        ok, error = tx.validate_basic()
        if not ok:
            return self._reject(tx, INVALID_SIGNATURE if error == "Invalid signature" else MALFORMED, error)

        market = self.markets.get(tx.market_id)
        if market is None:
            return self._reject(tx, UNKNOWN_MARKET)

        if tx.tx_type in (PRICE_UPDATE, TRADE) and not market.in_bounds(tx.payload['price']):
            return self._reject(tx, OUT_OF_BOUNDS,
                                f"{market.from_units(tx.payload['price'])} outside "
                                f"[{market.min_price}, {market.max_price}]")

        now = self.clock()
        if tx.timestamp > now + self.clock_skew_tolerance:
            return self._reject(tx, FUTURE_TIMESTAMP, f"{tx.timestamp - now:.3f}s ahead")

        tx_id = tx.id
        with self.lock:
            self._expire_seen(now)
            if tx_id in self.pending or tx_id in self.seen:
                return self._reject(tx, DUPLICATE)

            if len(self.pending) >= self.max_pending:
                if tx.priority > PRIORITY_HIGH or not self._evict_low_priority():
                    return self._reject(tx, POOL_FULL)

            self.pending[tx_id] = tx
            self.stats['total_added'] += 1

        logger.debug(f"Accepted transaction {tx_id.hex()[:16]} ({tx.tx_type} {tx.market_id})")
        return True, ""

    def _reject(self, tx: Transaction, reason: str, detail: str = "") -> tuple[bool, str]:
        self.stats['total_rejected'] += 1
        logger.debug(f"Rejected transaction {tx.id.hex()[:16]}: {reason} {detail}".rstrip())
        return False, reason

    def _evict_low_priority(self) -> bool:
        """Drop the last-ordered non-top-tier transaction. Caller holds the lock."""
        candidates = [tx for tx in self.pending.values() if tx.priority > PRIORITY_HIGH]
        if not candidates:
            return False
        victim = max(candidates, key=order_key)
        del self.pending[victim.id]
        self.stats['total_evicted'] += 1
        logger.info(f"Evicted low-priority transaction {victim.id.hex()[:16]} to admit top-tier submission")
        return True

    def _expire_seen(self, now: float):
        while self.seen:
            tx_id, drained_at = next(iter(self.seen.items()))
            if now - drained_at < self.dedup_window:
                break
            self.seen.popitem(last=False)

    def drain_batch(self, max_size: int) -> list[Transaction]:
        """
        Remove and return up to max_size transactions in canonical order.
        Drained ids stay in the duplicate window.
        """
        with self.lock:
            ordered = sorted(self.pending.values(), key=order_key)[:max_size]
            now = self.clock()
            for tx in ordered:
                del self.pending[tx.id]
                self.seen[tx.id] = now
            self.stats['total_drained'] += len(ordered)
        if ordered:
            logger.debug(f"Drained {len(ordered)} transactions")
        return ordered

    def requeue(self, transactions: list[Transaction]) -> int:
        """Return transactions of a rejected or reverted batch to the pool."""
        count = 0
        with self.lock:
            for tx in transactions:
                if tx.id in self.pending:
                    continue
                self.seen.pop(tx.id, None)
                self.pending[tx.id] = tx
                count += 1
            self.stats['total_requeued'] += count
        if count:
            logger.info(f"Requeued {count} transactions for recompilation")
        return count

    def has_transaction(self, tx_id: bytes) -> bool:
        return tx_id in self.pending

    def get_transaction(self, tx_id: bytes) -> Optional[Transaction]:
        return self.pending.get(tx_id)

    def size(self) -> int:
        return len(self.pending)

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'current_size': self.size(),
            'dedup_window_size': len(self.seen),
        }

    def __len__(self):
        return self.size()
