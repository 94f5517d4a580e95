"""
Registry of energy markets. Markets are registered by an admin and never
change afterwards.
"""
import logging
import threading
import msgpack
from typing import Optional
from gridsettle.core import Market

logger = logging.getLogger(__name__)

MARKET_PREFIX = b'registry:market:'


class MarketRegistry:
    def __init__(self, db=None):
        """
        Args:
            db: Optional DB/MemoryDB; registered markets are persisted there
                and reloaded on construction.
        """
        self.db = db
        self._markets: dict[str, Market] = {}
        self._lock = threading.Lock()
        if db is not None:
            for _, raw in db.get_prefix(MARKET_PREFIX):
                market = Market.from_dict(msgpack.unpackb(raw, raw=False))
                self._markets[market.market_id] = market

    def register(self, market: Market) -> Market:
        """
        Register a market. Re-registering identical parameters is a no-op;
        changing a registered market raises ValueError.
        """
        with self._lock:
            existing = self._markets.get(market.market_id)
            if existing is not None:
                if existing == market:
                    return existing
                raise ValueError(f"Market {market.market_id} is already registered and immutable")
            self._markets[market.market_id] = market
            if self.db is not None:
                self.db.put(MARKET_PREFIX + market.market_id.encode(),
                            msgpack.packb(market.to_dict(), use_bin_type=True))
        logger.info(f"Registered market {market.market_id} "
                    f"[{market.min_price}, {market.max_price}] precision={market.precision}")
        return market

    def get(self, market_id: str) -> Optional[Market]:
        return self._markets.get(market_id)

    def __contains__(self, market_id: str) -> bool:
        return market_id in self._markets

    def __len__(self):
        return len(self._markets)

    def all(self) -> list[Market]:
        return [self._markets[k] for k in sorted(self._markets)]
