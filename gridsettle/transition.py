"""
State transition rules for a single transaction.

These are pure functions of (transaction, market, pre-state leaves). The
batch compiler uses them to build a batch and the proof verifier uses the
same functions to replay it, so both sides agree byte for byte.
"""
from typing import Optional
from gridsettle.core import (
    Transaction,
    Market,
    StateLeaf,
    PRICE_UPDATE,
    TRADE,
    ENERGY_DATUM,
    SIDE_BUY,
    market_key,
)
from gridsettle.errors import ValidationError

STALE_PRICE        = "StalePrice"
STALE_READING      = "StaleReading"
OUT_OF_BOUNDS      = "OutOfBounds"
MALFORMED_READING  = "MalformedReading"
INSUFFICIENT_POSITION = "InsufficientPosition"
UNKNOWN_MARKET     = "UnknownMarket"
MARKET_MISMATCH    = "MarketMismatch"


def touched_keys(tx: Transaction) -> list[bytes]:
    """Keys a transaction reads and writes, in write order."""
    if tx.tx_type == TRADE:
        return [tx.leaf_key, market_key(tx.market_id)]
    return [tx.leaf_key]


def apply_transaction(tx: Transaction, market: Optional[Market],
                      pre: dict[bytes, Optional[StateLeaf]]) -> dict[bytes, StateLeaf]:
    """
    Compute post-state leaves for every touched key.
    Raises ValidationError when the transaction breaks a market rule.
    """
    if market is None:
        raise ValidationError(UNKNOWN_MARKET, tx.id)
    if market.market_id != tx.market_id:
        raise ValidationError(MARKET_MISMATCH, tx.id)

    ok, error = tx.validate_basic()
    if not ok:
        raise ValidationError(error, tx.id)

    if tx.tx_type == PRICE_UPDATE:
        return _apply_price_update(tx, market, pre)
    if tx.tx_type == TRADE:
        return _apply_trade(tx, market, pre)
    if tx.tx_type == ENERGY_DATUM:
        return _apply_energy_datum(tx, pre)
    raise ValidationError(f"Unknown transaction type: {tx.tx_type}", tx.id)


def _apply_price_update(tx, market, pre):
    key = tx.leaf_key
    leaf = pre.get(key) or StateLeaf()
    price = tx.payload['price']
    if not market.in_bounds(price):
        raise ValidationError(OUT_OF_BOUNDS, tx.id)
    if tx.timestamp <= leaf.last_update:
        raise ValidationError(STALE_PRICE, tx.id)
    balances = dict(leaf.balances)
    balances['updates'] = balances.get('updates', 0) + 1
    return {key: StateLeaf(price, balances, tx.timestamp)}


def _apply_trade(tx, market, pre):
    acct_key, mkt_key = touched_keys(tx)
    account = pre.get(acct_key) or StateLeaf()
    market_leaf = pre.get(mkt_key) or StateLeaf()

    price = tx.payload['price']
    volume = tx.payload['volume']
    if not market.in_bounds(price):
        raise ValidationError(OUT_OF_BOUNDS, tx.id)
    if tx.timestamp < account.last_update:
        raise ValidationError(STALE_PRICE, tx.id)

    sign = 1 if tx.payload['side'] == SIDE_BUY else -1
    position = account.balances.get('position', 0)
    if sign < 0 and position < volume:
        raise ValidationError(INSUFFICIENT_POSITION, tx.id)

    balances = dict(account.balances)
    balances['position'] = position + sign * volume
    balances['notional'] = balances.get('notional', 0) + sign * volume * price
    new_account = StateLeaf(price, balances, tx.timestamp)

    market_balances = dict(market_leaf.balances)
    market_balances['traded_volume'] = market_balances.get('traded_volume', 0) + volume
    new_market = StateLeaf(market_leaf.latest_price, market_balances, market_leaf.last_update)

    return {acct_key: new_account, mkt_key: new_market}


def _apply_energy_datum(tx, pre):
    key = tx.leaf_key
    meter = pre.get(key) or StateLeaf()
    produced = tx.payload['produced']
    consumed = tx.payload['consumed']
    if produced < 0 or consumed < 0 or (produced == 0 and consumed == 0):
        raise ValidationError(MALFORMED_READING, tx.id)
    if tx.timestamp <= meter.last_update:
        raise ValidationError(STALE_READING, tx.id)

    balances = dict(meter.balances)
    balances['produced'] = balances.get('produced', 0) + produced
    balances['consumed'] = balances.get('consumed', 0) + consumed
    balances['readings'] = balances.get('readings', 0) + 1
    return {key: StateLeaf(meter.latest_price, balances, tx.timestamp)}
