"""OHLCV aggregation of executed trades for price charts."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timezone
from decimal import Decimal

from src.db.store import TradeRecord


@dataclass
class Candle:
    time: int  # bucket start, unix seconds
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int  # lamports
    trades: int = 1


def bucket_start(ts: int, resolution_sec: int) -> int:
    return ts - ts % resolution_sec


def build_candles(trades: Iterable[TradeRecord], resolution_sec: int = 60) -> list[Candle]:
    """Group trades into fixed-width buckets, oldest first.

    Trades are taken in timestamp order; empty buckets are not emitted.
    """
    if resolution_sec <= 0:
        raise ValueError("resolution_sec must be positive")

    candles: dict[int, Candle] = {}
    for trade in sorted(trades, key=lambda t: t.timestamp):
        ts = int(trade.timestamp.replace(tzinfo=timezone.utc).timestamp())
        key = bucket_start(ts, resolution_sec)
        candle = candles.get(key)
        if candle is None:
            candles[key] = Candle(
                time=key,
                open=trade.price,
                high=trade.price,
                low=trade.price,
                close=trade.price,
                volume=trade.sol_amount,
            )
            continue
        candle.high = max(candle.high, trade.price)
        candle.low = min(candle.low, trade.price)
        candle.close = trade.price
        candle.volume += trade.sol_amount
        candle.trades += 1

    return [candles[k] for k in sorted(candles)]
