"""Optional pre-entry filters."""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]

from scalp_engine.types import OrderBookSnapshot, SignalCandidate


class ConsecutiveCandleFilter:
    """Blocks entries after ``max_run`` closed candles in the signal direction (chasing)."""

    name = "consecutive_candles"

    def __init__(self, max_run: int = 5) -> None:
        self.max_run = max_run

    def check(
        self,
        candidate: SignalCandidate,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> str | None:
        run = 0
        for open_, close in zip(reversed(candles["open"].tolist()), reversed(candles["close"].tolist())):
            same = close > open_ if candidate.direction == "long" else close < open_
            if not same:
                break
            run += 1
        if run >= self.max_run:
            return f"{run} candles in a row"
        return None


class OrderBookWallFilter:
    """Blocks entries into a large opposing resting wall near the price.

    A level is a wall when its size is at least ``multiplier`` times the
    average level size on its side, within ``range_pct`` percent of the mid.
    """

    name = "orderbook_wall"

    def __init__(self, multiplier: float = 3.0, range_pct: float = 2.0) -> None:
        self.multiplier = multiplier
        self.range_pct = range_pct

    def check(
        self,
        candidate: SignalCandidate,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> str | None:
        if book is None:
            return None
        levels = book.asks if candidate.direction == "long" else book.bids
        if not levels or book.mid <= 0:
            return None
        average = sum(qty for _, qty in levels) / len(levels)
        max_distance = book.mid * self.range_pct / 100.0
        for price, qty in levels:
            if abs(price - book.mid) <= max_distance and qty >= average * self.multiplier:
                return f"wall {qty:g} at {price:g}"
        return None
