"""Signal evaluators: Bollinger band touch, candle momentum and multi-timeframe voting."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

import pandas as pd  # type: ignore[import-untyped]

from scalp_engine.features.indicators import bollinger_bands, classify_trend, rsi, volume_ratio
from scalp_engine.market.candles import resample_ohlcv
from scalp_engine.signals.base import SignalEvaluator
from scalp_engine.types import Direction, OrderBookSnapshot, SignalCandidate, Strength


class BollingerTouchEvaluator:
    """Mean reversion on a band touch: upper band -> short, lower band -> long.

    A price within ``tolerance`` (fraction) of a band counts as a touch.
    RSI grades the strength.
    """

    name = "bollinger"

    def __init__(self, period: int = 20, multiplier: float = 2.0, tolerance: float = 0.003) -> None:
        self.period = period
        self.multiplier = multiplier
        self.tolerance = tolerance

    def evaluate(
        self,
        symbol: str,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> SignalCandidate | None:
        if len(candles) < self.period:
            return None
        close = candles["close"].astype(float)
        bands = bollinger_bands(close, self.period, self.multiplier).iloc[-1]
        upper = float(bands["upper"])
        lower = float(bands["lower"])
        if not upper > lower:
            return None
        price = book.mid if book is not None and book.best_bid > 0 and book.best_ask > 0 else float(close.iloc[-1])
        rsi_last = float(rsi(close).iloc[-1]) if len(close) > 14 else 50.0

        if price >= upper or abs(price - upper) / upper <= self.tolerance:
            direction: Direction = "short"
            strength = _grade(rsi_last >= 70, rsi_last >= 60)
            reasons = ["bb_upper_touch", f"rsi={rsi_last:.1f}"]
            score = (price - upper) / upper
        elif price <= lower or abs(price - lower) / lower <= self.tolerance:
            direction = "long"
            strength = _grade(rsi_last <= 30, rsi_last <= 40)
            reasons = ["bb_lower_touch", f"rsi={rsi_last:.1f}"]
            score = (lower - price) / lower
        else:
            return None

        return SignalCandidate(
            symbol=symbol,
            direction=direction,
            strength=strength,
            price=price,
            score=float(score),
            reasons=reasons,
        )


class MomentumEvaluator:
    """Breakout in the direction of a large one-candle move.

    The move is the larger of close-vs-open and close-vs-previous-close, in
    percent. Volume expansion upgrades the strength by one grade; a move
    against the EMA trend of the preceding candles downgrades it by one.
    """

    name = "momentum"

    def __init__(self, threshold_pct: float = 2.0, volume_boost: float = 1.5) -> None:
        self.threshold_pct = threshold_pct
        self.volume_boost = volume_boost

    def evaluate(
        self,
        symbol: str,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> SignalCandidate | None:
        if len(candles) < 2:
            return None
        last = candles.iloc[-1]
        prev_close = float(candles["close"].iloc[-2])
        open_ = float(last["open"])
        close = float(last["close"])
        if open_ <= 0 or prev_close <= 0:
            return None
        from_open = (close - open_) / open_ * 100.0
        from_prev = (close - prev_close) / prev_close * 100.0
        move = max(abs(from_open), abs(from_prev))
        if move < self.threshold_pct:
            return None

        sign_source = from_open if from_open != 0 else from_prev
        direction: Direction = "long" if sign_source > 0 else "short"
        grades: list[Strength] = ["weak", "medium", "strong"]
        level = 2 if move >= 2 * self.threshold_pct else 1 if move >= 1.5 * self.threshold_pct else 0
        vol_ratio = volume_ratio(candles["volume"].astype(float))
        if vol_ratio >= self.volume_boost:
            level = min(level + 1, 2)
        # trend before the move candle
        trend = classify_trend(candles.iloc[:-1])
        if (direction == "long" and trend == "DOWN") or (direction == "short" and trend == "UP"):
            level = max(level - 1, 0)
        return SignalCandidate(
            symbol=symbol,
            direction=direction,
            strength=grades[level],
            price=close,
            score=float(move),
            reasons=[f"move={move:.2f}%", f"volume_ratio={vol_ratio:.2f}", f"trend={trend}"],
        )


class MultiTimeframeVoter:
    """Runs member evaluators on several resampled timeframes and takes a vote.

    The base frame must be the finest timeframe; ``timeframes`` are pandas
    offset aliases (``None`` keeps the base frame as is).
    """

    name = "confluence"

    def __init__(
        self,
        members: Sequence[SignalEvaluator],
        timeframes: Sequence[str | None] = (None, "5min", "15min"),
        min_votes: int = 2,
    ) -> None:
        if not members:
            raise ValueError("voter_needs_members")
        self.members = list(members)
        self.timeframes = list(timeframes)
        self.min_votes = min_votes

    def evaluate(
        self,
        symbol: str,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> SignalCandidate | None:
        if candles.empty:
            return None
        votes: Counter[Direction] = Counter()
        reasons: list[str] = []
        for timeframe in self.timeframes:
            frame = candles if timeframe is None else resample_ohlcv(candles, timeframe)
            for member in self.members:
                candidate = member.evaluate(symbol, frame, book)
                if candidate is None:
                    continue
                votes[candidate.direction] += 1
                reasons.append(f"{member.name}@{timeframe or 'base'}:{candidate.direction}")
        if not votes:
            return None
        (direction, count), *rest = votes.most_common()
        if count < self.min_votes or (rest and rest[0][1] == count):
            return None
        total = len(self.timeframes) * len(self.members)
        strength: Strength = "strong" if count == total else "medium"
        return SignalCandidate(
            symbol=symbol,
            direction=direction,
            strength=strength,
            price=float(candles["close"].iloc[-1]),
            score=count / total,
            reasons=reasons,
        )


def _grade(strong: bool, medium: bool) -> Strength:
    if strong:
        return "strong"
    if medium:
        return "medium"
    return "weak"


def build_evaluator(name: str) -> SignalEvaluator:
    """Evaluator by settings name."""
    if name == "bollinger":
        return BollingerTouchEvaluator()
    if name == "momentum":
        return MomentumEvaluator()
    if name == "confluence":
        return MultiTimeframeVoter([BollingerTouchEvaluator(), MomentumEvaluator()])
    raise ValueError(f"unknown_strategy: {name}")
