from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from scalp_engine.features.indicators import (
    bollinger_bands,
    classify_trend,
    rsi,
    volume_ratio,
)
from scalp_engine.signals import (
    BollingerTouchEvaluator,
    ConsecutiveCandleFilter,
    MomentumEvaluator,
    MultiTimeframeVoter,
    OrderBookWallFilter,
    apply_filters,
    build_evaluator,
)
from scalp_engine.types import OrderBookSnapshot, SignalCandidate


def _frame(closes: list[float], volumes: list[float] | None = None, opens: list[float] | None = None) -> pd.DataFrame:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    opens = opens if opens is not None else [closes[0], *closes[:-1]]
    return pd.DataFrame(
        {
            "open_time": [start + timedelta(minutes=i) for i in range(len(closes))],
            "open": opens,
            "high": [max(o, c) + 0.5 for o, c in zip(opens, closes)],
            "low": [min(o, c) - 0.5 for o, c in zip(opens, closes)],
            "close": closes,
            "volume": volumes if volumes is not None else [1.0] * len(closes),
        }
    )


def _oscillating(last: float, rows: int = 30) -> list[float]:
    return [100.0 + (1.0 if i % 2 else -1.0) for i in range(rows - 1)] + [last]


class _Fixed:
    def __init__(self, name: str, direction: str | None) -> None:
        self.name = name
        self.direction = direction

    def evaluate(self, symbol: str, candles: pd.DataFrame, book: OrderBookSnapshot | None = None) -> SignalCandidate | None:
        if self.direction is None:
            return None
        return SignalCandidate(symbol=symbol, direction=self.direction, strength="medium", price=1.0)  # type: ignore[arg-type]


def test_bollinger_bands_flat_series() -> None:
    bands = bollinger_bands(pd.Series([10.0] * 25)).iloc[-1]
    assert bands["upper"] == pytest.approx(10.0)
    assert bands["lower"] == pytest.approx(10.0)
    assert bollinger_bands(pd.Series([10.0] * 5))["mid"].isna().all()


def test_rsi_extremes() -> None:
    assert rsi(pd.Series([float(i) for i in range(30)])).iloc[-1] == pytest.approx(100.0)
    assert rsi(pd.Series([float(30 - i) for i in range(30)])).iloc[-1] == pytest.approx(0.0)


def test_volume_ratio() -> None:
    assert volume_ratio(pd.Series([1.0] * 20 + [3.0])) == pytest.approx(3.0)
    assert volume_ratio(pd.Series([5.0])) == 1.0


def test_classify_trend() -> None:
    up = _frame([100.0 + i for i in range(40)])
    down = _frame([200.0 - i for i in range(40)])
    assert classify_trend(up) == "UP"
    assert classify_trend(down) == "DOWN"
    assert classify_trend(up.head(10)) == "NEUTRAL"


def test_bollinger_touch_directions() -> None:
    evaluator = BollingerTouchEvaluator()
    long = evaluator.evaluate("BTCUSDT", _frame(_oscillating(95.0)))
    assert long is not None
    assert long.direction == "long"
    assert "bb_lower_touch" in long.reasons

    short = evaluator.evaluate("BTCUSDT", _frame(_oscillating(105.0)))
    assert short is not None
    assert short.direction == "short"

    assert evaluator.evaluate("BTCUSDT", _frame(_oscillating(100.0))) is None
    assert evaluator.evaluate("BTCUSDT", _frame([100.0] * 10)) is None


def test_bollinger_touch_prefers_book_mid() -> None:
    evaluator = BollingerTouchEvaluator()
    book = OrderBookSnapshot(symbol="BTCUSDT", best_bid=94.9, best_ask=95.1)
    candidate = evaluator.evaluate("BTCUSDT", _frame(_oscillating(100.0)), book)
    assert candidate is not None
    assert candidate.direction == "long"
    assert candidate.price == pytest.approx(95.0)


def test_momentum_grades_by_move_and_volume() -> None:
    evaluator = MomentumEvaluator(threshold_pct=2.0)
    closes = [100.0] * 25 + [103.0]
    opens = [100.0] * 26
    medium = evaluator.evaluate("BTCUSDT", _frame(closes, opens=opens))
    assert medium is not None
    assert medium.direction == "long"
    assert medium.strength == "medium"

    boosted = evaluator.evaluate("BTCUSDT", _frame(closes, volumes=[1.0] * 25 + [2.0], opens=opens))
    assert boosted is not None
    assert boosted.strength == "strong"

    falling = evaluator.evaluate("BTCUSDT", _frame([100.0] * 25 + [97.5], opens=opens))
    assert falling is not None
    assert falling.direction == "short"
    assert falling.strength == "weak"

    assert evaluator.evaluate("BTCUSDT", _frame([100.0] * 25 + [101.0], opens=opens)) is None


def test_momentum_against_trend_is_downgraded() -> None:
    evaluator = MomentumEvaluator(threshold_pct=1.5)
    # 2.6% bounce after a steady decline: medium on size, one grade lower against the trend
    falling = [200.0 - i for i in range(30)]
    bounce = evaluator.evaluate("BTCUSDT", _frame([*falling, 175.5]))
    assert bounce is not None
    assert bounce.direction == "long"
    assert bounce.strength == "weak"
    assert "trend=DOWN" in bounce.reasons

    rising = [100.0 + i for i in range(30)]
    breakout = evaluator.evaluate("BTCUSDT", _frame([*rising, 132.4]))
    assert breakout is not None
    assert breakout.strength == "medium"
    assert "trend=UP" in breakout.reasons


def test_multi_timeframe_vote() -> None:
    frame = _frame([100.0 + i for i in range(30)])
    voter = MultiTimeframeVoter(
        [_Fixed("a", "long"), _Fixed("b", "long"), _Fixed("c", "short")],
        timeframes=(None,),
    )
    candidate = voter.evaluate("BTCUSDT", frame)
    assert candidate is not None
    assert candidate.direction == "long"
    assert candidate.strength == "medium"

    tie = MultiTimeframeVoter([_Fixed("a", "long"), _Fixed("b", "short")], timeframes=(None,), min_votes=1)
    assert tie.evaluate("BTCUSDT", frame) is None

    unanimous = MultiTimeframeVoter([_Fixed("a", "short")], timeframes=(None, "5min"))
    result = unanimous.evaluate("BTCUSDT", frame)
    assert result is not None
    assert result.strength == "strong"
    assert result.reasons == ["a@base:short", "a@5min:short"]

    with pytest.raises(ValueError):
        MultiTimeframeVoter([])


def test_build_evaluator() -> None:
    assert build_evaluator("bollinger").name == "bollinger"
    assert build_evaluator("momentum").name == "momentum"
    assert build_evaluator("confluence").name == "confluence"
    with pytest.raises(ValueError):
        build_evaluator("martingale")


def test_consecutive_candle_filter() -> None:
    frame = _frame([100.0, 101.0, 102.0, 103.0], opens=[100.5, 100.0, 101.0, 102.0])
    candle_filter = ConsecutiveCandleFilter(max_run=3)
    long = SignalCandidate(symbol="BTCUSDT", direction="long", strength="strong", price=103.0)
    short = SignalCandidate(symbol="BTCUSDT", direction="short", strength="strong", price=103.0)
    assert candle_filter.check(long, frame) == "3 candles in a row"
    assert candle_filter.check(short, frame) is None
    assert apply_filters([candle_filter], long, frame) == "consecutive_candles: 3 candles in a row"
    assert apply_filters([candle_filter], short, frame) is None


def test_order_book_wall_filter() -> None:
    book = OrderBookSnapshot(
        symbol="BTCUSDT",
        best_bid=99.9,
        best_ask=100.1,
        bids=[(99.9, 1.0), (99.8, 1.0), (99.7, 1.0)],
        asks=[(100.1, 1.0), (100.2, 1.0), (100.3, 1.0), (100.4, 20.0)],
    )
    wall_filter = OrderBookWallFilter()
    frame = _frame([100.0] * 3)
    long = SignalCandidate(symbol="BTCUSDT", direction="long", strength="strong", price=100.0)
    short = SignalCandidate(symbol="BTCUSDT", direction="short", strength="strong", price=100.0)
    assert wall_filter.check(long, frame, book) is not None
    assert wall_filter.check(short, frame, book) is None
    assert wall_filter.check(long, frame, None) is None
    assert book.imbalance() == pytest.approx((3.0 - 23.0) / 26.0)
