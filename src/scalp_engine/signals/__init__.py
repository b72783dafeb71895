"""Signal package exports."""

from scalp_engine.signals.base import EntryFilter, SignalEvaluator, apply_filters
from scalp_engine.signals.filters import ConsecutiveCandleFilter, OrderBookWallFilter
from scalp_engine.signals.strategies import (
    BollingerTouchEvaluator,
    MomentumEvaluator,
    MultiTimeframeVoter,
    build_evaluator,
)

__all__ = [
    "BollingerTouchEvaluator",
    "ConsecutiveCandleFilter",
    "EntryFilter",
    "MomentumEvaluator",
    "MultiTimeframeVoter",
    "OrderBookWallFilter",
    "SignalEvaluator",
    "apply_filters",
    "build_evaluator",
]
