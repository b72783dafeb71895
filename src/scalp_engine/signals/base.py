"""Signal evaluator and pre-entry filter interfaces."""

from __future__ import annotations

from typing import Protocol

import pandas as pd  # type: ignore[import-untyped]

from scalp_engine.types import OrderBookSnapshot, SignalCandidate


class SignalEvaluator(Protocol):
    """Pure function of its inputs: closed candles and the latest book."""

    name: str

    def evaluate(
        self,
        symbol: str,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> SignalCandidate | None: ...


class EntryFilter(Protocol):
    """Returns a block reason, or None to let the candidate through."""

    name: str

    def check(
        self,
        candidate: SignalCandidate,
        candles: pd.DataFrame,
        book: OrderBookSnapshot | None = None,
    ) -> str | None: ...


def apply_filters(
    filters: list[EntryFilter],
    candidate: SignalCandidate,
    candles: pd.DataFrame,
    book: OrderBookSnapshot | None = None,
) -> str | None:
    """First block reason among ``filters``, or None when all pass."""
    for entry_filter in filters:
        reason = entry_filter.check(candidate, candles, book)
        if reason is not None:
            return f"{entry_filter.name}: {reason}"
    return None
