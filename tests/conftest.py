from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from scalp_engine.engine.core import TradingEngine
from scalp_engine.exchange.paper import PaperExchange
from scalp_engine.journal.store import JournalStore
from scalp_engine.policy import get_policy
from scalp_engine.types import SignalCandidate, SymbolPrecision

SYMBOL = "BTCUSDT"
BTC = SymbolPrecision(symbol=SYMBOL, tick_size=0.01, step_size=0.001, min_notional=5.0)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_candidate(direction: str = "long", price: float = 50_000.0, strength: str = "strong") -> SignalCandidate:
    return SignalCandidate(
        symbol=SYMBOL,
        direction=direction,  # type: ignore[arg-type]
        strength=strength,  # type: ignore[arg-type]
        price=price,
        reasons=["test"],
    )


EngineFactory = Callable[..., tuple[TradingEngine, PaperExchange, FakeClock]]


@pytest.fixture
def make_engine() -> EngineFactory:
    """Enabled, connected engine on a paper venue with 1000 USDT and BTC marked at 50000.

    Must be called inside the running event loop of the test.
    """

    def _make(
        preset: str = "canonical",
        *,
        journal: JournalStore | None = None,
        **overrides: Any,
    ) -> tuple[TradingEngine, PaperExchange, FakeClock]:
        params: dict[str, Any] = {"confirm_candles": False, "entry_cooldown_sec": 0.0}
        params.update(overrides)
        exchange = PaperExchange(balance=1_000.0, precisions={SYMBOL: BTC})
        exchange.set_mark_price(SYMBOL, 50_000.0)
        clock = FakeClock()
        engine = TradingEngine(
            exchange,
            get_policy(preset, **params),
            journal=journal,
            clock=clock,
            settle_delay_sec=0,
        )
        engine.state.enabled = True
        engine.set_market_connected(True)
        engine.set_balance(1_000.0)
        return engine, exchange, clock

    return _make
