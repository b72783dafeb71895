from __future__ import annotations

from datetime import timedelta, timezone
from pathlib import Path

import pytest

from scalp_engine.journal.store import JournalStore
from scalp_engine.types import TradeRecord


def _trade(pnl: float, closed_at: str) -> TradeRecord:
    return TradeRecord(
        symbol="BTCUSDT",
        side="long",
        entry_price=50_000.0,
        exit_price=50_010.0,
        quantity=0.1,
        leverage=10,
        realized_pnl=pnl,
        fees=0.5,
        reason="tp",
        opened_at=closed_at,
        closed_at=closed_at,
    )


def test_append_and_load_recent(tmp_path: Path) -> None:
    store = JournalStore(tmp_path / "journal")
    store.append("signal", {"symbol": "BTCUSDT", "direction": "long"})
    store.append("order", {"symbol": "BTCUSDT", "price": 50_000.0})
    store.append("fill", {"symbol": "BTCUSDT", "price": 50_000.0})

    rows = store.load_recent(2)
    assert [row["event_type"] for row in rows] == ["order", "fill"]
    assert store.load_recent(0) == []
    assert [row["event_type"] for row in store.load_recent(10, event_type="signal")] == ["signal"]


def test_rejects_unknown_event_type(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    with pytest.raises(ValueError):
        store.append("funding", {})


def test_trades_and_daily_stats(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    store.append_trade(_trade(5.0, "2026-03-01T10:00:00+00:00"))
    store.append_trade(_trade(-2.0, "2026-03-01T23:30:00+00:00"))
    store.append_trade(_trade(1.0, "2026-03-02T01:00:00+00:00"))

    trades = store.load_trades()
    assert [t.realized_pnl for t in trades] == [5.0, -2.0, 1.0]

    utc = store.daily_stats("2026-03-01")
    assert utc.trades == 2
    assert utc.wins == 1
    assert utc.total_pnl == pytest.approx(3.0)

    # in UTC+9 the late trade already belongs to the next day
    tokyo = store.daily_stats("2026-03-02", tz=timezone(timedelta(hours=9)))
    assert tokyo.trades == 2
    assert tokyo.total_pnl == pytest.approx(-1.0)
