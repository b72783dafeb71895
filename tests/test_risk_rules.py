from __future__ import annotations

import pytest

from scalp_engine.policy import get_policy
from scalp_engine.risk.rules import RiskEngine
from scalp_engine.types import DailyStats, ExitFill, Position, PositionPhase


def _position(side: str = "long", avg: float = 50_000.0, qty: float = 0.1) -> Position:
    position = Position(
        symbol="BTCUSDT",
        side=side,  # type: ignore[arg-type]
        generation=1,
        total_planned_quantity=qty,
        start_time=0.0,
        phase=PositionPhase.ACTIVE,
    )
    position.record_fill(qty, avg)
    position.activated_at = 100.0
    return position


def test_build_stop_loss() -> None:
    engine = RiskEngine(get_policy("canonical"))
    assert engine.build_stop_loss(50_000.0, "long") == pytest.approx(49_925.0)
    assert engine.build_stop_loss(50_000.0, "short") == pytest.approx(50_075.0)


def test_check_time_stop() -> None:
    engine = RiskEngine(get_policy("canonical", max_hold_sec=60))
    position = _position()
    assert not engine.check_time_stop(position, 159.0)
    assert engine.check_time_stop(position, 160.0)


def test_daily_guards_block_trades_and_loss() -> None:
    engine = RiskEngine(get_policy("canonical"))
    stats = DailyStats(day="2026-01-01", trades=50)
    result = engine.check_daily_guards(stats, 1_000.0, now=0.0)
    assert not result.allowed
    assert "daily_max_trades_reached" in result.reasons

    stats = DailyStats(day="2026-01-01", trades=3, total_pnl=-30.0)
    result = engine.check_daily_guards(stats, 1_000.0, now=0.0)
    assert result.reasons == ["daily_max_loss_reached"]


def test_consecutive_loss_cooldown_expires() -> None:
    engine = RiskEngine(get_policy("canonical"))
    for _ in range(5):
        engine.record_trade(-1.0, now=1_000.0)
    stats = DailyStats(day="2026-01-01")

    blocked = engine.check_daily_guards(stats, 10_000.0, now=1_060.0)
    assert blocked.reasons == ["consecutive_loss_cooldown"]
    assert blocked.cooldown_until == pytest.approx(1_900.0)

    allowed = engine.check_daily_guards(stats, 10_000.0, now=1_901.0)
    assert allowed.allowed
    assert engine.consecutive_losses == 0


def test_win_resets_streak_and_restore() -> None:
    engine = RiskEngine(get_policy("canonical"))
    engine.record_trade(-1.0, now=1.0)
    engine.record_trade(2.0, now=2.0)
    assert engine.consecutive_losses == 0

    engine.restore([-1.0, 2.0, -1.0, -1.0], last_loss_at=50.0)
    assert engine.consecutive_losses == 2
    assert engine.last_loss_at == 50.0


def test_dynamic_stop_uses_highest_step_reached() -> None:
    engine = RiskEngine(get_policy("pyramid"))
    position = _position()
    position.peak_pnl_pct = 0.1
    assert engine.dynamic_stop(position) is None
    position.peak_pnl_pct = 0.45
    assert engine.dynamic_stop(position) == pytest.approx(50_000.0)
    position.peak_pnl_pct = 0.7
    assert engine.dynamic_stop(position) == pytest.approx(50_075.0)


def test_breakeven_reached_within_fee_buffer() -> None:
    engine = RiskEngine(get_policy("canonical"))
    position = _position()
    assert engine.is_breakeven_reached(position, 49_960.0)
    assert not engine.is_breakeven_reached(position, 49_900.0)


def test_realized_pnl_charges_entry_and_exit_fees() -> None:
    engine = RiskEngine(get_policy("canonical"))
    position = _position()
    pnl, fees = engine.realized_pnl(position, [ExitFill(quantity=0.1, price=50_100.0, fee_rate=0.0005)])
    assert fees == pytest.approx(1.0 + 2.505)
    assert pnl == pytest.approx(10.0 - 3.505)


def test_realized_pnl_short_mixed_fills() -> None:
    engine = RiskEngine(get_policy("canonical", maker_fee_pct=0.0))
    position = _position(side="short")
    fills = [
        ExitFill(quantity=0.05, price=49_900.0, fee_rate=0.0),
        ExitFill(quantity=0.05, price=50_100.0, fee_rate=0.0, kind="limit"),
    ]
    pnl, fees = engine.realized_pnl(position, fills)
    assert fees == 0.0
    assert pnl == pytest.approx(0.0)
