"""Hard risk control rules and PnL math for the scalping engine."""

from __future__ import annotations

from collections.abc import Iterable

from scalp_engine.policy import TradingPolicy
from scalp_engine.types import (
    DailyStats,
    Direction,
    ExitFill,
    Position,
    RiskCheckResult,
    direction_sign,
)


class RiskEngine:
    """Rule-based risk controls.

    Holds the only cross-trade risk state: the consecutive-loss streak and
    the time of the last loss.
    """

    def __init__(self, policy: TradingPolicy) -> None:
        self._policy = policy
        self.consecutive_losses = 0
        self.last_loss_at: float | None = None

    @property
    def policy(self) -> TradingPolicy:
        return self._policy

    def record_trade(self, pnl: float, now: float) -> None:
        if pnl < 0:
            self.consecutive_losses += 1
            self.last_loss_at = now
        else:
            self.consecutive_losses = 0

    def restore(self, pnls: Iterable[float], last_loss_at: float | None = None) -> None:
        """Rebuild the loss streak from historical trade PnLs, oldest first."""
        self.consecutive_losses = 0
        for pnl in pnls:
            self.consecutive_losses = self.consecutive_losses + 1 if pnl < 0 else 0
        self.last_loss_at = last_loss_at if self.consecutive_losses else None

    def check_daily_guards(self, stats: DailyStats, balance: float, now: float) -> RiskCheckResult:
        """Validate daily guard rails before a new entry."""
        policy = self._policy
        reasons: list[str] = []
        cooldown_until: float | None = None

        if stats.trades >= policy.daily_max_trades:
            reasons.append("daily_max_trades_reached")
        if balance > 0 and stats.total_pnl < 0:
            loss_pct = -stats.total_pnl / balance * 100.0
            if loss_pct >= policy.daily_max_loss_pct:
                reasons.append("daily_max_loss_reached")
        if self.consecutive_losses >= policy.max_consecutive_losses and self.last_loss_at is not None:
            cooldown_until = self.last_loss_at + policy.loss_cooldown_min * 60.0
            if now < cooldown_until:
                reasons.append("consecutive_loss_cooldown")
            else:
                self.consecutive_losses = 0
                cooldown_until = None

        return RiskCheckResult(allowed=not reasons, reasons=reasons, cooldown_until=cooldown_until)

    def build_stop_loss(self, entry: float, side: Direction) -> float:
        """Initial stop ``stop_loss_pct`` percent against the side."""
        if entry <= 0:
            return 0.0
        return entry * (1 - direction_sign(side) * self._policy.stop_loss_pct / 100.0)

    def dynamic_stop(self, position: Position) -> float | None:
        """Stop price for the highest dynamic step reached by the peak PnL, if any."""
        if not position.avg_fill_price:
            return None
        reached = [
            offset for trigger, offset in self._policy.dynamic_stop_steps if position.peak_pnl_pct >= trigger
        ]
        if not reached:
            return None
        offset = reached[-1]
        return position.avg_fill_price * (1 + direction_sign(position.side) * offset / 100.0)

    def check_time_stop(self, position: Position, now: float) -> bool:
        """Check whether position exceeded max holding duration."""
        if position.activated_at is None:
            return False
        return now - position.activated_at >= self._policy.max_hold_sec

    def is_breakeven_reached(self, position: Position, price: float) -> bool:
        return position.pnl_pct(price) >= -self._policy.breakeven_fee_buffer_pct

    def realized_pnl(self, position: Position, exit_fills: Iterable[ExitFill]) -> tuple[float, float]:
        """Net realized PnL and total fees of a closed position.

        Entry fee is charged at maker rate on the filled quantity; each exit
        fill pays its own fee rate.
        """
        avg = position.avg_fill_price or 0.0
        sign = direction_sign(position.side)
        gross = 0.0
        fees = avg * position.filled_quantity * self._policy.maker_fee
        for fill in exit_fills:
            gross += (fill.price - avg) * sign * fill.quantity
            fees += fill.price * fill.quantity * fill.fee_rate
        return gross - fees, fees
