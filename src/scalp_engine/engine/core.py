"""Trading engine root: owns the state and exposes the command/query surface."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from datetime import datetime

from scalp_engine.engine.context import AlertCallback, EngineContext, EngineState, TradeCallback
from scalp_engine.engine.entry import EntryController
from scalp_engine.engine.monitor import PositionMonitor
from scalp_engine.engine.timers import TimerRegistry
from scalp_engine.exchange.base import ExchangeError, ExchangeGateway, find_position
from scalp_engine.journal.store import JournalStore
from scalp_engine.policy import TradingPolicy
from scalp_engine.risk.rules import RiskEngine
from scalp_engine.risk.sizing import round_price
from scalp_engine.types import (
    Candle,
    DailyStats,
    EngineSnapshot,
    ExitReason,
    OrderBookSnapshot,
    PendingSignal,
    Position,
    PositionPhase,
    SignalCandidate,
)
from scalp_engine.utils.logging import log_trade_signal

_CANDLE_HISTORY = 50


class TradingEngine:
    """One engine per account session; at most one position at a time.

    Public methods never raise exchange errors; failures end up in the log,
    the trade log and, when they need a human, an alert.
    """

    def __init__(
        self,
        exchange: ExchangeGateway,
        policy: TradingPolicy,
        *,
        journal: JournalStore | None = None,
        clock: Callable[[], float] = time.time,
        settle_delay_sec: float = 0.3,
        stats_timezone: str = "UTC",
    ) -> None:
        self.timers = TimerRegistry()
        self.risk = RiskEngine(policy)
        self._ctx = EngineContext(
            state=EngineState(today_stats=DailyStats(day="")),
            exchange=exchange,
            policy=policy,
            risk=self.risk,
            timers=self.timers,
            journal=journal,
            clock=clock,
            settle_delay_sec=settle_delay_sec,
            stats_timezone=stats_timezone,
        )
        self._ctx.state.today_stats = DailyStats(day=self._ctx.today())
        self.monitor = PositionMonitor(self._ctx)
        self.entry = EntryController(self._ctx, self.monitor)
        self._logger = self._ctx.logger

    @property
    def state(self) -> EngineState:
        return self._ctx.state

    @property
    def policy(self) -> TradingPolicy:
        return self._ctx.policy

    # ---- queries ----

    def snapshot(self) -> EngineSnapshot:
        state = self.state
        return EngineSnapshot(
            enabled=state.enabled,
            processing=state.processing,
            market_connected=state.market_connected,
            pending_signal=state.pending_signal,
            position=state.position,
            today_stats=state.today_stats,
            trade_log=state.trade_log.recent(50),
            status_message=state.status_message,
        )

    # ---- events ----

    def on_trade_completed(self, callback: TradeCallback) -> None:
        self._ctx.trade_callbacks.append(callback)

    def on_alert(self, callback: AlertCallback) -> None:
        self._ctx.alert_callbacks.append(callback)

    # ---- commands ----

    async def toggle_engine(self) -> bool:
        """Flip the enabled flag. Disabling stops entries but never closes an active position."""
        state = self.state
        state.enabled = not state.enabled
        self._logger.info("engine_toggled", enabled=state.enabled)
        if state.enabled:
            state.status_message = "waiting for signal"
            return True

        if state.pending_signal is not None:
            self._logger.info("pending_signal_cleared", symbol=state.pending_signal.symbol, reason="engine_disabled")
            state.pending_signal = None
        position = state.position
        if position is not None and position.phase == PositionPhase.WAITING:
            try:
                await self.entry.cancel_entry("engine disabled")
            except ExchangeError as exc:
                self._logger.error("disable_cancel_failed", error=str(exc))
        if state.position is None:
            state.status_message = "disabled"
        else:
            state.status_message = "disabled, managing open position"
        return False

    async def manual_close(self) -> bool:
        """Close the open position at market, or cancel a waiting entry."""
        position = self.state.position
        if position is None:
            return False
        if position.phase == PositionPhase.WAITING:
            return await self.entry.cancel_entry("manual close")
        if not position.is_open:
            return False
        price = await self.monitor.reference_price(position)
        return await self.monitor.close_position(position, ExitReason.MANUAL, price)

    async def cancel_pending_entry(self) -> bool:
        return await self.entry.cancel_entry("cancelled by user")

    def skip_pending_signal(self) -> bool:
        pending = self.state.pending_signal
        if pending is None:
            return False
        self.state.pending_signal = None
        self._ctx.record(
            "cancel",
            symbol=pending.symbol,
            side=pending.direction,
            price=pending.detected_price,
            quantity=0.0,
            reason="signal skipped",
        )
        self.state.status_message = "signal skipped"
        return True

    def set_balance(self, balance: float) -> None:
        self.state.balance = balance

    async def refresh_balance(self) -> float:
        try:
            self.state.balance = await self._ctx.exchange.get_balance()
        except ExchangeError as exc:
            self._logger.warning("balance_refresh_failed", error=str(exc))
        return self.state.balance

    # ---- market data ----

    def set_market_connected(self, connected: bool) -> None:
        if self.state.market_connected != connected:
            self._logger.info("market_connection_changed", connected=connected)
        self.state.market_connected = connected

    def on_book(self, book: OrderBookSnapshot) -> None:
        self.state.books[book.symbol] = book

    async def on_tick(self, symbol: str, price: float) -> None:
        self.state.last_prices[symbol] = price
        try:
            await self.monitor.on_tick(symbol, price)
        except ExchangeError as exc:
            self._logger.error("tick_handling_failed", symbol=symbol, error=str(exc))

    async def on_signal(self, candidate: SignalCandidate) -> None:
        """New evaluator output: either park it for candle confirmation or enter."""
        state = self.state
        blocked = self.entry.can_enter(candidate)
        if blocked is not None:
            self._logger.debug("signal_ignored", symbol=candidate.symbol, reason=blocked)
            return
        log_trade_signal(
            self._logger,
            symbol=candidate.symbol,
            direction=candidate.direction,
            strength=candidate.strength,
            reasons=candidate.reasons,
        )
        if self._ctx.journal is not None:
            self._ctx.journal.append(
                "signal",
                {
                    "symbol": candidate.symbol,
                    "direction": candidate.direction,
                    "strength": candidate.strength,
                    "price": candidate.price,
                    "reasons": candidate.reasons,
                },
            )
        if self.policy.confirm_candles:
            state.pending_signal = PendingSignal(
                symbol=candidate.symbol,
                direction=candidate.direction,
                strength=candidate.strength,
                detected_price=candidate.price,
                detected_at=self._ctx.now(),
                reasons=list(candidate.reasons),
            )
            state.status_message = f"{candidate.direction} signal on {candidate.symbol}, waiting for candle"
            return
        try:
            await self.entry.open_entry(candidate)
        except ExchangeError as exc:
            self._logger.error("entry_failed", symbol=candidate.symbol, error=str(exc))

    async def on_candle_close(self, symbol: str, candle: Candle) -> None:
        """Closed candle: feed emergency exits and resolve a pending signal."""
        history = self.state.recent_candles.setdefault(symbol, deque(maxlen=_CANDLE_HISTORY))
        history.append(candle)
        await self.on_tick(symbol, candle.close)

        pending = self.state.pending_signal
        if pending is None or pending.symbol != symbol:
            return
        pending.wait_count += 1
        bullish = candle.close > candle.open
        bearish = candle.close < candle.open
        confirmed = bullish if pending.direction == "long" else bearish
        opposite = bearish if pending.direction == "long" else bullish

        if confirmed:
            self.state.pending_signal = None
            self._logger.info("signal_confirmed", symbol=symbol, direction=pending.direction, wait=pending.wait_count)
            candidate = SignalCandidate(
                symbol=symbol,
                direction=pending.direction,
                strength=pending.strength,
                price=candle.close,
                reasons=[*pending.reasons, "candle_confirmed"],
            )
            try:
                await self.entry.open_entry(candidate)
            except ExchangeError as exc:
                self._logger.error("entry_failed", symbol=symbol, error=str(exc))
        elif opposite:
            self.state.pending_signal = None
            self._logger.info("signal_cancelled", symbol=symbol, reason="opposite_candle")
            self.state.status_message = "signal cancelled: opposite candle"
        elif pending.wait_count >= self.policy.max_signal_wait_candles:
            self.state.pending_signal = None
            self._logger.info("signal_cancelled", symbol=symbol, reason="confirmation_timeout")
            self.state.status_message = "signal expired"

    async def heartbeat(self) -> None:
        """Periodic housekeeping: day rollover and REST-driven exits while the stream is down."""
        self._ctx.roll_day()
        position = self.state.position
        if position is None or not position.is_open or self.state.market_connected:
            return
        try:
            snapshot = find_position(await self._ctx.exchange.get_positions(position.symbol), position.symbol)
        except ExchangeError as exc:
            self._logger.warning("heartbeat_query_failed", symbol=position.symbol, error=str(exc))
            return
        if snapshot is None or snapshot.mark_price <= 0:
            return
        self.state.last_prices[position.symbol] = snapshot.mark_price
        try:
            await self.monitor.on_tick(position.symbol, snapshot.mark_price)
        except ExchangeError as exc:
            self._logger.error("heartbeat_exit_failed", symbol=position.symbol, error=str(exc))

    # ---- start-up / shutdown ----

    def restore_from_journal(self) -> None:
        """Rebuild today's stats and the loss streak from journaled trades."""
        journal = self._ctx.journal
        if journal is None:
            return
        trades = journal.load_trades()
        self.state.today_stats = journal.daily_stats(self._ctx.today(), tz=self._ctx.tz)
        last_loss = next((t for t in reversed(trades) if t.realized_pnl < 0), None)
        last_loss_at = datetime.fromisoformat(last_loss.closed_at).timestamp() if last_loss else None
        self.risk.restore((t.realized_pnl for t in trades), last_loss_at)
        self._logger.info(
            "stats_restored",
            day=self.state.today_stats.day,
            trades=self.state.today_stats.trades,
            pnl=round(self.state.today_stats.total_pnl, 6),
            consecutive_losses=self.risk.consecutive_losses,
        )

    async def sync_from_exchange(self, symbols: list[str]) -> Position | None:
        """Adopt a position found on the exchange while idle so it gets monitored."""
        state = self.state
        if state.position is not None:
            return None
        try:
            positions = await self._ctx.exchange.get_positions()
        except ExchangeError as exc:
            self._logger.warning("sync_query_failed", error=str(exc))
            return None
        for snapshot in positions:
            if snapshot.symbol not in symbols or snapshot.direction is None:
                continue
            state.generation += 1
            now = self._ctx.now()
            position = Position(
                symbol=snapshot.symbol,
                side=snapshot.direction,
                generation=state.generation,
                total_planned_quantity=snapshot.quantity,
                start_time=now,
                phase=PositionPhase.WAITING,
            )
            position.record_fill(snapshot.quantity, snapshot.entry_price)
            position.activated_at = now
            stop = self.risk.build_stop_loss(snapshot.entry_price, position.side)
            try:
                stop = round_price(stop, await self._ctx.precision(snapshot.symbol))
            except ExchangeError as exc:
                self._logger.warning("precision_fetch_failed", symbol=snapshot.symbol, error=str(exc))
            position.set_initial_stop(stop)
            state.position = position
            self._ctx.transition(position, PositionPhase.ACTIVE, reason="adopted")
            self._ctx.record(
                "fill",
                symbol=position.symbol,
                side=position.side,
                price=snapshot.entry_price,
                quantity=snapshot.quantity,
                reason="adopted exchange position",
            )
            state.status_message = f"adopted {position.side} {position.symbol}"
            self.monitor.arm(position)
            return position
        return None

    async def shutdown(self) -> None:
        self.timers.cancel_all()
        await self.timers.drain()
        self._logger.info("engine_shutdown", open_position=self.state.position is not None)
