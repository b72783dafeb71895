"""Position monitor: active -> closing -> closed.

``decide_exit`` is the pure priority table; ``PositionMonitor`` performs the
orders it implies and confirms every reduction against the exchange.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Literal

from scalp_engine.engine.context import EngineContext
from scalp_engine.exchange.base import ExchangeError
from scalp_engine.risk.rules import RiskEngine
from scalp_engine.risk.sizing import round_price, round_quantity, take_profit_ladder
from scalp_engine.types import (
    Candle,
    EntryOrder,
    ExchangePosition,
    ExitFill,
    ExitReason,
    OpenOrder,
    OrderAck,
    Position,
    PositionPhase,
    TradeRecord,
    direction_sign,
    exit_side,
)
from scalp_engine.utils.logging import log_order_execution, log_trade_closed

TP_LADDER_TIMER = "tp_ladder"
TIME_STOP_TIMER = "time_stop"
_CLOSE_ATTEMPTS = 2


def count_opposite_candles(position: Position, candles: Iterable[Candle]) -> int:
    """Trailing run of closed candles moving against the position since activation."""
    run = 0
    activated_ms = (position.activated_at or 0.0) * 1000
    for candle in reversed(list(candles)):
        if not candle.closed or candle.open_time < activated_ms:
            break
        against = candle.close < candle.open if position.side == "long" else candle.close > candle.open
        if not against:
            break
        run += 1
    return run


def decide_exit(
    position: Position,
    price: float,
    now: float,
    risk: RiskEngine,
    *,
    book_imbalance: float | None = None,
    opposite_candles: int = 0,
) -> ExitReason | None:
    """Exit reason for this tick, in fixed priority order, or None to hold."""
    policy = risk.policy
    if position.phase == PositionPhase.CLOSING:
        return ExitReason.SL if position.is_stop_hit(price) else None
    if position.phase != PositionPhase.ACTIVE:
        return None

    if position.is_low_fill_breakeven and risk.is_breakeven_reached(position, price):
        return ExitReason.TP
    if position.is_stop_hit(price):
        return ExitReason.SL
    if risk.check_time_stop(position, now):
        return ExitReason.TIMEOUT
    if policy.emergency_imbalance_ratio is not None and book_imbalance is not None:
        against = -book_imbalance if position.side == "long" else book_imbalance
        if against >= policy.emergency_imbalance_ratio:
            return ExitReason.EMERGENCY
    if policy.emergency_opposite_candles is not None and opposite_candles >= policy.emergency_opposite_candles:
        return ExitReason.EMERGENCY
    if not position.is_low_fill_breakeven and position.unrealized_pnl(price) >= policy.take_profit_quote:
        return ExitReason.TP
    return None


class PositionMonitor:
    """Evaluates exits per tick and drives take-profit and close sequences."""

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx

    def arm(self, position: Position) -> None:
        """Start the time-stop timer for a freshly active position."""
        generation = position.generation

        async def _fire() -> None:
            await self.on_time_stop(generation)

        self._ctx.timers.schedule(TIME_STOP_TIMER, self._ctx.policy.max_hold_sec, _fire)

    async def on_tick(self, symbol: str, price: float) -> ExitReason | None:
        ctx = self._ctx
        position = ctx.state.position
        if position is None or position.symbol != symbol or not position.is_open:
            return None
        if ctx.state.processing:
            return None

        self._update_dynamic_stop(position, price)
        book = ctx.state.books.get(symbol)
        reason = decide_exit(
            position,
            price,
            ctx.now(),
            ctx.risk,
            book_imbalance=book.imbalance() if book is not None else None,
            opposite_candles=count_opposite_candles(position, ctx.state.recent_candles.get(symbol, ())),
        )
        if reason is None:
            return None
        if reason == ExitReason.TP and not position.is_low_fill_breakeven:
            await self.start_take_profit(position, price)
        else:
            await self.close_position(position, reason, price)
        return reason

    async def on_time_stop(self, generation: int) -> None:
        ctx = self._ctx
        position = ctx.state.position
        if position is None or position.generation != generation or position.phase != PositionPhase.ACTIVE:
            return
        if ctx.state.processing:
            self.arm_retry(position)
            return
        price = await self.reference_price(position)
        await self.close_position(position, ExitReason.TIMEOUT, price)

    def arm_retry(self, position: Position, delay: float = 1.0) -> None:
        generation = position.generation

        async def _fire() -> None:
            await self.on_time_stop(generation)

        self._ctx.timers.schedule(TIME_STOP_TIMER, delay, _fire)

    def _update_dynamic_stop(self, position: Position, price: float) -> None:
        ctx = self._ctx
        if position.phase != PositionPhase.ACTIVE:
            return
        position.peak_pnl_pct = max(position.peak_pnl_pct, position.pnl_pct(price))
        target = ctx.risk.dynamic_stop(position)
        if target is None:
            return
        precision = ctx.precisions.get(position.symbol)
        if precision is not None:
            target = round_price(target, precision)
        previous = position.stop_loss_price
        if position.tighten_stop(target):
            ctx.logger.info(
                "stop_tightened",
                symbol=position.symbol,
                generation=position.generation,
                previous=previous,
                stop=target,
                peak_pnl_pct=round(position.peak_pnl_pct, 4),
            )

    async def reference_price(self, position: Position) -> float:
        last = self._ctx.state.last_prices.get(position.symbol)
        if last is not None:
            return last
        try:
            snapshot = await self._ctx.query_position(position.symbol)
        except ExchangeError:
            snapshot = None
        if snapshot is not None and snapshot.mark_price > 0:
            return snapshot.mark_price
        return position.avg_fill_price or 0.0

    # ---- take profit ----

    async def start_take_profit(self, position: Position, price: float) -> None:
        """Market-close the first slice, then ladder the rest as reduce-only limits."""
        ctx = self._ctx
        policy = ctx.policy
        if not ctx.is_current(position, PositionPhase.ACTIVE) or ctx.state.processing:
            return
        ctx.state.processing = True
        try:
            ctx.transition(position, PositionPhase.CLOSING, reason="take_profit")
            before = position.open_quantity
            precision = await ctx.precision(position.symbol)
            first = round_quantity(before * policy.tp_first_close_ratio, precision)
            if first > 0:
                ack = await self._market_exit(position, first)
                if ack is None:
                    self._exit_failed(position, "first take-profit slice")
                    return
                await ctx.settle()
                try:
                    snapshot = await self._confirm(position)
                    remaining = snapshot.quantity if snapshot is not None else 0.0
                except ExchangeError as exc:
                    ctx.logger.warning("take_profit_confirm_failed", symbol=position.symbol, error=str(exc))
                    remaining = max(0.0, before - ack.executed_qty)
                exited = before - remaining
                fill_price = ack.avg_price or price
                if exited > 0:
                    self._add_exit(position, exited, fill_price, policy.taker_fee, "market")
                    ctx.record(
                        "tp",
                        symbol=position.symbol,
                        side=position.side,
                        price=fill_price,
                        quantity=exited,
                        reason="partial take profit",
                    )
                if remaining <= 0:
                    self._finalize(position, ExitReason.TP, fill_price)
                    return

            ladder = take_profit_ladder(
                position.open_quantity,
                position.filled_quantity,
                position.avg_fill_price or price,
                position.side,
                precision,
                base_target_quote=policy.take_profit_quote,
                step_quote=policy.tp_ladder_step_quote,
                count=policy.tp_ladder_count,
                maker_fee=policy.maker_fee,
            )
            side = exit_side(position.side)
            for ladder_price, ladder_qty in ladder:
                try:
                    ack = await ctx.exchange.place_limit_order(
                        position.symbol, side, ladder_qty, ladder_price, reduce_only=True
                    )
                except ExchangeError as exc:
                    log_order_execution(
                        ctx.logger,
                        symbol=position.symbol,
                        side=side,
                        quantity=ladder_qty,
                        price=ladder_price,
                        status="failed",
                        error=str(exc),
                    )
                    continue
                position.take_profit_orders.append(
                    EntryOrder(order_id=ack.order_id, price=ladder_price, quantity=ladder_qty, placed_at=ctx.now())
                )
                log_order_execution(
                    ctx.logger,
                    symbol=position.symbol,
                    side=side,
                    quantity=ladder_qty,
                    price=ladder_price,
                    order_id=ack.order_id,
                    reduce_only=True,
                )
                ctx.record("order", symbol=position.symbol, side=position.side, price=ladder_price, quantity=ladder_qty)
        except ExchangeError as exc:
            ctx.logger.warning("take_profit_setup_failed", symbol=position.symbol, error=str(exc))
            position.take_profit_orders.clear()
        finally:
            ctx.state.processing = False

        if not ctx.is_current(position, PositionPhase.CLOSING):
            return
        if not position.take_profit_orders:
            await self.close_position(position, ExitReason.TP, price)
            return
        ctx.state.status_message = f"take profit ladder: {len(position.take_profit_orders)} orders"
        generation = position.generation

        async def _fire() -> None:
            await self.on_ladder_timeout(generation)

        ctx.timers.schedule(TP_LADDER_TIMER, policy.tp_ladder_timeout_sec, _fire)

    async def on_ladder_timeout(self, generation: int) -> None:
        """Cancel unfilled ladder orders and market-close what is left with reason ``tp``."""
        ctx = self._ctx
        position = ctx.state.position
        if position is None or position.generation != generation or position.phase != PositionPhase.CLOSING:
            return
        if ctx.state.processing:

            async def _retry() -> None:
                await self.on_ladder_timeout(generation)

            ctx.timers.schedule(TP_LADDER_TIMER, 0.5, _retry)
            return
        price = await self.reference_price(position)
        await self.close_position(position, ExitReason.TP, price)

    # ---- close ----

    async def close_position(self, position: Position, reason: ExitReason, price: float) -> bool:
        """Close everything left at market and finalize once the exchange shows flat."""
        ctx = self._ctx
        if not ctx.is_current(position, PositionPhase.ACTIVE, PositionPhase.CLOSING) or ctx.state.processing:
            return False
        ctx.state.processing = True
        try:
            ctx.timers.cancel(TP_LADDER_TIMER)
            if position.phase != PositionPhase.CLOSING:
                ctx.transition(position, PositionPhase.CLOSING, reason=reason.value)
            open_orders = await self._open_orders(position)
            await ctx.cancel_all(position.symbol)
            await ctx.settle()
            try:
                snapshot = await self._confirm(position)
            except ExchangeError as exc:
                ctx.logger.warning("close_query_failed", symbol=position.symbol, error=str(exc))
                snapshot = ExchangePosition(
                    symbol=position.symbol,
                    quantity_signed=position.open_quantity * direction_sign(position.side),
                    entry_price=position.avg_fill_price or 0.0,
                    mark_price=price,
                )
            self._attribute_ladder_fills(position, snapshot, open_orders)
            if snapshot is None:
                self._finalize(position, reason, price)
                return True
            # reductions from an earlier unconfirmed attempt
            self._add_exit(position, position.open_quantity - snapshot.quantity, price, ctx.policy.taker_fee, "market")

            quantity = snapshot.quantity
            for _ in range(_CLOSE_ATTEMPTS):
                ack = await self._market_exit(position, quantity)
                if ack is None:
                    self._exit_failed(position, reason.value)
                    return False
                fill_price = ack.avg_price or price
                await ctx.settle()
                try:
                    confirmed = await self._confirm(position)
                except ExchangeError as exc:
                    ctx.logger.warning("close_confirm_failed", symbol=position.symbol, error=str(exc))
                    self._exit_failed(position, f"{reason.value} unconfirmed")
                    return False
                remaining = confirmed.quantity if confirmed is not None else 0.0
                self._add_exit(position, quantity - remaining, fill_price, ctx.policy.taker_fee, "market")
                if remaining <= 0:
                    self._finalize(position, reason, fill_price)
                    return True
                ctx.logger.warning("close_remainder", symbol=position.symbol, remaining=remaining)
                quantity = remaining
            self._exit_failed(position, f"{reason.value} remainder {quantity:g}")
            return False
        finally:
            ctx.state.processing = False

    async def _open_orders(self, position: Position) -> list[OpenOrder]:
        if not position.take_profit_orders:
            return []
        try:
            return await self._ctx.exchange.get_open_orders(position.symbol)
        except ExchangeError as exc:
            self._ctx.logger.warning("open_orders_query_failed", symbol=position.symbol, error=str(exc))
            return []

    def _attribute_ladder_fills(
        self,
        position: Position,
        snapshot: ExchangePosition | None,
        open_orders: list[OpenOrder],
    ) -> None:
        """Book the quantity the resting ladder took out before it was cancelled."""
        if not position.take_profit_orders:
            return
        remaining = snapshot.quantity if snapshot is not None else 0.0
        delta = position.open_quantity - remaining
        if delta <= 0:
            return
        still_open = {order.order_id: order for order in open_orders}
        weights: list[tuple[float, float]] = []
        for order in position.take_profit_orders:
            seen = still_open.get(order.order_id)
            executed = order.quantity if seen is None else seen.executed_qty
            order.filled_quantity = executed
            order.status = "FILLED" if executed >= order.quantity else "CANCELED"
            if executed > 0:
                weights.append((order.price, executed))
        total = sum(qty for _, qty in weights)
        if total > 0:
            fill_price = sum(px * qty for px, qty in weights) / total
        else:
            fill_price = position.take_profit_orders[0].price
        self._add_exit(position, delta, fill_price, self._ctx.policy.maker_fee, "limit")
        self._ctx.record(
            "tp",
            symbol=position.symbol,
            side=position.side,
            price=fill_price,
            quantity=delta,
            reason="take profit ladder fill",
        )
        position.take_profit_orders.clear()

    async def _confirm(self, position: Position) -> ExchangePosition | None:
        snapshot = await self._ctx.query_position(position.symbol)
        if snapshot is None or snapshot.direction != position.side:
            return None
        return snapshot

    async def _market_exit(self, position: Position, quantity: float) -> OrderAck | None:
        """Reduce-only market order with one immediate retry."""
        ctx = self._ctx
        side = exit_side(position.side)
        for attempt in (1, 2):
            try:
                ack = await ctx.exchange.place_market_order(position.symbol, side, quantity, reduce_only=True)
            except ExchangeError as exc:
                log_order_execution(
                    ctx.logger,
                    symbol=position.symbol,
                    side=side,
                    quantity=quantity,
                    status="failed",
                    attempt=attempt,
                    error=str(exc),
                )
                continue
            log_order_execution(
                ctx.logger,
                symbol=position.symbol,
                side=side,
                quantity=quantity,
                price=ack.avg_price or None,
                order_id=ack.order_id,
                reduce_only=True,
            )
            return ack
        return None

    def _exit_failed(self, position: Position, what: str) -> None:
        ctx = self._ctx
        position.exit_failures += 1
        ctx.logger.critical(
            "exit_failed",
            symbol=position.symbol,
            generation=position.generation,
            what=what,
            failures=position.exit_failures,
        )
        ctx.record(
            "error",
            symbol=position.symbol,
            side=position.side,
            price=ctx.state.last_prices.get(position.symbol, 0.0),
            quantity=position.open_quantity,
            reason=f"exit failed: {what}",
        )
        if position.phase != PositionPhase.ACTIVE:
            ctx.transition(position, PositionPhase.ACTIVE, reason="exit_failed")
        ctx.alert("market close failed, position kept active", symbol=position.symbol)

    def _add_exit(
        self,
        position: Position,
        quantity: float,
        price: float,
        fee_rate: float,
        kind: Literal["market", "limit"],
    ) -> None:
        if quantity <= 0:
            return
        quantity = min(quantity, position.open_quantity)
        position.exit_fills.append(ExitFill(quantity=quantity, price=price, fee_rate=fee_rate, kind=kind))
        position.open_quantity = max(0.0, position.open_quantity - quantity)

    def _finalize(self, position: Position, reason: ExitReason, price: float) -> None:
        ctx = self._ctx
        if position.open_quantity > 0:
            # position vanished on the exchange; book the rest at the last known price
            self._add_exit(position, position.open_quantity, price, ctx.policy.taker_fee, "market")
        pnl, fees = ctx.risk.realized_pnl(position, position.exit_fills)
        exited = sum(fill.quantity for fill in position.exit_fills)
        exit_price = sum(fill.price * fill.quantity for fill in position.exit_fills) / exited if exited else price

        ctx.timers.cancel_all()
        ctx.transition(position, PositionPhase.CLOSED, reason=reason.value)
        ctx.roll_day()
        ctx.state.today_stats.record(pnl)
        ctx.state.balance += pnl
        ctx.risk.record_trade(pnl, ctx.now())
        ctx.record(
            reason.value,  # type: ignore[arg-type]
            symbol=position.symbol,
            side=position.side,
            price=exit_price,
            quantity=position.filled_quantity,
            pnl=pnl,
            reason="closed",
        )
        log_trade_closed(ctx.logger, symbol=position.symbol, side=position.side, reason=reason.value, pnl=pnl, fees=fees)

        trade = TradeRecord(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.avg_fill_price or 0.0,
            exit_price=exit_price,
            quantity=position.filled_quantity,
            leverage=position.leverage,
            realized_pnl=pnl,
            fees=fees,
            reason=reason.value,
            opened_at=_iso(position.activated_at or position.start_time),
            closed_at=ctx.iso_now(),
        )
        if ctx.journal is not None:
            ctx.journal.append_trade(trade)
        if ctx.state.position is position:
            ctx.state.position = None
        ctx.state.status_message = f"closed {reason.value}: {pnl:+.4f}"
        ctx.emit_trade_completed(trade)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()
