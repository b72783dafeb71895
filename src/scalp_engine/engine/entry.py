"""Entry controller: idle -> ordering -> waiting -> active | aborted."""

from __future__ import annotations

from scalp_engine.engine.context import EngineContext
from scalp_engine.engine.monitor import PositionMonitor
from scalp_engine.exchange.base import ExchangeError
from scalp_engine.risk.sizing import (
    SizingError,
    compute_order_quantity,
    entry_ladder_prices,
    plan_entry_clips,
    round_price,
    split_two_tranche,
)
from scalp_engine.types import (
    EntryOrder,
    ExchangePosition,
    Position,
    PositionPhase,
    SignalCandidate,
    SymbolPrecision,
    entry_side,
    strength_at_least,
)
from scalp_engine.utils.logging import log_order_execution, log_risk_event

STAGE_INITIAL = "initial"
STAGE_GRACE = "grace"
ENTRY_TIMER = "entry"
LEVERAGE_FALLBACKS = (10, 5, 3, 2, 1)
QUERY_RETRY_DELAY_SEC = 1.0
_FULL_FILL_RATIO = 0.999999


class EntryController:
    """Places split limit entries and decides activation from exchange fills."""

    def __init__(self, ctx: EngineContext, monitor: PositionMonitor) -> None:
        self._ctx = ctx
        self._monitor = monitor

    def can_enter(self, candidate: SignalCandidate) -> str | None:
        """Reason the candidate cannot enter now, or None when it can."""
        ctx = self._ctx
        state = ctx.state
        if not state.enabled:
            return "engine_disabled"
        if state.processing:
            return "engine_busy"
        if state.position is not None:
            return "position_exists"
        if state.pending_signal is not None:
            return "pending_signal_exists"
        if not state.market_connected:
            return "market_disconnected"
        if not strength_at_least(candidate.strength, ctx.policy.min_signal_strength):
            return "signal_too_weak"
        last = state.last_entry_attempt_at
        if last is not None and ctx.now() - last < ctx.policy.entry_cooldown_sec:
            return "entry_cooldown"
        ctx.roll_day()
        guard = ctx.risk.check_daily_guards(state.today_stats, state.balance, ctx.now())
        if not guard.allowed:
            log_risk_event(ctx.logger, event_type="daily_guard", action="block_entry", reasons=guard.reasons)
            return guard.reasons[0]
        return None

    async def open_entry(self, candidate: SignalCandidate) -> Position | None:
        """Size, split and place the entry for ``candidate``."""
        ctx = self._ctx
        state = ctx.state
        blocked = self.can_enter(candidate)
        if blocked is not None:
            ctx.logger.info("entry_skipped", symbol=candidate.symbol, reason=blocked)
            return None

        state.processing = True
        try:
            return await self._place_entry(candidate)
        finally:
            state.processing = False

    async def _place_entry(self, candidate: SignalCandidate) -> Position | None:
        ctx = self._ctx
        state = ctx.state
        policy = ctx.policy
        symbol = candidate.symbol
        price = state.last_prices.get(symbol, candidate.price)

        try:
            precision = await ctx.precision(symbol)
        except ExchangeError as exc:
            ctx.logger.warning("precision_fetch_failed", symbol=symbol, error=str(exc))
            return None
        leverage = await self._ensure_leverage(symbol)
        if leverage is None:
            ctx.alert("leverage could not be set", symbol=symbol)
            return None

        deferred = 0.0
        try:
            quantity = compute_order_quantity(state.balance, leverage, price, precision, policy.balance_fraction)
            if policy.entry_mode == "two_tranche":
                first, second = split_two_tranche(quantity, precision, policy.two_tranche_first_ratio)
                if first * price < precision.min_notional or second * price < precision.min_notional:
                    first, second = quantity, 0.0
                clips = plan_entry_clips(first, price, precision, 1)
                deferred = second
            else:
                clips = plan_entry_clips(quantity, price, precision, policy.entry_split_count)
        except SizingError as exc:
            log_risk_event(ctx.logger, event_type="sizing", action="discard_signal", symbol=symbol, error=str(exc))
            state.status_message = f"signal discarded: {exc}"
            return None

        prices = entry_ladder_prices(price, candidate.direction, len(clips), policy.entry_offset_pct, precision)
        state.generation += 1
        now = ctx.now()
        position = Position(
            symbol=symbol,
            side=candidate.direction,
            generation=state.generation,
            total_planned_quantity=quantity,
            start_time=now,
            leverage=leverage,
            deferred_quantity=deferred,
        )
        state.position = position
        state.last_entry_attempt_at = now
        ctx.logger.info(
            "position_ordering",
            symbol=symbol,
            generation=position.generation,
            side=position.side,
            quantity=quantity,
            reasons=candidate.reasons,
        )

        side = entry_side(candidate.direction)
        for clip_qty, clip_price in zip(clips, prices):
            if not state.enabled:
                break
            try:
                ack = await ctx.exchange.place_limit_order(symbol, side, clip_qty, clip_price)
            except ExchangeError as exc:
                log_order_execution(
                    ctx.logger,
                    symbol=symbol,
                    side=side,
                    quantity=clip_qty,
                    price=clip_price,
                    status="failed",
                    error=str(exc),
                )
                ctx.record(
                    "error",
                    symbol=symbol,
                    side=position.side,
                    price=clip_price,
                    quantity=clip_qty,
                    reason=f"entry clip rejected: {exc}",
                )
                continue
            position.entries.append(
                EntryOrder(order_id=ack.order_id, price=clip_price, quantity=clip_qty, placed_at=ctx.now())
            )
            log_order_execution(
                ctx.logger,
                symbol=symbol,
                side=side,
                quantity=clip_qty,
                price=clip_price,
                order_id=ack.order_id,
            )
            ctx.record("order", symbol=symbol, side=position.side, price=clip_price, quantity=clip_qty)

        if not position.entries:
            return await self._reconcile_unplaced(position, price)

        ctx.transition(position, PositionPhase.WAITING, clips=len(position.entries))
        if not state.enabled:
            # disabled while clips were being placed
            await self.cancel_entry("engine disabled")
            return position if position.phase == PositionPhase.ACTIVE else None
        ctx.logger.info(
            "entry_orders_placed",
            symbol=symbol,
            side=position.side,
            clips=len(position.entries),
            quantity=position.resting_quantity,
            deferred=deferred,
        )
        state.status_message = f"waiting for {len(position.entries)} entry orders"
        self._schedule_check(position.generation, STAGE_INITIAL, policy.entry_timeout_sec)
        return position

    async def _reconcile_unplaced(self, position: Position, price: float) -> Position | None:
        """No clip acknowledged; a fill may still exist despite the errors."""
        ctx = self._ctx
        try:
            exchange_position = await ctx.query_position(position.symbol)
        except ExchangeError as exc:
            ctx.logger.warning("reconcile_query_failed", symbol=position.symbol, error=str(exc))
            exchange_position = None
        if exchange_position is None or exchange_position.direction != position.side:
            self.abort(position, "error", "no entry orders placed", price)
            return None
        ctx.transition(position, PositionPhase.WAITING, clips=0)
        await self._activate(position, exchange_position)
        return position if position.phase == PositionPhase.ACTIVE else None

    async def _ensure_leverage(self, symbol: str) -> int | None:
        ctx = self._ctx
        wanted = ctx.policy.leverage
        candidates = [wanted] + [lev for lev in LEVERAGE_FALLBACKS if lev < wanted]
        for leverage in candidates:
            try:
                return await ctx.exchange.set_leverage(symbol, leverage)
            except ExchangeError as exc:
                if exc.is_already_set:
                    return leverage
                ctx.logger.warning("leverage_rejected", symbol=symbol, leverage=leverage, error=str(exc))
        return None

    def _schedule_check(self, generation: int, stage: str, delay: float) -> None:
        async def _fire() -> None:
            await self.check_fill(generation, stage)

        self._ctx.timers.schedule(ENTRY_TIMER, delay, _fire)

    async def check_fill(self, generation: int, stage: str) -> None:
        """Timer callback deciding the outcome of the entry. Stale or repeated calls are no-ops."""
        ctx = self._ctx
        position = ctx.state.position
        if position is None or position.generation != generation or position.phase != PositionPhase.WAITING:
            ctx.logger.debug("fill_check_stale", generation=generation, stage=stage)
            return
        if stage in position.fill_checks_done:
            ctx.logger.debug("fill_check_duplicate", generation=generation, stage=stage)
            return
        if stage == STAGE_GRACE and STAGE_INITIAL not in position.fill_checks_done:
            return
        position.fill_checks_done.add(stage)

        try:
            exchange_position = await ctx.query_position(position.symbol)
        except ExchangeError as exc:
            await self._on_query_failure(position, stage, exc)
            return
        if not ctx.is_current(position, PositionPhase.WAITING):
            return

        filled = self._filled_for(position, exchange_position)
        if filled <= 0:
            await ctx.cancel_all(position.symbol)
            await ctx.settle()
            try:
                exchange_position = await ctx.query_position(position.symbol)
            except ExchangeError as exc:
                await self._on_query_failure(position, stage, exc)
                return
            if not ctx.is_current(position, PositionPhase.WAITING):
                return
            if self._filled_for(position, exchange_position) <= 0:
                self.abort(position, "cancel", "no fill", ctx.state.last_prices.get(position.symbol, 0.0))
                return
            ctx.logger.info("fill_found_after_cancel", symbol=position.symbol, generation=generation)
            await self._activate(position, exchange_position)
            return

        ratio = filled / self._resting_target(position)
        if ratio >= _FULL_FILL_RATIO:
            await self._activate(position, exchange_position)
        elif stage == STAGE_INITIAL:
            ctx.logger.info(
                "fill_check_extended",
                symbol=position.symbol,
                generation=generation,
                fill_ratio=round(ratio, 4),
                wait_sec=ctx.policy.partial_wait_sec,
            )
            ctx.state.status_message = f"partial fill {ratio:.0%}, waiting"
            self._schedule_check(generation, STAGE_GRACE, ctx.policy.partial_wait_sec)
        else:
            await self._activate(position, exchange_position)

    async def _on_query_failure(self, position: Position, stage: str, exc: ExchangeError) -> None:
        ctx = self._ctx
        position.query_failures += 1
        ctx.logger.warning(
            "fill_check_query_failed",
            symbol=position.symbol,
            stage=stage,
            attempt=position.query_failures,
            error=str(exc),
        )
        if position.query_failures <= ctx.policy.max_query_retries:
            position.fill_checks_done.discard(stage)
            self._schedule_check(position.generation, stage, QUERY_RETRY_DELAY_SEC)
            return
        await ctx.cancel_all(position.symbol)
        self.abort(position, "error", f"position query failed: {exc}", ctx.state.last_prices.get(position.symbol, 0.0))
        ctx.alert("entry aborted after repeated position query failures", symbol=position.symbol)

    def _resting_target(self, position: Position) -> float:
        return position.total_planned_quantity - position.deferred_quantity

    def _filled_for(self, position: Position, exchange_position: ExchangePosition | None) -> float:
        if exchange_position is None or exchange_position.direction != position.side:
            return 0.0
        return exchange_position.quantity

    async def _activate(self, position: Position, snapshot: ExchangePosition | None) -> None:
        """Cancel the rest of the entry and activate from a fresh exchange query."""
        ctx = self._ctx
        policy = ctx.policy
        ctx.timers.cancel(ENTRY_TIMER)
        await ctx.cancel_all(position.symbol)
        await ctx.settle()
        try:
            snapshot = await ctx.query_position(position.symbol)
        except ExchangeError as exc:
            ctx.logger.warning("activation_query_failed", symbol=position.symbol, error=str(exc))
        if not ctx.is_current(position, PositionPhase.WAITING):
            return

        filled = self._filled_for(position, snapshot)
        if snapshot is None or filled <= 0:
            self.abort(position, "cancel", "no fill", ctx.state.last_prices.get(position.symbol, 0.0))
            return
        ratio = filled / self._resting_target(position)

        if position.deferred_quantity > 0:
            if ratio >= _FULL_FILL_RATIO:
                snapshot = await self._fill_deferred(position, snapshot)
                filled = self._filled_for(position, snapshot)
                ratio = filled / position.total_planned_quantity
            else:
                position.deferred_quantity = 0.0
        else:
            ratio = filled / position.total_planned_quantity

        quantity = min(filled, position.total_planned_quantity)
        position.record_fill(quantity, snapshot.entry_price)
        self._allocate_entry_fills(position, quantity)
        position.is_low_fill_breakeven = ratio < policy.low_fill_threshold
        position.activated_at = ctx.now()

        precision = await self._precision_or_none(position.symbol)
        stop = ctx.risk.build_stop_loss(snapshot.entry_price, position.side)
        position.set_initial_stop(round_price(stop, precision) if precision else stop)
        ctx.transition(
            position,
            PositionPhase.ACTIVE,
            filled_quantity=quantity,
            avg_fill_price=snapshot.entry_price,
            fill_ratio=round(ratio, 4),
            low_fill=position.is_low_fill_breakeven,
        )
        ctx.record(
            "fill",
            symbol=position.symbol,
            side=position.side,
            price=snapshot.entry_price,
            quantity=quantity,
            reason="low fill breakeven" if position.is_low_fill_breakeven else None,
        )
        ctx.state.status_message = f"{position.side} {quantity:g} {position.symbol} active"
        self._monitor.arm(position)

    async def _fill_deferred(self, position: Position, snapshot: ExchangePosition) -> ExchangePosition:
        """Send the deferred second tranche at market once the first tranche filled."""
        ctx = self._ctx
        quantity = position.deferred_quantity
        side = entry_side(position.side)
        position.deferred_quantity = 0.0
        try:
            ack = await ctx.exchange.place_market_order(position.symbol, side, quantity)
        except ExchangeError as exc:
            log_order_execution(ctx.logger, symbol=position.symbol, side=side, quantity=quantity, status="failed")
            ctx.record(
                "error",
                symbol=position.symbol,
                side=position.side,
                price=snapshot.entry_price,
                quantity=quantity,
                reason=f"second tranche rejected: {exc}",
            )
            return snapshot
        log_order_execution(ctx.logger, symbol=position.symbol, side=side, quantity=quantity, order_id=ack.order_id)
        ctx.record("order", symbol=position.symbol, side=position.side, price=ack.avg_price, quantity=quantity)
        await ctx.settle()
        try:
            fresh = await ctx.query_position(position.symbol)
        except ExchangeError as exc:
            ctx.logger.warning("second_tranche_query_failed", symbol=position.symbol, error=str(exc))
            return snapshot
        return fresh if fresh is not None else snapshot

    async def _precision_or_none(self, symbol: str) -> SymbolPrecision | None:
        try:
            return await self._ctx.precision(symbol)
        except ExchangeError:
            return None

    def _allocate_entry_fills(self, position: Position, quantity: float) -> None:
        left = quantity
        for entry in position.entries:
            entry.filled_quantity = min(entry.quantity, left)
            left -= entry.filled_quantity
            entry.status = "FILLED" if entry.remaining <= 0 else "CANCELED"

    async def cancel_entry(self, reason: str) -> bool:
        """Stop a waiting entry. A partial fill is reconciled into an active position."""
        ctx = self._ctx
        position = ctx.state.position
        if position is None or position.phase != PositionPhase.WAITING:
            return False
        ctx.timers.cancel(ENTRY_TIMER)
        position.fill_checks_done.update({STAGE_INITIAL, STAGE_GRACE})
        await ctx.cancel_all(position.symbol)
        await ctx.settle()
        try:
            snapshot = await ctx.query_position(position.symbol)
        except ExchangeError as exc:
            ctx.logger.warning("cancel_entry_query_failed", symbol=position.symbol, error=str(exc))
            snapshot = None
        if not ctx.is_current(position, PositionPhase.WAITING):
            return True
        if self._filled_for(position, snapshot) > 0:
            ctx.logger.info("entry_cancel_reconciled_fill", symbol=position.symbol, reason=reason)
            await self._activate(position, snapshot)
        else:
            self.abort(position, "cancel", reason, ctx.state.last_prices.get(position.symbol, 0.0))
        return True

    def abort(self, position: Position, action: str, reason: str, price: float) -> None:
        ctx = self._ctx
        ctx.timers.cancel_all()
        ctx.transition(position, PositionPhase.ABORTED, reason=reason)
        ctx.record(
            "cancel" if action == "cancel" else "error",
            symbol=position.symbol,
            side=position.side,
            price=price,
            quantity=position.resting_quantity,
            reason=reason,
        )
        if ctx.state.position is position:
            ctx.state.position = None
        ctx.state.status_message = f"entry aborted: {reason}"
