"""Engine state and the collaborators shared by the entry and exit controllers."""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from scalp_engine.engine.timers import TimerRegistry
from scalp_engine.exchange.base import ExchangeError, ExchangeGateway, find_position
from scalp_engine.journal.store import JournalStore
from scalp_engine.policy import TradingPolicy
from scalp_engine.risk.rules import RiskEngine
from scalp_engine.types import (
    Candle,
    DailyStats,
    Direction,
    ExchangePosition,
    LogAction,
    OrderBookSnapshot,
    PendingSignal,
    Position,
    PositionPhase,
    SymbolPrecision,
    TradeLog,
    TradeLogEntry,
    TradeRecord,
)
from scalp_engine.utils.logging import get_logger, log_state_transition

TradeCallback = Callable[[TradeRecord], None]
AlertCallback = Callable[[str], None]


@dataclass(slots=True)
class EngineState:
    """The single mutable root of trading state."""

    today_stats: DailyStats
    enabled: bool = False
    processing: bool = False
    market_connected: bool = False
    position: Position | None = None
    pending_signal: PendingSignal | None = None
    generation: int = 0
    last_entry_attempt_at: float | None = None
    balance: float = 0.0
    status_message: str = "idle"
    trade_log: TradeLog = field(default_factory=TradeLog)
    last_prices: dict[str, float] = field(default_factory=dict)
    books: dict[str, OrderBookSnapshot] = field(default_factory=dict)
    recent_candles: dict[str, deque[Candle]] = field(default_factory=dict)


class EngineContext:
    """Collaborators plus the audit helpers every controller uses."""

    def __init__(
        self,
        *,
        state: EngineState,
        exchange: ExchangeGateway,
        policy: TradingPolicy,
        risk: RiskEngine,
        timers: TimerRegistry,
        journal: JournalStore | None = None,
        clock: Callable[[], float],
        settle_delay_sec: float = 0.3,
        stats_timezone: str = "UTC",
    ) -> None:
        self.state = state
        self.exchange = exchange
        self.policy = policy
        self.risk = risk
        self.timers = timers
        self.journal = journal
        self.clock = clock
        self.settle_delay_sec = settle_delay_sec
        self.tz = ZoneInfo(stats_timezone)
        self.precisions: dict[str, SymbolPrecision] = {}
        self.trade_callbacks: list[TradeCallback] = []
        self.alert_callbacks: list[AlertCallback] = []
        self.logger = get_logger("scalp_engine.engine")
        self._ids = itertools.count(1)

    def now(self) -> float:
        return self.clock()

    def today(self) -> str:
        return datetime.fromtimestamp(self.clock(), self.tz).date().isoformat()

    def iso_now(self) -> str:
        return datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()

    def roll_day(self) -> bool:
        """Reset daily stats on a calendar-day change. Returns True when rolled."""
        today = self.today()
        if self.state.today_stats.day == today:
            return False
        self.logger.info("daily_stats_rolled", previous=self.state.today_stats.day, day=today)
        self.state.today_stats = DailyStats(day=today)
        return True

    async def settle(self) -> None:
        if self.settle_delay_sec > 0:
            await asyncio.sleep(self.settle_delay_sec)

    async def precision(self, symbol: str) -> SymbolPrecision:
        cached = self.precisions.get(symbol)
        if cached is None:
            cached = await self.exchange.get_symbol_precision(symbol)
            self.precisions[symbol] = cached
        return cached

    async def query_position(self, symbol: str) -> ExchangePosition | None:
        """Fresh exchange view of ``symbol``. Raises ``ExchangeError``."""
        return find_position(await self.exchange.get_positions(symbol), symbol)

    async def cancel_all(self, symbol: str) -> bool:
        try:
            await self.exchange.cancel_all_orders(symbol)
        except ExchangeError as exc:
            self.logger.warning("cancel_all_failed", symbol=symbol, error=str(exc))
            return False
        return True

    def transition(self, position: Position, to_phase: PositionPhase, **fields: Any) -> None:
        from_phase = position.phase.value
        position.phase = to_phase
        log_state_transition(
            self.logger,
            symbol=position.symbol,
            generation=position.generation,
            from_phase=from_phase,
            to_phase=to_phase.value,
            **fields,
        )

    def is_current(self, position: Position, *phases: PositionPhase) -> bool:
        """True while ``position`` is still the engine's position and in one of ``phases``."""
        return self.state.position is position and (not phases or position.phase in phases)

    def record(
        self,
        action: LogAction,
        *,
        symbol: str,
        side: Direction,
        price: float,
        quantity: float,
        pnl: float | None = None,
        reason: str | None = None,
    ) -> TradeLogEntry:
        """Append an audit entry to the trade log and the journal."""
        entry = TradeLogEntry(
            id=str(next(self._ids)),
            timestamp=self.iso_now(),
            symbol=symbol,
            action=action,
            side=side,
            price=price,
            quantity=quantity,
            pnl=pnl,
            reason=reason,
        )
        self.state.trade_log.append(entry)
        if self.journal is not None:
            payload = {
                "id": entry.id,
                "symbol": symbol,
                "side": side,
                "price": price,
                "quantity": quantity,
                "pnl": pnl,
                "reason": reason,
            }
            self.journal.append(action, payload)
        return entry

    def alert(self, message: str, **fields: Any) -> None:
        self.logger.error("engine_alert", message=message, **fields)
        if self.journal is not None:
            self.journal.append("alert", {"message": message, **fields})
        for callback in list(self.alert_callbacks):
            try:
                callback(message)
            except Exception as exc:  # noqa: BLE001 - a listener must not break the engine.
                self.logger.warning("alert_callback_failed", error=str(exc))

    def emit_trade_completed(self, trade: TradeRecord) -> None:
        for callback in list(self.trade_callbacks):
            try:
                callback(trade)
            except Exception as exc:  # noqa: BLE001 - a listener must not break the engine.
                self.logger.warning("trade_callback_failed", error=str(exc))
