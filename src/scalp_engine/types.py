"""Shared domain types for the order-lifecycle engine."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Direction = Literal["long", "short"]
Strength = Literal["weak", "medium", "strong"]
OrderSide = Literal["BUY", "SELL"]
OrderStatus = Literal["NEW", "PARTIALLY_FILLED", "FILLED", "CANCELED"]
LogAction = Literal[
    "order",
    "fill",
    "cancel",
    "tp",
    "sl",
    "timeout",
    "emergency",
    "manual",
    "error",
]

_STRENGTH_RANK = {"weak": 0, "medium": 1, "strong": 2}


class PositionPhase(str, Enum):
    """Lifecycle phase of the single position owned by an engine."""

    ORDERING = "ordering"
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionPhase.CLOSED, PositionPhase.ABORTED)


class ExitReason(str, Enum):
    """Why a position was closed."""

    TP = "tp"
    SL = "sl"
    TIMEOUT = "timeout"
    EMERGENCY = "emergency"
    MANUAL = "manual"


def direction_sign(direction: Direction) -> int:
    return 1 if direction == "long" else -1


def entry_side(direction: Direction) -> OrderSide:
    return "BUY" if direction == "long" else "SELL"


def exit_side(direction: Direction) -> OrderSide:
    return "SELL" if direction == "long" else "BUY"


def strength_at_least(strength: Strength, minimum: Strength) -> bool:
    return _STRENGTH_RANK[strength] >= _STRENGTH_RANK[minimum]


@dataclass(slots=True)
class SymbolPrecision:
    """Exchange trading rules for one symbol."""

    symbol: str
    tick_size: float
    step_size: float
    min_notional: float
    price_precision: int = 8
    quantity_precision: int = 8
    min_qty: float = 0.0


@dataclass(slots=True)
class OrderAck:
    """Exchange acknowledgement of an order. A hint, never proof of a fill."""

    order_id: str
    executed_qty: float = 0.0
    avg_price: float = 0.0
    status: str = "NEW"


@dataclass(slots=True)
class OpenOrder:
    """A resting order as reported by the exchange."""

    order_id: str
    symbol: str
    side: OrderSide
    price: float
    quantity: float
    executed_qty: float = 0.0
    reduce_only: bool = False


@dataclass(slots=True)
class ExchangePosition:
    """Position as reported by the exchange (the source of truth)."""

    symbol: str
    quantity_signed: float
    entry_price: float
    mark_price: float

    @property
    def quantity(self) -> float:
        return abs(self.quantity_signed)

    @property
    def direction(self) -> Direction | None:
        if self.quantity_signed > 0:
            return "long"
        if self.quantity_signed < 0:
            return "short"
        return None


@dataclass(slots=True)
class Candle:
    """One kline as pushed by the market-data stream."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    closed: bool = True


@dataclass(slots=True)
class OrderBookSnapshot:
    """Top of book plus depth for one symbol."""

    symbol: str
    best_bid: float
    best_ask: float
    bids: list[tuple[float, float]] = field(default_factory=list)
    asks: list[tuple[float, float]] = field(default_factory=list)
    updated_at: float = 0.0

    @property
    def mid(self) -> float:
        return (self.best_bid + self.best_ask) / 2.0

    def imbalance(self, levels: int = 10) -> float:
        """Bid/ask volume imbalance in [-1, 1]; positive means bid heavy."""
        bid_volume = sum(qty for _, qty in self.bids[:levels])
        ask_volume = sum(qty for _, qty in self.asks[:levels])
        total = bid_volume + ask_volume
        if total <= 0:
            return 0.0
        return (bid_volume - ask_volume) / total


@dataclass(slots=True)
class SignalCandidate:
    """Directional trade candidate produced by a signal evaluator."""

    symbol: str
    direction: Direction
    strength: Strength
    price: float
    score: float = 0.0
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PendingSignal:
    """A signal waiting for candle confirmation before entry."""

    symbol: str
    direction: Direction
    strength: Strength
    detected_price: float
    detected_at: float
    wait_count: int = 0
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EntryOrder:
    """One clip of a planned entry or exit quantity."""

    order_id: str
    price: float
    quantity: float
    filled_quantity: float = 0.0
    status: OrderStatus = "NEW"
    placed_at: float = 0.0

    @property
    def remaining(self) -> float:
        return max(0.0, self.quantity - self.filled_quantity)


@dataclass(slots=True)
class ExitFill:
    """A realized reduction of the open quantity."""

    quantity: float
    price: float
    fee_rate: float
    kind: Literal["market", "limit"] = "market"


@dataclass(slots=True)
class Position:
    """The single position owned by an engine, from ordering to close."""

    symbol: str
    side: Direction
    generation: int
    total_planned_quantity: float
    start_time: float
    leverage: int = 1
    entries: list[EntryOrder] = field(default_factory=list)
    phase: PositionPhase = PositionPhase.ORDERING
    avg_fill_price: float | None = None
    filled_quantity: float = 0.0
    open_quantity: float = 0.0
    activated_at: float | None = None
    stop_loss_price: float | None = None
    take_profit_orders: list[EntryOrder] = field(default_factory=list)
    is_low_fill_breakeven: bool = False
    deferred_quantity: float = 0.0
    peak_pnl_pct: float = 0.0
    exit_fills: list[ExitFill] = field(default_factory=list)
    fill_checks_done: set[str] = field(default_factory=set)
    query_failures: int = 0
    exit_failures: int = 0

    @property
    def is_open(self) -> bool:
        return self.phase in (PositionPhase.ACTIVE, PositionPhase.CLOSING)

    @property
    def resting_quantity(self) -> float:
        """Quantity sent as limit entry clips."""
        return sum(entry.quantity for entry in self.entries)

    def record_fill(self, quantity: float, avg_price: float) -> None:
        """Apply an exchange-reported cumulative fill."""
        if quantity <= 0 or avg_price <= 0:
            raise ValueError("fill_must_be_positive")
        if quantity < self.filled_quantity:
            raise ValueError("filled_quantity_cannot_decrease")
        if quantity > self.total_planned_quantity:
            raise ValueError("filled_quantity_exceeds_plan")
        self.filled_quantity = quantity
        self.open_quantity = quantity - self.exited_quantity
        self.avg_fill_price = avg_price

    def set_initial_stop(self, price: float) -> None:
        if self.stop_loss_price is not None:
            raise RuntimeError("stop_loss_already_set")
        if price <= 0:
            raise ValueError("stop_loss_must_be_positive")
        self.stop_loss_price = price

    def tighten_stop(self, price: float) -> bool:
        """Move the stop in the favourable direction only. Returns True on change."""
        if self.stop_loss_price is None:
            return False
        improved = price > self.stop_loss_price if self.side == "long" else price < self.stop_loss_price
        if improved:
            self.stop_loss_price = price
        return improved

    def is_stop_hit(self, price: float) -> bool:
        if self.stop_loss_price is None:
            return False
        if self.side == "long":
            return price <= self.stop_loss_price
        return price >= self.stop_loss_price

    def pnl_pct(self, price: float) -> float:
        """Raw price move in percent, signed by side."""
        if not self.avg_fill_price:
            return 0.0
        move = (price - self.avg_fill_price) * direction_sign(self.side)
        return move / self.avg_fill_price * 100.0

    def unrealized_pnl(self, price: float) -> float:
        """Unrealized PnL of the open quantity in quote currency (gross)."""
        if not self.avg_fill_price:
            return 0.0
        return (price - self.avg_fill_price) * direction_sign(self.side) * self.open_quantity

    @property
    def exited_quantity(self) -> float:
        return sum(fill.quantity for fill in self.exit_fills)


@dataclass(slots=True)
class DailyStats:
    """Per-day trade aggregates."""

    day: str
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0

    def record(self, pnl: float) -> None:
        self.trades += 1
        if pnl > 0:
            self.wins += 1
        else:
            self.losses += 1
        self.total_pnl += pnl

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0


@dataclass(slots=True)
class RiskCheckResult:
    """Outcome of the daily risk guards."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)
    cooldown_until: float | None = None


@dataclass(frozen=True, slots=True)
class TradeLogEntry:
    """Immutable audit record of one state transition."""

    id: str
    timestamp: str
    symbol: str
    action: LogAction
    side: Direction
    price: float
    quantity: float
    pnl: float | None = None
    reason: str | None = None


class TradeLog:
    """Bounded in-memory view of the audit trail, oldest first."""

    def __init__(self, limit: int = 200) -> None:
        self._entries: deque[TradeLogEntry] = deque(maxlen=limit)

    def append(self, entry: TradeLogEntry) -> None:
        self._entries.append(entry)

    def recent(self, limit: int | None = None) -> list[TradeLogEntry]:
        """Newest first."""
        items = list(reversed(self._entries))
        return items if limit is None else items[:limit]

    def actions(self) -> list[str]:
        return [entry.action for entry in self._entries]

    def __iter__(self) -> Iterator[TradeLogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(slots=True)
class TradeRecord:
    """Completed trade as persisted by the journal."""

    symbol: str
    side: Direction
    entry_price: float
    exit_price: float
    quantity: float
    leverage: int
    realized_pnl: float
    fees: float
    reason: str
    opened_at: str
    closed_at: str


@dataclass(slots=True)
class EngineSnapshot:
    """Read-only view of engine state for the UI layer."""

    enabled: bool
    processing: bool
    market_connected: bool
    pending_signal: PendingSignal | None
    position: Position | None
    today_stats: DailyStats
    trade_log: list[TradeLogEntry]
    status_message: str
