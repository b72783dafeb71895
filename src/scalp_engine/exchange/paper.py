"""Paper futures exchange: simulated fills, fees and slippage in memory."""

from __future__ import annotations

import itertools
import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from scalp_engine.exchange.base import ExchangeError
from scalp_engine.types import ExchangePosition, OpenOrder, OrderAck, OrderSide, SymbolPrecision

DEFAULT_PRECISION = SymbolPrecision(
    symbol="*",
    tick_size=0.01,
    step_size=0.001,
    min_notional=5.0,
    price_precision=2,
    quantity_precision=3,
)


@dataclass(slots=True)
class _PaperOrder:
    order_id: str
    symbol: str
    side: OrderSide
    price: float
    quantity: float
    reduce_only: bool
    executed_qty: float = 0.0

    @property
    def remaining(self) -> float:
        return self.quantity - self.executed_qty


@dataclass(slots=True)
class _PaperPosition:
    quantity_signed: float = 0.0
    entry_price: float = 0.0


@dataclass(slots=True)
class PaperFill:
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    fee: float
    order_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class PaperExchange:
    """Simulated USD-M futures venue.

    Limit orders rest until ``set_mark_price`` crosses them or ``fill_order``
    fills them explicitly. Market orders fill at the mark with slippage.
    """

    def __init__(
        self,
        *,
        balance: float = 1_000.0,
        slippage_bps: float = 0.0,
        maker_fee: float = 0.0002,
        taker_fee: float = 0.0005,
        max_leverage: int = 125,
        precisions: dict[str, SymbolPrecision] | None = None,
        state_dir: Path | None = None,
    ) -> None:
        self._slippage_bps = slippage_bps
        self._maker_fee = maker_fee
        self._taker_fee = taker_fee
        self._max_leverage = max_leverage
        self._precisions = dict(precisions or {})
        self._state_file = state_dir / "paper_state.json" if state_dir else None
        self._balance = self._load_balance(balance)
        self._orders: dict[str, _PaperOrder] = {}
        self._positions: dict[str, _PaperPosition] = defaultdict(_PaperPosition)
        self._marks: dict[str, float] = {}
        self._leverage: dict[str, int] = {}
        self._failures: dict[str, list[ExchangeError]] = defaultdict(list)
        self._ids = itertools.count(1)
        self.fills: list[PaperFill] = []
        self.calls: list[str] = []

    # ---- test and simulation hooks ----

    def inject_failure(self, method: str, times: int = 1, message: str = "simulated failure", code: int = -1000) -> None:
        """Make the next ``times`` calls of ``method`` raise ``ExchangeError``."""
        self._failures[method].extend(ExchangeError(message, code) for _ in range(times))

    def set_mark_price(self, symbol: str, price: float) -> None:
        """Move the mark and fill every resting limit order it crosses."""
        self._marks[symbol] = price
        for order in list(self._orders.values()):
            if order.symbol != symbol:
                continue
            crossed = price <= order.price if order.side == "BUY" else price >= order.price
            if crossed:
                self.fill_order(order.order_id)

    def fill_order(self, order_id: str, quantity: float | None = None) -> float:
        """Fill a resting order fully or partially at its limit price. Returns the filled quantity."""
        order = self._orders.get(order_id)
        if order is None:
            raise KeyError(order_id)
        qty = order.remaining if quantity is None else min(quantity, order.remaining)
        if order.reduce_only:
            qty = min(qty, self._reducible(order.symbol, order.side))
        if qty > 0:
            self._apply_fill(order.symbol, order.side, qty, order.price, self._maker_fee, order_id)
            order.executed_qty += qty
        if order.remaining <= 1e-12 or (order.reduce_only and self._reducible(order.symbol, order.side) <= 0):
            self._orders.pop(order_id, None)
        return qty

    def open_order_ids(self, symbol: str) -> list[str]:
        return [order.order_id for order in self._orders.values() if order.symbol == symbol]

    @property
    def balance(self) -> float:
        return self._balance

    def leverage_for(self, symbol: str) -> int | None:
        return self._leverage.get(symbol)

    # ---- ExchangeGateway ----

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderAck:
        self._enter("place_market_order")
        if quantity <= 0:
            raise ExchangeError("quantity_must_be_positive", -4003)
        mark = self._mark(symbol)
        if reduce_only:
            quantity = min(quantity, self._reducible(symbol, side))
            if quantity <= 0:
                raise ExchangeError("ReduceOnly Order is rejected.", -2022)
        slip = self._slippage_bps / 10_000.0
        price = mark * (1 + slip) if side == "BUY" else mark * (1 - slip)
        order_id = self._next_id()
        self._apply_fill(symbol, side, quantity, price, self._taker_fee, order_id)
        return OrderAck(order_id=order_id, executed_qty=quantity, avg_price=price, status="FILLED")

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        reduce_only: bool = False,
    ) -> OrderAck:
        self._enter("place_limit_order")
        if quantity <= 0 or price <= 0:
            raise ExchangeError("invalid_limit_order", -4003)
        if reduce_only and self._reducible(symbol, side) <= 0:
            raise ExchangeError("ReduceOnly Order is rejected.", -2022)
        order_id = self._next_id()
        self._orders[order_id] = _PaperOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
            reduce_only=reduce_only,
        )
        return OrderAck(order_id=order_id, status="NEW")

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        self._enter("cancel_order")
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise ExchangeError("Unknown order sent.", -2011)
        del self._orders[order_id]

    async def cancel_all_orders(self, symbol: str) -> None:
        self._enter("cancel_all_orders")
        for order_id in self.open_order_ids(symbol):
            del self._orders[order_id]

    async def get_open_orders(self, symbol: str) -> list[OpenOrder]:
        self._enter("get_open_orders")
        return [
            OpenOrder(
                order_id=order.order_id,
                symbol=order.symbol,
                side=order.side,
                price=order.price,
                quantity=order.quantity,
                executed_qty=order.executed_qty,
                reduce_only=order.reduce_only,
            )
            for order in self._orders.values()
            if order.symbol == symbol
        ]

    async def get_positions(self, symbol: str | None = None) -> list[ExchangePosition]:
        self._enter("get_positions")
        positions = []
        for sym, state in self._positions.items():
            if symbol is not None and sym != symbol:
                continue
            if abs(state.quantity_signed) <= 1e-12:
                continue
            positions.append(
                ExchangePosition(
                    symbol=sym,
                    quantity_signed=state.quantity_signed,
                    entry_price=state.entry_price,
                    mark_price=self._marks.get(sym, state.entry_price),
                )
            )
        return positions

    async def get_symbol_precision(self, symbol: str) -> SymbolPrecision:
        self._enter("get_symbol_precision")
        precision = self._precisions.get(symbol)
        if precision is not None:
            return precision
        return SymbolPrecision(
            symbol=symbol,
            tick_size=DEFAULT_PRECISION.tick_size,
            step_size=DEFAULT_PRECISION.step_size,
            min_notional=DEFAULT_PRECISION.min_notional,
            price_precision=DEFAULT_PRECISION.price_precision,
            quantity_precision=DEFAULT_PRECISION.quantity_precision,
        )

    async def set_leverage(self, symbol: str, leverage: int) -> int:
        self._enter("set_leverage")
        if leverage > self._max_leverage:
            raise ExchangeError("Leverage reduction is not supported", -4028)
        if self._leverage.get(symbol) == leverage:
            raise ExchangeError("No need to change leverage.", -4046)
        self._leverage[symbol] = leverage
        return leverage

    async def get_balance(self, asset: str = "USDT") -> float:
        self._enter("get_balance")
        return self._balance

    async def close(self) -> None:
        self._persist()

    # ---- internals ----

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self) -> str:
        return f"paper-{next(self._ids)}"

    def _mark(self, symbol: str) -> float:
        mark = self._marks.get(symbol)
        if mark is None:
            raise ExchangeError(f"no_mark_price_for_{symbol}")
        return mark

    def _reducible(self, symbol: str, side: OrderSide) -> float:
        held = self._positions[symbol].quantity_signed
        if side == "SELL" and held > 0:
            return held
        if side == "BUY" and held < 0:
            return -held
        return 0.0

    def _apply_fill(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        fee_rate: float,
        order_id: str,
    ) -> None:
        state = self._positions[symbol]
        signed = quantity if side == "BUY" else -quantity
        held = state.quantity_signed
        if held == 0 or (held > 0) == (signed > 0):
            total = abs(held) + quantity
            state.entry_price = (state.entry_price * abs(held) + price * quantity) / total
            state.quantity_signed = held + signed
        else:
            closed = min(abs(held), quantity)
            direction = 1 if held > 0 else -1
            self._balance += (price - state.entry_price) * direction * closed
            state.quantity_signed = held + signed
            if abs(state.quantity_signed) <= 1e-12:
                state.quantity_signed = 0.0
                state.entry_price = 0.0
            elif (state.quantity_signed > 0) != (held > 0):
                state.entry_price = price
        fee = price * quantity * fee_rate
        self._balance -= fee
        self.fills.append(PaperFill(symbol, side, quantity, price, fee, order_id))

    def _load_balance(self, initial: float) -> float:
        if self._state_file is None or not self._state_file.exists():
            return initial
        raw: dict[str, Any] = json.loads(self._state_file.read_text(encoding="utf-8"))
        return float(raw.get("balance", initial))

    def _persist(self) -> None:
        if self._state_file is None:
            return
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "balance": self._balance,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self._state_file.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
