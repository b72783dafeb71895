"""Exchange collaborator interface used by the engine."""

from __future__ import annotations

from typing import Protocol

from scalp_engine.types import ExchangePosition, OpenOrder, OrderAck, OrderSide, SymbolPrecision

# Binance USD-M codes that mean "nothing to do" rather than a failure.
_NO_CHANGE_CODES = {-4046, -4059}
_UNKNOWN_ORDER_CODE = -2011


class ExchangeError(Exception):
    """Any failed exchange call. ``code`` is the venue error code when known."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_already_set(self) -> bool:
        return self.code in _NO_CHANGE_CODES or "no need to change" in self.message.lower()

    @property
    def is_unknown_order(self) -> bool:
        return self.code == _UNKNOWN_ORDER_CODE or "unknown order" in self.message.lower()

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"[{self.code}] {self.message}"


class ExchangeGateway(Protocol):
    """Async futures exchange operations. Every method raises ``ExchangeError`` on failure."""

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderAck: ...

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        reduce_only: bool = False,
    ) -> OrderAck: ...

    async def cancel_order(self, symbol: str, order_id: str) -> None: ...

    async def cancel_all_orders(self, symbol: str) -> None: ...

    async def get_open_orders(self, symbol: str) -> list[OpenOrder]: ...

    async def get_positions(self, symbol: str | None = None) -> list[ExchangePosition]: ...

    async def get_symbol_precision(self, symbol: str) -> SymbolPrecision: ...

    async def set_leverage(self, symbol: str, leverage: int) -> int: ...

    async def get_balance(self, asset: str = "USDT") -> float: ...

    async def close(self) -> None: ...


def find_position(positions: list[ExchangePosition], symbol: str) -> ExchangePosition | None:
    """First non-flat position for ``symbol``."""
    for position in positions:
        if position.symbol == symbol and position.quantity > 0:
            return position
    return None
