"""Binance USD-M futures gateway on top of python-binance's AsyncClient."""

from __future__ import annotations

from typing import Any

import aiohttp
from binance import AsyncClient  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from scalp_engine.config import Settings
from scalp_engine.exchange.base import ExchangeError
from scalp_engine.types import ExchangePosition, OpenOrder, OrderAck, OrderSide, SymbolPrecision
from scalp_engine.utils.logging import get_logger


def _is_transient(exc: BaseException) -> bool:
    """Network-level failures carry no venue code and are safe to retry for reads."""
    return isinstance(exc, ExchangeError) and exc.code is None


_read_retry = retry(
    retry=retry_if_exception(_is_transient),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=stop_after_attempt(3),
    reraise=True,
)


def _format_number(value: float, decimals: int) -> str:
    text = f"{value:.{decimals}f}"
    return text.rstrip("0").rstrip(".") if "." in text else text


def parse_symbol_precision(symbol_info: dict[str, Any]) -> SymbolPrecision:
    """Extract tick/step/min-notional from one ``exchangeInfo`` symbol entry."""
    filters = {item["filterType"]: item for item in symbol_info.get("filters", [])}
    price_filter = filters.get("PRICE_FILTER", {})
    lot_filter = filters.get("LOT_SIZE", {})
    notional_filter = filters.get("MIN_NOTIONAL", {})
    return SymbolPrecision(
        symbol=symbol_info["symbol"],
        tick_size=float(price_filter.get("tickSize", 0.01)),
        step_size=float(lot_filter.get("stepSize", 0.001)),
        min_notional=float(notional_filter.get("notional", notional_filter.get("minNotional", 5.0))),
        price_precision=int(symbol_info.get("pricePrecision", 8)),
        quantity_precision=int(symbol_info.get("quantityPrecision", 8)),
        min_qty=float(lot_filter.get("minQty", 0.0)),
    )


class BinanceFuturesGateway:
    """Order and position calls against Binance USD-M futures."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client
        self._logger = get_logger("scalp_engine.exchange.binance")
        self._precision_cache: dict[str, SymbolPrecision] = {}

    @classmethod
    async def create(cls, settings: Settings) -> "BinanceFuturesGateway":
        client = await AsyncClient.create(
            api_key=settings.binance_api_key or None,
            api_secret=settings.binance_api_secret or None,
            testnet=settings.binance_testnet,
        )
        return cls(client)

    @property
    def client(self) -> AsyncClient:
        return self._client

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderAck:
        precision = await self.get_symbol_precision(symbol)
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": "MARKET",
            "quantity": _format_number(quantity, precision.quantity_precision),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        payload = await self._call("futures_create_order", **params)
        return _to_ack(payload)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
        reduce_only: bool = False,
    ) -> OrderAck:
        precision = await self.get_symbol_precision(symbol)
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": _format_number(quantity, precision.quantity_precision),
            "price": _format_number(price, precision.price_precision),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        payload = await self._call("futures_create_order", **params)
        return _to_ack(payload)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._call("futures_cancel_order", symbol=symbol, orderId=int(order_id))

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._call("futures_cancel_all_open_orders", symbol=symbol)

    @_read_retry
    async def get_open_orders(self, symbol: str) -> list[OpenOrder]:
        rows = await self._call("futures_get_open_orders", symbol=symbol)
        return [
            OpenOrder(
                order_id=str(row["orderId"]),
                symbol=row["symbol"],
                side=row["side"],
                price=float(row.get("price", 0.0)),
                quantity=float(row.get("origQty", 0.0)),
                executed_qty=float(row.get("executedQty", 0.0)),
                reduce_only=bool(row.get("reduceOnly", False)),
            )
            for row in rows
        ]

    @_read_retry
    async def get_positions(self, symbol: str | None = None) -> list[ExchangePosition]:
        params = {"symbol": symbol} if symbol else {}
        rows = await self._call("futures_position_information", **params)
        positions = []
        for row in rows:
            amount = float(row.get("positionAmt", 0.0))
            if amount == 0:
                continue
            positions.append(
                ExchangePosition(
                    symbol=row["symbol"],
                    quantity_signed=amount,
                    entry_price=float(row.get("entryPrice", 0.0)),
                    mark_price=float(row.get("markPrice", 0.0)),
                )
            )
        return positions

    @_read_retry
    async def get_symbol_precision(self, symbol: str) -> SymbolPrecision:
        cached = self._precision_cache.get(symbol)
        if cached is not None:
            return cached
        info = await self._call("futures_exchange_info")
        for entry in info.get("symbols", []):
            self._precision_cache[entry["symbol"]] = parse_symbol_precision(entry)
        if symbol not in self._precision_cache:
            raise ExchangeError(f"unknown_symbol: {symbol}", -1121)
        return self._precision_cache[symbol]

    async def set_leverage(self, symbol: str, leverage: int) -> int:
        try:
            payload = await self._call("futures_change_leverage", symbol=symbol, leverage=leverage)
        except ExchangeError as exc:
            if exc.is_already_set:
                return leverage
            raise
        return int(payload.get("leverage", leverage))

    @_read_retry
    async def get_balance(self, asset: str = "USDT") -> float:
        rows = await self._call("futures_account_balance")
        for row in rows:
            if row.get("asset") == asset:
                return float(row.get("availableBalance", row.get("balance", 0.0)))
        return 0.0

    async def close(self) -> None:
        await self._client.close_connection()

    async def _call(self, method: str, **params: Any) -> Any:
        try:
            return await getattr(self._client, method)(**params)
        except BinanceAPIException as exc:
            self._logger.warning("binance_api_error", method=method, code=exc.code, error=exc.message)
            raise ExchangeError(str(exc.message), int(exc.code)) from exc
        except (BinanceRequestException, aiohttp.ClientError, OSError, TimeoutError) as exc:
            self._logger.warning("binance_request_error", method=method, error=str(exc))
            raise ExchangeError(str(exc)) from exc


def _to_ack(payload: dict[str, Any]) -> OrderAck:
    return OrderAck(
        order_id=str(payload.get("orderId", "")),
        executed_qty=float(payload.get("executedQty", 0.0) or 0.0),
        avg_price=float(payload.get("avgPrice", 0.0) or 0.0),
        status=str(payload.get("status", "NEW")),
    )
