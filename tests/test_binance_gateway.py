from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import pytest

from scalp_engine.exchange.base import ExchangeError
from scalp_engine.exchange.binance import BinanceFuturesGateway, parse_symbol_precision

SYMBOL_INFO = {
    "symbol": "BTCUSDT",
    "pricePrecision": 2,
    "quantityPrecision": 3,
    "filters": [
        {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
        {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
        {"filterType": "MIN_NOTIONAL", "notional": "100"},
    ],
}


class StubClient:
    def __init__(self) -> None:
        self.orders: list[dict[str, Any]] = []
        self.disconnect_on: set[str] = set()

    async def futures_exchange_info(self) -> dict[str, Any]:
        return {"symbols": [SYMBOL_INFO]}

    async def futures_create_order(self, **params: Any) -> dict[str, Any]:
        if "futures_create_order" in self.disconnect_on:
            raise aiohttp.ServerDisconnectedError()
        self.orders.append(params)
        return {"orderId": 42, "executedQty": params["quantity"], "avgPrice": "50000.5", "status": "FILLED"}

    async def futures_cancel_all_open_orders(self, **params: Any) -> dict[str, Any]:
        raise aiohttp.ClientConnectionError("connection reset")


def test_parse_symbol_precision() -> None:
    precision = parse_symbol_precision(SYMBOL_INFO)
    assert precision.tick_size == pytest.approx(0.1)
    assert precision.step_size == pytest.approx(0.001)
    assert precision.min_notional == pytest.approx(100.0)
    assert precision.min_qty == pytest.approx(0.001)


def test_market_order_params_and_ack() -> None:
    async def scenario() -> None:
        client = StubClient()
        gateway = BinanceFuturesGateway(client)
        ack = await gateway.place_market_order("BTCUSDT", "SELL", 0.0126, reduce_only=True)

        [params] = client.orders
        assert params["type"] == "MARKET"
        assert params["quantity"] == "0.013"
        assert params["reduceOnly"] == "true"
        assert ack.order_id == "42"
        assert ack.avg_price == pytest.approx(50_000.5)

    asyncio.run(scenario())


def test_transport_errors_become_exchange_errors() -> None:
    async def scenario() -> None:
        client = StubClient()
        gateway = BinanceFuturesGateway(client)

        with pytest.raises(ExchangeError) as cancel_error:
            await gateway.cancel_all_orders("BTCUSDT")
        assert cancel_error.value.code is None

        client.disconnect_on.add("futures_create_order")
        with pytest.raises(ExchangeError):
            await gateway.place_market_order("BTCUSDT", "BUY", 0.01)

    asyncio.run(scenario())
