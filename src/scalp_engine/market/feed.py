"""Futures market-data stream: book ticker, depth and klines per symbol."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import aiohttp
from binance import AsyncClient, BinanceSocketManager  # type: ignore[import-untyped]
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from scalp_engine.market.candles import CandleBuffer
from scalp_engine.types import Candle, OrderBookSnapshot
from scalp_engine.utils.logging import get_logger

_STREAM_ERRORS = (ConnectionError, OSError, asyncio.TimeoutError, aiohttp.ClientError)


class MarketListener(Protocol):
    async def on_tick(self, symbol: str, price: float) -> None: ...

    def on_book(self, book: OrderBookSnapshot) -> None: ...

    async def on_candle_close(self, symbol: str, candle: Candle) -> None: ...

    def set_market_connected(self, connected: bool) -> None: ...


def parse_book_ticker(data: dict[str, Any]) -> tuple[str, float, float]:
    """``<symbol>@bookTicker`` payload to (symbol, best_bid, best_ask)."""
    return data["s"], float(data["b"]), float(data["a"])


def parse_depth(data: dict[str, Any], now: float) -> OrderBookSnapshot:
    """Partial depth payload to a book snapshot."""
    bids = [(float(price), float(qty)) for price, qty in data.get("b", [])]
    asks = [(float(price), float(qty)) for price, qty in data.get("a", [])]
    return OrderBookSnapshot(
        symbol=data["s"],
        best_bid=bids[0][0] if bids else 0.0,
        best_ask=asks[0][0] if asks else 0.0,
        bids=bids,
        asks=asks,
        updated_at=now,
    )


def parse_kline(data: dict[str, Any]) -> tuple[str, Candle]:
    """``<symbol>@kline_<interval>`` payload to (symbol, candle)."""
    k = data["k"]
    return data["s"], Candle(
        open_time=int(k["t"]),
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=float(k["c"]),
        volume=float(k["v"]),
        closed=bool(k["x"]),
    )


def stream_names(symbols: list[str], interval: str) -> list[str]:
    names = []
    for symbol in symbols:
        lower = symbol.lower()
        names.extend([f"{lower}@bookTicker", f"{lower}@depth10@100ms", f"{lower}@kline_{interval}"])
    return names


class MarketDataFeed:
    """Consumes the multiplexed futures stream and forwards parsed events.

    Reconnects with exponential backoff; the listener is told about every
    connect and disconnect so it can stop new entries while blind.
    """

    def __init__(
        self,
        client: AsyncClient,
        symbols: list[str],
        listener: MarketListener,
        *,
        interval: str = "1m",
        buffer_size: int = 500,
    ) -> None:
        self._client = client
        self._symbols = symbols
        self._listener = listener
        self._interval = interval
        self._logger = get_logger("scalp_engine.market.feed")
        self._stopped = asyncio.Event()
        self.buffers = {symbol: CandleBuffer(symbol, buffer_size) for symbol in symbols}
        self.books: dict[str, OrderBookSnapshot] = {}

    def stop(self) -> None:
        self._stopped.set()

    async def run(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_STREAM_ERRORS),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            before_sleep=self._before_retry,
        ):
            with attempt:
                await self._consume()

    async def _consume(self) -> None:
        manager = BinanceSocketManager(self._client)
        socket = manager.futures_multiplex_socket(stream_names(self._symbols, self._interval))
        try:
            async with socket as stream:
                self._listener.set_market_connected(True)
                self._logger.info("market_stream_connected", symbols=self._symbols)
                while not self._stopped.is_set():
                    message = await stream.recv()
                    if not message:
                        continue
                    if message.get("e") == "error":
                        raise ConnectionError(str(message.get("m", "stream_error")))
                    await self.dispatch(message)
        finally:
            self._listener.set_market_connected(False)

    async def dispatch(self, message: dict[str, Any]) -> None:
        """Route one stream message to the listener."""
        data = message.get("data", message)
        event = data.get("e")
        if event == "bookTicker":
            symbol, bid, ask = parse_book_ticker(data)
            book = self.books.get(symbol)
            if book is None:
                book = OrderBookSnapshot(symbol=symbol, best_bid=bid, best_ask=ask)
                self.books[symbol] = book
            else:
                book.best_bid, book.best_ask = bid, ask
            book.updated_at = time.time()
            self._listener.on_book(book)
            await self._listener.on_tick(symbol, book.mid)
        elif event == "depthUpdate":
            book = parse_depth(data, time.time())
            self.books[book.symbol] = book
            self._listener.on_book(book)
        elif event == "kline":
            symbol, candle = parse_kline(data)
            buffer = self.buffers.get(symbol)
            if buffer is None:
                return
            if buffer.update(candle):
                await self._listener.on_candle_close(symbol, candle)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.warning(
            "market_stream_reconnecting",
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
        )
