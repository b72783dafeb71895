"""Trading session: wires market data, signals, exchange and engine together."""

from __future__ import annotations

import asyncio
import contextlib

from binance import AsyncClient  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]

from scalp_engine.config import Settings
from scalp_engine.engine.core import TradingEngine
from scalp_engine.exchange.base import ExchangeError, ExchangeGateway
from scalp_engine.exchange.binance import BinanceFuturesGateway
from scalp_engine.exchange.paper import PaperExchange
from scalp_engine.journal.store import JournalStore
from scalp_engine.market.candles import klines_to_frame
from scalp_engine.market.feed import MarketDataFeed
from scalp_engine.policy import TradingPolicy, get_policy
from scalp_engine.signals import (
    ConsecutiveCandleFilter,
    EntryFilter,
    OrderBookWallFilter,
    SignalEvaluator,
    apply_filters,
    build_evaluator,
)
from scalp_engine.types import Candle, OrderBookSnapshot
from scalp_engine.utils.logging import get_logger

_HISTORY_LIMIT = 200


class TradingSession:
    """Market listener that evaluates signals on closed candles and drives the engine."""

    def __init__(
        self,
        settings: Settings,
        engine: TradingEngine,
        evaluator: SignalEvaluator,
        *,
        filters: list[EntryFilter] | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.evaluator = evaluator
        self.filters = filters if filters is not None else [ConsecutiveCandleFilter(), OrderBookWallFilter()]
        self.feed: MarketDataFeed | None = None
        self._paper: PaperExchange | None = None
        self._logger = get_logger("scalp_engine.session")
        self._stopped = asyncio.Event()

    def attach_paper(self, paper: PaperExchange) -> None:
        """Route stream prices into the paper venue so its limit orders can fill."""
        self._paper = paper

    # ---- MarketListener ----

    async def on_tick(self, symbol: str, price: float) -> None:
        if self._paper is not None:
            self._paper.set_mark_price(symbol, price)
        await self.engine.on_tick(symbol, price)

    def on_book(self, book: OrderBookSnapshot) -> None:
        self.engine.on_book(book)

    def set_market_connected(self, connected: bool) -> None:
        self.engine.set_market_connected(connected)

    async def on_candle_close(self, symbol: str, candle: Candle) -> None:
        await self.engine.on_candle_close(symbol, candle)
        if self.feed is None:
            return
        candles = self.feed.buffers[symbol].frame()
        book = self.feed.books.get(symbol)
        candidate = self.evaluator.evaluate(symbol, candles, book)
        if candidate is None:
            return
        blocked = apply_filters(self.filters, candidate, candles, book)
        if blocked is not None:
            self._logger.info("signal_filtered", symbol=symbol, direction=candidate.direction, reason=blocked)
            return
        await self.engine.on_signal(candidate)

    # ---- lifecycle ----

    def stop(self) -> None:
        self._stopped.set()

    async def run(self, client: AsyncClient) -> None:
        """Run until ``stop()`` is called or the task is cancelled."""
        symbols = self.settings.symbols
        self.feed = MarketDataFeed(client, symbols, self, interval=self.settings.kline_interval)
        for symbol in symbols:
            await self._seed_history(client, symbol)

        self.engine.restore_from_journal()
        await self.engine.refresh_balance()
        await self.engine.sync_from_exchange(symbols)

        feed_task = asyncio.create_task(self.feed.run(), name="market-feed")
        heartbeat_task = asyncio.create_task(self._heartbeat(), name="heartbeat")
        try:
            await self._stopped.wait()
        finally:
            self.feed.stop()
            for task in (feed_task, heartbeat_task):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self.engine.shutdown()

    async def _seed_history(self, client: AsyncClient, symbol: str) -> None:
        assert self.feed is not None
        try:
            rows = await client.futures_klines(symbol=symbol, interval=self.settings.kline_interval, limit=_HISTORY_LIMIT)
        except (BinanceAPIException, BinanceRequestException, OSError) as exc:
            self._logger.warning("history_seed_failed", symbol=symbol, error=str(exc))
            return
        # the last REST row is the candle still in progress
        if len(rows) > 1:
            self.feed.buffers[symbol].seed(klines_to_frame(rows[:-1]))

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_sec)
            try:
                await self.engine.heartbeat()
            except ExchangeError as exc:
                self._logger.warning("heartbeat_failed", error=str(exc))


async def open_exchange(settings: Settings) -> tuple[ExchangeGateway, AsyncClient, PaperExchange | None]:
    """Exchange gateway for the configured mode plus the client used for market data."""
    if settings.is_paper_mode:
        client = await AsyncClient.create(testnet=settings.binance_testnet)
        paper = PaperExchange(balance=settings.paper_initial_balance, state_dir=settings.journal_dir)
        return paper, client, paper
    gateway = await BinanceFuturesGateway.create(settings)
    return gateway, gateway.client, None


def build_engine(settings: Settings, exchange: ExchangeGateway, policy: TradingPolicy | None = None) -> TradingEngine:
    return TradingEngine(
        exchange,
        policy or get_policy(settings.policy_preset),
        journal=JournalStore(settings.journal_dir),
        stats_timezone=settings.stats_timezone,
    )


async def run_session(settings: Settings, *, enable: bool = True, policy: TradingPolicy | None = None) -> None:
    """Open the exchange, run a session until cancelled, then release everything."""
    logger = get_logger("scalp_engine.session")
    exchange, client, paper = await open_exchange(settings)
    engine = build_engine(settings, exchange, policy)
    session = TradingSession(settings, engine, build_evaluator(settings.strategy))
    if paper is not None:
        session.attach_paper(paper)
    if enable:
        await engine.toggle_engine()
    logger.info(
        "session_started",
        mode=settings.mode.value,
        symbols=settings.symbols,
        preset=engine.policy.name,
        strategy=settings.strategy,
    )
    try:
        await session.run(client)
    finally:
        await exchange.close()
        if paper is not None:
            await client.close_connection()
        logger.info("session_stopped", stats=engine.state.today_stats)
