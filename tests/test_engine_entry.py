from __future__ import annotations

import asyncio

import pytest

from conftest import SYMBOL, EngineFactory, make_candidate
from scalp_engine.engine.entry import ENTRY_TIMER, STAGE_GRACE, STAGE_INITIAL
from scalp_engine.types import PositionPhase


def test_entry_places_split_limit_ladder(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        await engine.on_signal(make_candidate())

        position = engine.state.position
        assert position is not None
        assert position.phase == PositionPhase.WAITING
        assert position.total_planned_quantity == pytest.approx(0.19)
        assert [e.price for e in position.entries] == pytest.approx([50_000.0, 49_997.5, 49_995.0, 49_992.5, 49_990.0])
        assert len(exchange.open_order_ids(SYMBOL)) == 5
        assert exchange.leverage_for(SYMBOL) == 10
        assert engine.timers.is_active(ENTRY_TIMER)
        assert engine.state.trade_log.actions() == ["order"] * 5
        assert not engine.state.processing
        await engine.shutdown()

    asyncio.run(scenario())


def test_full_fill_activates_with_rounded_stop(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        exchange.set_mark_price(SYMBOL, 49_980.0)
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)

        assert position.phase == PositionPhase.ACTIVE
        assert position.filled_quantity == pytest.approx(0.19)
        assert position.avg_fill_price == pytest.approx(49_995.0)
        assert position.stop_loss_price == pytest.approx(49_920.01, abs=0.011)
        assert not position.is_low_fill_breakeven
        assert not engine.timers.is_active(ENTRY_TIMER)
        assert engine.state.trade_log.actions()[-1] == "fill"

        # a late or repeated timer is a no-op once active
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)
        await engine.entry.check_fill(position.generation, STAGE_GRACE)
        assert engine.state.trade_log.actions().count("fill") == 1
        await engine.shutdown()

    asyncio.run(scenario())


def test_no_fill_aborts_without_position(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        await engine.entry.check_fill(position.generation, STAGE_INITIAL)

        assert engine.state.position is None
        assert position.phase == PositionPhase.ABORTED
        assert exchange.open_order_ids(SYMBOL) == []
        last = engine.state.trade_log.recent(1)[0]
        assert last.action == "cancel"
        assert last.reason == "no fill"
        assert engine.timers.active == []
        await engine.shutdown()

    asyncio.run(scenario())


def test_partial_fill_waits_then_activates_as_low_fill(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        exchange.fill_order(position.entries[0].order_id)
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)
        assert position.phase == PositionPhase.WAITING
        assert engine.timers.is_active(ENTRY_TIMER)

        await engine.entry.check_fill(position.generation, STAGE_GRACE)
        assert position.phase == PositionPhase.ACTIVE
        assert position.filled_quantity == pytest.approx(0.038)
        assert position.is_low_fill_breakeven
        assert exchange.open_order_ids(SYMBOL) == []
        assert [e.status for e in position.entries] == ["FILLED"] + ["CANCELED"] * 4
        await engine.shutdown()

    asyncio.run(scenario())


def test_fill_found_after_cancel_is_activated(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        # the first query sees nothing; the fill lands while orders are being cancelled
        original = exchange.get_positions
        calls = {"n": 0}

        async def racing_positions(symbol: str | None = None):
            calls["n"] += 1
            if calls["n"] == 1:
                result = await original(symbol)
                exchange.fill_order(position.entries[0].order_id)
                return result
            return await original(symbol)

        exchange.get_positions = racing_positions  # type: ignore[method-assign]
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)
        assert position.phase == PositionPhase.ACTIVE
        assert position.filled_quantity == pytest.approx(0.038)
        await engine.shutdown()

    asyncio.run(scenario())


def test_stale_generation_is_ignored(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, _, _ = make_engine()
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        await engine.entry.check_fill(position.generation - 1, STAGE_INITIAL)
        await engine.entry.check_fill(position.generation, STAGE_GRACE)
        assert position.phase == PositionPhase.WAITING
        assert position.fill_checks_done == set()
        await engine.shutdown()

    asyncio.run(scenario())


def test_query_failures_retry_then_abort_with_alert(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine(max_query_retries=2)
        alerts: list[str] = []
        engine.on_alert(alerts.append)
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None

        exchange.inject_failure("get_positions", times=3)
        for _ in range(2):
            await engine.entry.check_fill(position.generation, STAGE_INITIAL)
            assert position.phase == PositionPhase.WAITING
            assert engine.timers.is_active(ENTRY_TIMER)
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)

        assert engine.state.position is None
        assert engine.state.trade_log.recent(1)[0].action == "error"
        assert exchange.open_order_ids(SYMBOL) == []
        assert len(alerts) == 1
        await engine.shutdown()

    asyncio.run(scenario())


def test_two_tranche_sends_deferred_half_at_market(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine("two_tranche")
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None
        assert len(position.entries) == 1
        assert position.entries[0].quantity == pytest.approx(0.095)
        assert position.deferred_quantity == pytest.approx(0.095)

        exchange.fill_order(position.entries[0].order_id)
        await engine.entry.check_fill(position.generation, STAGE_INITIAL)

        assert position.phase == PositionPhase.ACTIVE
        assert position.filled_quantity == pytest.approx(0.19)
        assert position.deferred_quantity == 0.0
        assert not position.is_low_fill_breakeven
        await engine.shutdown()

    asyncio.run(scenario())


def test_sizing_failure_discards_signal(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        engine.set_balance(0.01)
        await engine.on_signal(make_candidate())
        assert engine.state.position is None
        assert engine.state.generation == 0
        assert exchange.open_order_ids(SYMBOL) == []
        assert "discarded" in engine.state.status_message
        await engine.shutdown()

    asyncio.run(scenario())


def test_leverage_falls_back(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        exchange.inject_failure("set_leverage", times=1, message="max leverage exceeded", code=-4028)
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None
        assert position.leverage == 5
        assert position.total_planned_quantity == pytest.approx(0.095)
        await engine.shutdown()

    asyncio.run(scenario())


def test_rejected_clips_are_logged_and_skipped(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        exchange.inject_failure("place_limit_order", times=2)
        await engine.on_signal(make_candidate())
        position = engine.state.position
        assert position is not None
        assert len(position.entries) == 3
        assert engine.state.trade_log.actions().count("error") == 2
        await engine.shutdown()

    asyncio.run(scenario())


def test_all_clips_rejected_aborts(make_engine: EngineFactory) -> None:
    async def scenario() -> None:
        engine, exchange, _ = make_engine()
        exchange.inject_failure("place_limit_order", times=5)
        await engine.on_signal(make_candidate())
        assert engine.state.position is None
        assert engine.state.trade_log.recent(1)[0].reason == "no entry orders placed"
        await engine.shutdown()

    asyncio.run(scenario())
