from __future__ import annotations

import asyncio

from scalp_engine.engine.timers import TimerRegistry


def test_timer_fires_once() -> None:
    async def scenario() -> list[str]:
        fired: list[str] = []
        timers = TimerRegistry()

        async def callback() -> None:
            fired.append("entry")

        timers.schedule("entry", 0.01, callback)
        assert timers.is_active("entry")
        await asyncio.sleep(0.05)
        await timers.drain()
        assert not timers.is_active("entry")
        return fired

    assert asyncio.run(scenario()) == ["entry"]


def test_rescheduling_replaces_and_cancel_prevents_firing() -> None:
    async def scenario() -> list[str]:
        fired: list[str] = []
        timers = TimerRegistry()

        def make(label: str):
            async def callback() -> None:
                fired.append(label)

            return callback

        timers.schedule("tp", 0.01, make("first"))
        timers.schedule("tp", 0.02, make("second"))
        timers.schedule("stop", 0.01, make("stop"))
        assert timers.active == ["stop", "tp"]
        assert timers.cancel("stop")
        assert not timers.cancel("stop")
        await asyncio.sleep(0.06)
        await timers.drain()
        return fired

    assert asyncio.run(scenario()) == ["second"]


def test_failing_callback_does_not_break_registry() -> None:
    async def scenario() -> bool:
        timers = TimerRegistry()

        async def boom() -> None:
            raise RuntimeError("boom")

        timers.schedule("bad", 0.0, boom)
        await asyncio.sleep(0.02)
        await timers.drain()
        timers.cancel_all()
        return timers.active == []

    assert asyncio.run(scenario())
