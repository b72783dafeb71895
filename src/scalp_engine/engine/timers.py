"""Named one-shot timers on the running asyncio loop."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from scalp_engine.utils.logging import get_logger

TimerCallback = Callable[[], Awaitable[None]]


class TimerRegistry:
    """One pending handle per name; scheduling a name again replaces it.

    Callbacks run as tasks so a slow callback never blocks the loop's timer
    wheel. Callbacks must check their own generation; the registry only
    guarantees that a cancelled timer does not fire.
    """

    def __init__(self) -> None:
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = get_logger("scalp_engine.engine.timers")

    def schedule(self, name: str, delay: float, callback: TimerCallback) -> None:
        self.cancel(name)
        loop = asyncio.get_running_loop()
        self._handles[name] = loop.call_later(max(0.0, delay), self._fire, name, callback)

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)

    def is_active(self, name: str) -> bool:
        return name in self._handles

    @property
    def active(self) -> list[str]:
        return sorted(self._handles)

    async def drain(self) -> None:
        """Wait for callbacks that already fired."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _fire(self, name: str, callback: TimerCallback) -> None:
        self._handles.pop(name, None)
        task = asyncio.get_running_loop().create_task(callback(), name=f"timer:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("timer_callback_failed", timer=task.get_name(), error=str(exc), exc_info=exc)
