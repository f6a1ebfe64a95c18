"""Named asyncio timers owned by one component.

Every interval, debounce and fire-and-forget task a component starts is
registered here so ``cancel_all()`` on stop leaves nothing behind. A timer
callback may safely cancel or replace its own timer (e.g. a heartbeat that
detects connection loss and reinitializes every timer): the running callback
finishes, and its loop exits because it is no longer the registered handle.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class Timers:
    """Registry of named interval/debounce tasks plus tracked one-off tasks."""

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._timers: dict[str, asyncio.Task] = {}
        self._spawned: set[asyncio.Task] = set()

    def every(self, name: str, interval: float, callback: TimerCallback) -> None:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        self.cancel(name)
        self._timers[name] = asyncio.create_task(
            self._run_every(name, interval, callback), name=f"{self._owner}:{name}"
        )

    def after(self, name: str, delay: float, callback: TimerCallback) -> None:
        """Run ``callback`` once after ``delay``; rescheduling restarts the delay."""
        self.cancel(name)
        self._timers[name] = asyncio.create_task(
            self._run_after(name, delay, callback), name=f"{self._owner}:{name}"
        )

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Start a tracked one-off task. Not cancelled by ``cancel_all``."""
        task = asyncio.create_task(coro)
        self._spawned.add(task)
        task.add_done_callback(self._spawned.discard)
        return task

    def is_scheduled(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    def cancel(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)

    async def drain(self) -> None:
        """Wait for in-flight one-off tasks to run to completion."""
        while self._spawned:
            await asyncio.gather(*list(self._spawned), return_exceptions=True)

    def _owns(self, name: str) -> bool:
        return self._timers.get(name) is asyncio.current_task()

    async def _run_every(self, name: str, interval: float, callback: TimerCallback) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._invoke(name, callback)
            if not self._owns(name):
                return

    async def _run_after(self, name: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if self._owns(name):
            del self._timers[name]
        await self._invoke(name, callback)

    async def _invoke(self, name: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception:
            logger.exception("Timer %s:%s failed", self._owner, name)
