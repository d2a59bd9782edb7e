from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

log = logging.getLogger("trustloop.scheduler")

TickCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    interval: float

    def cancel(self) -> None:
        ...

    @property
    def cancelled(self) -> bool:
        ...


class Scheduler(Protocol):
    def call_every(self, interval: float, callback: TickCallback, *, name: str = "") -> TimerHandle:
        """Run callback every `interval` seconds until the handle is cancelled."""
        ...


class RecurringTimer:
    """
    One recurring timer. The next firing is armed only after the previous
    callback finished, so a timer never overlaps itself. cancel() stops
    re-arming; a callback already running is left to complete.
    """

    def __init__(self, interval: float, callback: TickCallback, *, name: str = "", loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._loop = loop or asyncio.get_running_loop()
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self.fired = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> "RecurringTimer":
        self._arm()
        return self

    def _arm(self) -> None:
        if self._cancelled or self._loop.is_closed():
            return
        self._handle = self._loop.call_later(self.interval, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._cancelled:
            return
        self.fired += 1
        self._task = self._loop.create_task(self._run(), name=f"tick:{self.name}")

    async def _run(self) -> None:
        try:
            await self.callback()
        except Exception:
            log.exception("timer callback failed name=%s", self.name)
        finally:
            self._task = None
            self._arm()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler:
    """Scheduler backed by the running event loop's call_later."""

    def __init__(self) -> None:
        self.timers: Set[RecurringTimer] = set()

    def call_every(self, interval: float, callback: TickCallback, *, name: str = "") -> RecurringTimer:
        timer = RecurringTimer(interval, callback, name=name).start()
        self.timers = {t for t in self.timers if not t.cancelled}
        self.timers.add(timer)
        return timer

    async def drain(self) -> None:
        """Wait for callbacks that are mid-flight, e.g. on shutdown."""
        pending = [t._task for t in self.timers if t._task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
