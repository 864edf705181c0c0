"""
Scheduler — Timer abstraction for the trade lifecycle.

Every timer the lifecycle runs (countdown ticks, poll retries, catalog
refresh) goes through a ``Scheduler``:

    handle = scheduler.schedule(5.0, poll)   # fn may be sync or async
    scheduler.cancel(handle)                 # idempotent
    scheduler.now()                          # aware UTC datetime

Implementations:
  - ``AsyncioScheduler``: production — ``loop.call_later`` + tasks for
    coroutine callbacks, wall-clock ``now()``
  - ``ManualScheduler``: virtual time for tests and offline simulation —
    nothing fires until ``await advance(seconds)``

Owners keep the handles they create and cancel them on every phase exit.
Cancelling a handle whose callback is mid-flight also cancels its task.
"""

from __future__ import annotations

import abc
import asyncio
import heapq
import inspect
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
from uuid import uuid4

import structlog

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


@dataclass(eq=False)
class TimerHandle:
    """Opaque cancellation handle returned by ``Scheduler.schedule()``."""

    due: datetime
    callback: TimerCallback = field(repr=False)
    name: str = ""
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    cancelled: bool = False
    fired: bool = False
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        """True until the callback has fired or the handle was cancelled."""
        return not (self.cancelled or self.fired)


class Scheduler(abc.ABC):
    """Abstract timer service — swappable between real and virtual time."""

    @abc.abstractmethod
    def now(self) -> datetime: ...

    @abc.abstractmethod
    def schedule(
        self, delay: float, fn: TimerCallback, *, name: str = ""
    ) -> TimerHandle: ...

    @abc.abstractmethod
    def cancel(self, handle: TimerHandle | None) -> bool: ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  AsyncioScheduler — real time
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: set[TimerHandle] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def schedule(
        self, delay: float, fn: TimerCallback, *, name: str = ""
    ) -> TimerHandle:
        delay = max(0.0, delay)
        handle = TimerHandle(due=self.now() + timedelta(seconds=delay), callback=fn, name=name)
        handle._timer = self.loop.call_later(delay, self._fire, handle)
        self._handles.add(handle)
        return handle

    def cancel(self, handle: TimerHandle | None) -> bool:
        if handle is None or handle.cancelled:
            return False
        handle.cancelled = True
        if handle._timer is not None:
            handle._timer.cancel()
        task = handle._task
        # A callback may cancel its own handle while finishing a phase.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._handles.discard(handle)
        return True

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        handle.fired = True
        try:
            result = handle.callback()
        except Exception as exc:
            self._handles.discard(handle)
            logger.error("timer_callback_failed", timer=handle.name, error=str(exc))
            return
        if inspect.isawaitable(result):
            handle._task = asyncio.ensure_future(result, loop=self.loop)
            handle._task.add_done_callback(lambda t, h=handle: self._task_done(h, t))
        else:
            self._handles.discard(handle)

    def _task_done(self, handle: TimerHandle, task: asyncio.Task) -> None:
        self._handles.discard(handle)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("timer_callback_failed", timer=handle.name, error=str(exc))

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def aclose(self) -> None:
        """Cancel every outstanding timer and wait for in-flight callbacks."""
        tasks = [h._task for h in self._handles if h._task is not None]
        for handle in list(self._handles):
            self.cancel(handle)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ManualScheduler — virtual time
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ManualScheduler(Scheduler):
    """Deterministic virtual-time scheduler.

    Time only moves inside ``advance()``/``set_time()``. Due callbacks run
    in (due, insertion) order and async callbacks are awaited inline, so a
    callback that schedules a follow-up inside the advanced window also
    runs within the same ``advance()`` call.

    Attributes:
        fired: Log of ``(virtual instant, timer name)`` for every callback run.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._queue: list[tuple[datetime, int, TimerHandle]] = []
        self._seq = itertools.count()
        self.fired: list[tuple[datetime, str]] = []

    def now(self) -> datetime:
        return self._now

    def schedule(
        self, delay: float, fn: TimerCallback, *, name: str = ""
    ) -> TimerHandle:
        due = self._now + timedelta(seconds=max(0.0, delay))
        handle = TimerHandle(due=due, callback=fn, name=name)
        heapq.heappush(self._queue, (due, next(self._seq), handle))
        return handle

    def cancel(self, handle: TimerHandle | None) -> bool:
        if handle is None or handle.cancelled or handle.fired:
            return False
        handle.cancelled = True
        return True

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, running every callback that falls due."""
        await self.set_time(self._now + timedelta(seconds=seconds))

    async def set_time(self, target: datetime) -> None:
        """Jump to ``target`` (e.g. a backgrounded tab resuming late)."""
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            handle.fired = True
            self.fired.append((self._now, handle.name))
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        self._now = max(self._now, target)

    def jump(self, seconds: float) -> None:
        """Move the clock without firing anything (a suspended host).

        Overdue timers then fire late, at the jumped instant, on the next
        ``advance()``.
        """
        self._now += timedelta(seconds=seconds)

    async def run_until_idle(self, *, limit: float = 86400.0) -> None:
        """Run until no live timers remain (bounded by ``limit`` seconds)."""
        horizon = self._now + timedelta(seconds=limit)
        while True:
            live = [entry for entry in self._queue if not entry[2].cancelled]
            if not live:
                return
            next_due = min(entry[0] for entry in live)
            if next_due > horizon:
                return
            await self.set_time(next_due)

    @property
    def pending(self) -> int:
        """Number of live (not cancelled, not fired) timers."""
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def pending_names(self) -> list[str]:
        return sorted(h.name for _, _, h in self._queue if not h.cancelled)

    def next_due(self) -> datetime | None:
        live = [due for due, _, h in self._queue if not h.cancelled]
        return min(live) if live else None

    def __repr__(self) -> str:
        return f"<ManualScheduler now={self._now.isoformat()} pending={self.pending}>"


__all__ = [
    "Scheduler",
    "TimerHandle",
    "AsyncioScheduler",
    "ManualScheduler",
]
