"""
CountdownClock — Local countdown to a commitment's settlement instant.

Every tick recomputes ``remaining = max(0, settles_at - now)`` from the
absolute instant, so a host that was suspended catches up on its next
tick instead of drifting. The next tick is scheduled at
``min(tick_interval, remaining)``: the final tick lands on ``settles_at``
and expiry is reported exactly once.
"""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable

import structlog

from signaldesk.core.scheduler import Scheduler, TimerHandle

logger = structlog.get_logger(__name__)

TickHandler = Callable[[float], Awaitable[None]]
ExpireHandler = Callable[[], Awaitable[None]]


class CountdownClock:
    def __init__(self, scheduler: Scheduler, *, tick: float = 1.0) -> None:
        self._scheduler = scheduler
        self._tick = tick
        self._handle: TimerHandle | None = None
        self._settles_at: datetime | None = None
        self._on_tick: TickHandler | None = None
        self._on_expire: ExpireHandler | None = None
        self._run = 0
        self._expired = False

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.active

    def remaining(self) -> float:
        if self._settles_at is None:
            return 0.0
        return max(0.0, (self._settles_at - self._scheduler.now()).total_seconds())

    def start(
        self,
        settles_at: datetime,
        *,
        on_tick: TickHandler,
        on_expire: ExpireHandler,
    ) -> None:
        """(Re)start counting down to ``settles_at``. Cancels any previous run."""
        self.stop()
        self._run += 1
        self._settles_at = settles_at
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._expired = False
        logger.debug("countdown_started", settles_at=settles_at.isoformat(), remaining=self.remaining())
        self._schedule_next(self._run)

    def stop(self) -> None:
        self._run += 1
        if self._handle is not None:
            self._scheduler.cancel(self._handle)
            self._handle = None

    def _schedule_next(self, run: int) -> None:
        delay = min(self._tick, self.remaining())
        self._handle = self._scheduler.schedule(
            delay, lambda: self._fire(run), name="countdown"
        )

    async def _fire(self, run: int) -> None:
        if run != self._run or self._expired:
            return
        remaining = self.remaining()
        if remaining <= 0:
            self._expired = True
            self._handle = None
            logger.info("countdown_expired", settles_at=self._settles_at.isoformat())
            await self._on_expire()
            return
        await self._on_tick(remaining)
        # The tick handler may have stopped or restarted the clock.
        if run == self._run and not self._expired:
            self._schedule_next(run)


__all__ = ["CountdownClock"]
