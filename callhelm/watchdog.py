"""
Timers that keep the call board honest.

``StalenessWatchdog`` knows nothing about any particular push transport: it
is handed callables for channel health, last activity and the reconcile
itself. ``reason`` explains why a reconcile is due; a day rollover counts
even on a busy channel. ``DurationTicker`` refreshes the live duration of
active calls.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from callhelm.board import CallBoard, DurationTick
from callhelm.models import utcnow

log = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped; failures are logged."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[None]]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.callback()
            except Exception as e:
                log.error("periodic_task_failed", task=self.name, error=str(e))


class StalenessWatchdog:
    def __init__(
        self,
        is_healthy: Callable[[], bool],
        last_activity: Callable[[], Optional[datetime]],
        reconcile: Callable[[], Awaitable[None]],
        covers: Optional[Callable[[datetime], bool]] = None,
        threshold_seconds: float = 30.0,
        interval_seconds: float = 10.0,
        clock: Clock = utcnow,
        name: str = "staleness-watchdog",
    ):
        self.is_healthy = is_healthy
        self.last_activity = last_activity
        self.reconcile = reconcile
        self.covers = covers
        self.threshold_seconds = threshold_seconds
        self.clock = clock
        self.last_reconciled_at: Optional[datetime] = None
        self.reconcile_count = 0
        self._timer = PeriodicTask(name, interval_seconds, self.check)

    def mark_reconciled(self, at: Optional[datetime] = None) -> None:
        self.last_reconciled_at = at or self.clock()

    def reason(self, now: Optional[datetime] = None) -> Optional[str]:
        """Why a reconcile is due, or None when the board can be trusted."""
        if not self.is_healthy():
            return "channel_unhealthy"
        now = now or self.clock()
        if self.covers is not None and not self.covers(now):
            return "day_rolled_over"
        seen = [t for t in (self.last_activity(), self.last_reconciled_at) if t is not None]
        if not seen:
            return "never_synced"
        idle = (now - max(seen)).total_seconds()
        if idle > self.threshold_seconds:
            return "stale"
        return None

    async def check(self) -> bool:
        reason = self.reason()
        if reason is None:
            return False
        log.info("watchdog_reconcile", reason=reason)
        await self.reconcile()
        self.mark_reconciled()
        self.reconcile_count += 1
        return True

    def start(self) -> None:
        self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()

    @property
    def running(self) -> bool:
        return self._timer.running


class DurationTicker:
    def __init__(self, board: CallBoard, interval_seconds: float = 1.0, clock: Clock = utcnow):
        self.board = board
        self.clock = clock
        self._timer = PeriodicTask("duration-ticker", interval_seconds, self.tick)

    async def tick(self) -> None:
        if self.board.state.active_calls:
            self.board.dispatch(DurationTick(now=self.clock()))

    def start(self) -> None:
        self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()

    @property
    def running(self) -> bool:
        return self._timer.running
