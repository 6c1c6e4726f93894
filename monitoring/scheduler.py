"""
Poll Scheduling.

============================================================
PURPOSE
============================================================
- CronScheduler: one periodic timer driven by a cron
  expression, with explicit stop/replace semantics
- PollScheduler: keeps the timer in step with the persisted
  config (enabled flag, poll interval in minutes)

Each firing hands the poll cycle to a separate task so a slow
cycle never blocks the timer loop. Overlap is handled by the
orchestrator's single-flight lock.

============================================================
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from croniter import croniter

from core.clock import ClockProtocol, SystemClock, to_iso8601
from storage.repositories.monitoring import clamp_poll_interval


logger = logging.getLogger(__name__)


def cron_expression_for(interval_minutes: int) -> str:
    """Every N minutes; hourly at :00 for 60."""
    interval = clamp_poll_interval(interval_minutes)
    if interval >= 60:
        return "0 * * * *"
    return f"*/{interval} * * * *"


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    return croniter(cron_expression, after).get_next(datetime)


class CronScheduler:
    """
    Single cron-driven timer.

    schedule() replaces any existing timer; stop() cancels it.
    Callbacks are coroutine functions taking no arguments.
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._cron_expression: Optional[str] = None
        self._next_run_at: Optional[datetime] = None
        self._fire_count = 0
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cron_expression(self) -> Optional[str]:
        return self._cron_expression if self.is_running else None

    @property
    def next_run_at(self) -> Optional[datetime]:
        return self._next_run_at if self.is_running else None

    def schedule(
        self,
        cron_expression: str,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        """
        Start (or replace) the timer.

        Raises:
            ValueError: Invalid cron expression
        """
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        self.stop()
        self._cron_expression = cron_expression
        self._task = asyncio.get_running_loop().create_task(
            self._run(cron_expression, callback),
            name=f"cron:{cron_expression}",
        )
        logger.info(f"Scheduled timer with cron '{cron_expression}'")

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info(f"Stopped timer '{self._cron_expression}'")
        self._task = None
        self._next_run_at = None

    async def _run(
        self,
        cron_expression: str,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            now = self._clock.now()
            self._next_run_at = next_fire_time(cron_expression, now)
            delay = max(0.0, (self._next_run_at - now).total_seconds())
            await self._sleep(delay)

            self._fire_count += 1
            task = asyncio.get_running_loop().create_task(self._invoke(callback))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _invoke(self, callback: Callable[[], Awaitable[Any]]) -> None:
        try:
            await callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}")

    async def wait_inflight(self) -> None:
        """Wait for callbacks already fired."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "cron_expression": self.cron_expression,
            "next_run_at": to_iso8601(self.next_run_at),
            "fire_count": self._fire_count,
        }


class PollScheduler:
    """
    Binds the cron timer to the poll orchestrator.

    apply() is called at startup and after every config update;
    the timer is only replaced when enabled or interval changed.
    """

    def __init__(self, orchestrator: Any, scheduler: Optional[CronScheduler] = None):
        self._orchestrator = orchestrator
        self._scheduler = scheduler or CronScheduler()
        self._enabled = False
        self._interval: Optional[int] = None

    @property
    def scheduler(self) -> CronScheduler:
        return self._scheduler

    async def _scheduled_poll(self) -> None:
        await self._orchestrator.run_cycle(trigger="scheduled")

    def apply(self, enabled: bool, interval_minutes: Optional[int]) -> bool:
        """
        Sync the timer with config.

        Returns:
            True if the timer was started, replaced or stopped
        """
        interval = clamp_poll_interval(interval_minutes)
        enabled = bool(enabled)

        if enabled == self._enabled and interval == self._interval and (
            self._scheduler.is_running or not enabled
        ):
            return False

        self._enabled = enabled
        self._interval = interval

        if not enabled:
            self._scheduler.stop()
            logger.info("Zabbix polling disabled")
            return True

        self._scheduler.schedule(cron_expression_for(interval), self._scheduled_poll)
        logger.info(f"Zabbix polling every {interval} minutes")
        return True

    def stop(self) -> None:
        self._scheduler.stop()
        self._enabled = False
        self._interval = None

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "interval_minutes": self._interval,
            **self._scheduler.status(),
        }
