"""Daily pre-computation of recommendation pages.

Every instance runs the trigger; a try-once singleton lock makes sure
only one of them does the work for a given firing.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Optional

import structlog

from partnermatch.core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from partnermatch.cache.recommendations import RecommendationCache
    from partnermatch.coordination.locks import LockService
    from partnermatch.recommend import RecommendationService

log = structlog.get_logger()

DEFAULT_LOCK_NAME = "partnermatch:precachejob:docache:lock"


def parse_trigger_time(value: str) -> time:
    """Parse "HH:MM" into a time of day."""
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))


def seconds_until(now: datetime, trigger: time) -> float:
    """Seconds from ``now`` to the next occurrence of ``trigger`` (never zero)."""
    target = datetime.combine(now.date(), trigger)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


@dataclass
class PrewarmReport:
    """Outcome of one pre-warm firing.

    Attributes:
        ran: False when another instance held the job lock
        refreshed: Subjects whose page was written to the cache
        failed: Subject id -> why its page was not refreshed
    """

    ran: bool
    refreshed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "ran": self.ran,
            "refreshed": self.refreshed,
            "failed": {str(k): v for k, v in self.failed.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class PrewarmScheduler:
    """Refreshes cached pages for a watch list once a day."""

    def __init__(
        self,
        service: "RecommendationService",
        cache: "RecommendationCache",
        locks: "LockService",
        watch_list: list[int],
        lock_name: str = DEFAULT_LOCK_NAME,
        trigger_time: str = "00:00",
        clock: Optional[Clock] = None,
    ):
        """Initialize the scheduler.

        Args:
            service: Computes ranked pages
            cache: Where pages are written
            locks: Lock service shared by every instance
            watch_list: Subjects to pre-warm
            lock_name: Singleton lock for the job
            trigger_time: Daily firing time, "HH:MM"
            clock: Time source for the trigger
        """
        self.service = service
        self.cache = cache
        self.locks = locks
        self.watch_list = list(watch_list)
        self.lock_name = lock_name
        self.trigger = parse_trigger_time(trigger_time)
        self.clock = clock or SystemClock()

        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> PrewarmReport:
        """Refresh every watched subject if this instance wins the job lock."""
        handle = await self.locks.acquire(self.lock_name, wait=0, lease=None)
        if handle is None:
            log.info("prewarm_skipped", reason="lock_held", lock=self.lock_name)
            return PrewarmReport(ran=False)

        report = PrewarmReport(ran=True, started_at=self.clock.now())
        try:
            for subject_id in self.watch_list:
                await self._refresh(subject_id, report)
        finally:
            await self.locks.release(handle)

        report.finished_at = self.clock.now()
        log.info(
            "prewarm_completed",
            refreshed=len(report.refreshed),
            failed=len(report.failed),
        )
        return report

    async def _refresh(self, subject_id: int, report: PrewarmReport) -> None:
        try:
            result = await self.service.compute_page(subject_id)
        except Exception as e:
            log.error("prewarm_subject_failed", subject_id=subject_id, error=str(e))
            report.failed[subject_id] = str(e)
            return

        if not result.success:
            log.warning("prewarm_subject_failed", subject_id=subject_id, error=str(result.error))
            report.failed[subject_id] = str(result.error)
            return

        if await self.cache.set(self.cache.key_for(subject_id), result.value):
            report.refreshed.append(subject_id)
        else:
            report.failed[subject_id] = "cache write failed"

    def seconds_until_next_run(self) -> float:
        return seconds_until(self.clock.now(), self.trigger)

    def start(self) -> None:
        """Start the daily trigger loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            log.info("prewarm_scheduler_started", trigger=self.trigger.isoformat("minutes"))

    def stop(self) -> None:
        """Stop the daily trigger loop."""
        if self._task and not self._task.done():
            self._task.cancel()
            log.info("prewarm_scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                delay = self.seconds_until_next_run()
                log.debug("prewarm_next_run", in_seconds=round(delay))
                await asyncio.sleep(delay)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error("prewarm_run_error", error=str(e))
