from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from sessionkeeper.services.expiry import ExpiryMonitor
from sessionkeeper.services.extraction import ExtractionScheduler

log = logging.getLogger(__name__)

EXPIRY_JOB_ID = "expiry-sweep"
EXTRACTION_JOB_ID = "extraction-tick"
# a late tick still fires; minutes it missed are caught up by the scheduler itself
TICK_MISFIRE_GRACE_SECONDS = 30

class BackgroundRunner:
    """
    Owns the timers: the expiry sweep every ``expiry_interval`` seconds (and
    once right away), the extraction tick every minute. Neither job overlaps
    itself; missed runs collapse into one.
    """

    def __init__(
        self,
        monitor: ExpiryMonitor,
        scheduler: ExtractionScheduler,
        *,
        expiry_interval: int = 300,
        apscheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.monitor = monitor
        self.extraction = scheduler
        self.expiry_interval = expiry_interval
        self._aps = apscheduler or AsyncIOScheduler(timezone=timezone.utc)

    @property
    def running(self) -> bool:
        return self._aps.running

    def start(self) -> None:
        if self._aps.running:
            log.info("background jobs already running")
            return
        self._aps.add_job(
            self.run_expiry_sweep,
            IntervalTrigger(seconds=self.expiry_interval, timezone=timezone.utc),
            id=EXPIRY_JOB_ID,
            misfire_grace_time=self.expiry_interval,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._aps.add_job(
            self.run_extraction_tick,
            CronTrigger.from_crontab("* * * * *", timezone=timezone.utc),
            id=EXTRACTION_JOB_ID,
            misfire_grace_time=TICK_MISFIRE_GRACE_SECONDS,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._aps.start()
        log.info("background jobs started", extra={"expiry_interval_s": self.expiry_interval})

    def stop(self) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=False)
            log.info("background jobs stopped")

    async def run_expiry_sweep(self) -> None:
        try:
            await self.monitor.sweep()
        except Exception:
            # only list_due can get here; the next interval retries
            log.exception("expiry sweep aborted")

    async def run_extraction_tick(self) -> None:
        try:
            await self.extraction.tick()
        except Exception:
            log.exception("extraction tick aborted")
