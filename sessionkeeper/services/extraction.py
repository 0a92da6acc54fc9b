"""
Scheduled extraction: for every CONNECTED record with an enabled job whose
cron matches the current minute, pull yesterday's rows and append them to
the job's destination.

Jobs run one after another with a fixed pause in between so the upstream
platforms and the sink's rate limits are not hammered. A failing job is
logged and skipped; extraction problems never change a connection's status.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Mapping, Optional

from sessionkeeper.core.logging import correlation_scope
from sessionkeeper.services.collaborators import (
    AuthenticatedConnection,
    DateRange,
    Extractor,
    Sink,
)
from sessionkeeper.services.connections import (
    ConnectionRecord,
    ConnectionStore,
    DueSelector,
    Platform,
    utcnow,
)
from sessionkeeper.services.metadata import ScheduledJobConfig
from sessionkeeper.services.schedules import floor_to_minute

log = logging.getLogger(__name__)

class JobOutcome(str, Enum):
    SYNCED = "synced"  # rows written, last_synced_at bumped
    EMPTY = "empty"    # nothing extracted; nothing written
    FAILED = "failed"

@dataclass(frozen=True)
class ScheduledJob:
    record: ConnectionRecord
    config: ScheduledJobConfig

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def platform(self) -> Platform:
        return self.record.platform

    @property
    def destination_label(self) -> str:
        return self.config.destination_label or f"{self.platform.value} Analytics"

@dataclass(frozen=True)
class JobResult:
    user_id: str
    platform: Platform
    outcome: JobOutcome
    duration_ms: int
    rows: int = 0
    appended_rows: int = 0
    error: Optional[str] = None

@dataclass
class TickResult:
    tick: datetime
    jobs: List[JobResult] = field(default_factory=list)
    duration_ms: int = 0

    def count(self, outcome: JobOutcome) -> int:
        return sum(1 for j in self.jobs if j.outcome is outcome)

class ExtractionScheduler:
    def __init__(
        self,
        store: ConnectionStore,
        extractors: Mapping[Platform, Extractor],
        sink: Sink,
        *,
        inter_job_delay: float = 5.0,
        timeout: float = 30.0,
        max_catch_up: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.extractors = dict(extractors)
        self.sink = sink
        self.inter_job_delay = inter_job_delay
        self.timeout = timeout
        self._clock = clock
        self.max_catch_up = max_catch_up
        self._sleep = sleep
        # floor of the last minute a tick covered
        self._last_tick: Optional[datetime] = None

    def due_jobs(self, now: Optional[datetime] = None, since: Optional[datetime] = None) -> List[ScheduledJob]:
        """Jobs whose cron fired in the minutes (since, now]; just now's minute without ``since``."""
        now = now or self._clock()
        records = self.store.list_due(now, DueSelector.SCHEDULED, since=since)
        return [ScheduledJob(record=r, config=r.scheduled_job) for r in records if r.scheduled_job]

    def _window_start(self, tick: datetime) -> Optional[datetime]:
        # resume after the last covered minute, at most max_catch_up back
        if self._last_tick is None:
            return None
        return max(self._last_tick, tick - self.max_catch_up)

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run every job due since the previous tick, up to and including the
        minute containing ``now``. A second tick in the same minute runs nothing.
        """
        now = now or self._clock()
        started = time.perf_counter()
        result = TickResult(tick=floor_to_minute(now))

        with correlation_scope("tick"):
            since = self._window_start(result.tick)
            if since is not None and since >= result.tick:
                log.debug("minute %s already processed", result.tick.isoformat())
                return result
            if since is not None and result.tick - since > timedelta(minutes=1):
                log.info("catching up scheduled jobs since %s", since.isoformat())
            jobs = self.due_jobs(now, since)
            self._last_tick = result.tick
            if not jobs:
                log.debug("no scheduled jobs due")
                return result

            log.info("found %d scheduled jobs", len(jobs))
            for i, job in enumerate(jobs):
                if i:
                    await self._sleep(self.inter_job_delay)
                result.jobs.append(await self.run_job(job, now))

            result.duration_ms = int((time.perf_counter() - started) * 1000)
            log.info("extraction tick completed", extra={
                "jobs": len(jobs), "synced": result.count(JobOutcome.SYNCED),
                "empty": result.count(JobOutcome.EMPTY), "failed": result.count(JobOutcome.FAILED),
                "dur_ms": result.duration_ms,
            })
        return result

    async def run_job(self, job: ScheduledJob, now: Optional[datetime] = None) -> JobResult:
        now = now or self._clock()
        started = time.perf_counter()
        date_range = DateRange.yesterday(now)

        def done(outcome: JobOutcome, **kw) -> JobResult:
            return JobResult(job.user_id, job.platform, outcome,
                             int((time.perf_counter() - started) * 1000), **kw)

        log.info("running extraction for %s on %s", job.user_id, job.platform.value,
                 extra={"date": date_range.start.isoformat()})
        try:
            rows = await self._extract(job, date_range)
            if not rows:
                log.info("no data extracted for %s on %s", job.user_id, job.platform.value)
                return done(JobOutcome.EMPTY)

            written = await asyncio.wait_for(
                self.sink.write(rows, job.config.destination_id, job.destination_label),
                timeout=self.timeout,
            )
            self.store.mark_synced(job.user_id, job.platform, now)
        except Exception as e:
            reason = f"timed out after {self.timeout:g}s" if isinstance(e, asyncio.TimeoutError) \
                else f"{type(e).__name__}: {e}"
            log.error("extraction failed for %s on %s: %s", job.user_id, job.platform.value, reason)
            return done(JobOutcome.FAILED, error=reason)

        log.info("appended %d rows for %s on %s", written.appended_rows, job.user_id, job.platform.value)
        return done(JobOutcome.SYNCED, rows=len(rows), appended_rows=written.appended_rows)

    async def _extract(self, job: ScheduledJob, date_range: DateRange) -> list:
        extractor = self.extractors.get(job.platform)
        if extractor is None:
            raise LookupError(f"no extractor registered for {job.platform.value}")
        tokens = self.store.get_decrypted(job.user_id, job.platform)
        if tokens is None:
            raise LookupError("stored tokens unavailable (missing or undecryptable)")
        connection = AuthenticatedConnection(record=job.record, tokens=tokens)
        return list(await asyncio.wait_for(extractor.extract(connection, date_range), timeout=self.timeout) or [])
