"""
Expiry monitor.

Most platforms expose no refresh endpoint, so "refreshing" means re-checking the
stored session: if it still works, push the expiry estimate forward; if it
does not, flip the connection to ERROR so the user is asked to reconnect.

Each sweep handles candidates one at a time and in isolation. Whatever goes
wrong with one record (undecryptable tokens, a validator exception, a hung
check) is written to that record's ``refresh_error`` and the sweep moves on.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Mapping, Optional

from sessionkeeper.core.logging import correlation_scope
from sessionkeeper.services.collaborators import Validator
from sessionkeeper.services.connections import (
    ConnectionRecord,
    ConnectionStatus,
    ConnectionStore,
    DueSelector,
    Platform,
    as_platform,
    utcnow,
)

log = logging.getLogger(__name__)

EXPIRED_MESSAGE = "token expired - reconnect required"
CHANGED_MESSAGE = "connection changed during check"

class CheckOutcome(str, Enum):
    RENEWED = "renewed"          # validator said yes, expiry extended
    INVALIDATED = "invalidated"  # validator said no, marked ERROR
    FAILED = "failed"            # could not check, marked ERROR
    SKIPPED = "skipped"          # nothing to check (manual check on a non-connected record)

@dataclass(frozen=True)
class CandidateOutcome:
    user_id: str
    platform: Platform
    outcome: CheckOutcome
    duration_ms: int
    new_expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is CheckOutcome.RENEWED

@dataclass
class SweepResult:
    started_at: datetime
    threshold: datetime
    outcomes: List[CandidateOutcome] = field(default_factory=list)
    duration_ms: int = 0

    def count(self, outcome: CheckOutcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome is outcome)

    @property
    def renewed(self) -> int:
        return self.count(CheckOutcome.RENEWED)

    @property
    def invalidated(self) -> int:
        return self.count(CheckOutcome.INVALIDATED)

    @property
    def failed(self) -> int:
        return self.count(CheckOutcome.FAILED)

class ExpiryMonitor:
    def __init__(
        self,
        store: ConnectionStore,
        validators: Mapping[Platform, Validator],
        *,
        renewal_window: timedelta = timedelta(minutes=10),
        standard_lifetime: timedelta = timedelta(hours=1),
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.validators = dict(validators)
        self.renewal_window = renewal_window
        self.standard_lifetime = standard_lifetime
        self.timeout = timeout
        self._clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self._clock()
        started = time.perf_counter()
        result = SweepResult(started_at=now, threshold=now + self.renewal_window)

        with correlation_scope("sweep"):
            candidates = self.store.list_due(result.threshold, DueSelector.EXPIRING)
            if not candidates:
                log.debug("no tokens need attention")
            else:
                log.info("found %d connections needing attention", len(candidates))

            for record in candidates:
                try:
                    outcome = await self._process(record, now)
                except Exception as e:
                    # store write itself blew up; still keep the sweep going
                    log.exception("expiry check crashed for %s/%s", record.user_id, record.platform.value)
                    outcome = CandidateOutcome(record.user_id, record.platform, CheckOutcome.FAILED, 0,
                                               error=f"{type(e).__name__}: {e}")
                result.outcomes.append(outcome)

            result.duration_ms = int((time.perf_counter() - started) * 1000)
            log.info("expiry sweep done", extra={"candidates": len(candidates), "renewed": result.renewed,
                                                 "invalidated": result.invalidated, "failed": result.failed,
                                                 "dur_ms": result.duration_ms})
        return result

    async def check_connection(self, user_id: str, platform: Platform | str) -> CandidateOutcome:
        """On-demand check of one connection, same rules as a sweep."""
        platform = as_platform(platform)
        record = self.store.get(user_id, platform)
        if record is None or record.status is not ConnectionStatus.CONNECTED:
            return CandidateOutcome(user_id, platform, CheckOutcome.SKIPPED, 0,
                                    error="no connected tokens - please connect the account")
        return await self._process(record, self._clock())

    async def _process(self, record: ConnectionRecord, now: datetime) -> CandidateOutcome:
        started = time.perf_counter()
        user_id, platform = record.user_id, record.platform

        def done(outcome: CheckOutcome, **kw) -> CandidateOutcome:
            return CandidateOutcome(user_id, platform, outcome,
                                    int((time.perf_counter() - started) * 1000), **kw)

        try:
            valid = await self._validate(record)
        except Exception as e:
            reason = _describe(e, self.timeout)
            if not self.store.mark_error(user_id, platform, f"refresh failed: {reason}",
                                         only_if=ConnectionStatus.CONNECTED):
                return done(CheckOutcome.SKIPPED, error=CHANGED_MESSAGE)
            log.warning("expiry check failed for %s/%s: %s", user_id, platform.value, reason)
            return done(CheckOutcome.FAILED, error=reason)

        if valid:
            new_expiry = now + self.standard_lifetime
            if self.store.update_expiry(user_id, platform, new_expiry):
                log.info("tokens still valid for %s/%s, extended expiration", user_id, platform.value)
                return done(CheckOutcome.RENEWED, new_expires_at=new_expiry)
            # record left CONNECTED between selection and write
            return done(CheckOutcome.SKIPPED, error=CHANGED_MESSAGE)

        if not self.store.mark_error(user_id, platform, EXPIRED_MESSAGE, only_if=ConnectionStatus.CONNECTED):
            return done(CheckOutcome.SKIPPED, error=CHANGED_MESSAGE)
        log.info("tokens expired for %s/%s, marked ERROR", user_id, platform.value)
        return done(CheckOutcome.INVALIDATED, error=EXPIRED_MESSAGE)

    async def _validate(self, record: ConnectionRecord) -> bool:
        validator = self.validators.get(record.platform)
        if validator is None:
            raise LookupError(f"no validator registered for {record.platform.value}")
        tokens = self.store.get_decrypted(record.user_id, record.platform)
        if tokens is None:
            raise LookupError("stored tokens unavailable (missing or undecryptable)")
        return bool(await asyncio.wait_for(validator.check(tokens), timeout=self.timeout))

def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"validator timed out after {timeout:g}s"
    if isinstance(exc, LookupError):
        return str(exc).strip("'\"")
    return f"{type(exc).__name__}: {exc}"
