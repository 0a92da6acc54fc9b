from __future__ import annotations
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from apscheduler.triggers.cron import CronTrigger

DEFAULT_SCHEDULE = "0 2 * * *"  # 02:00 UTC daily

class InvalidSchedule(ValueError):
    pass

@lru_cache(maxsize=256)
def _trigger(expr: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expr, timezone=timezone.utc)
    except ValueError as e:
        raise InvalidSchedule(f"invalid cron expression {expr!r}: {e}") from e

def validate_cron(expr: str) -> str:
    expr = " ".join((expr or "").split())
    if len(expr.split(" ")) != 5:
        raise InvalidSchedule(f"cron expression must have 5 fields: {expr!r}")
    _trigger(expr)
    return expr

def floor_to_minute(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(second=0, microsecond=0)

def cron_matches(expr: str, moment: datetime) -> bool:
    """True when the minute containing ``moment`` is a fire time of ``expr``."""
    tick = floor_to_minute(moment)
    next_fire = _trigger(validate_cron(expr)).get_next_fire_time(None, tick)
    return next_fire is not None and next_fire == tick

def next_run(expr: str, after: datetime) -> datetime | None:
    after = floor_to_minute(after) + timedelta(minutes=1)
    return _trigger(validate_cron(expr)).get_next_fire_time(None, after)

def fired_between(expr: str, since: datetime | None, until: datetime) -> bool:
    """
    True when ``expr`` has a fire time in the minutes (since, until]. Without
    ``since`` only the minute containing ``until`` counts.
    """
    if since is None:
        return cron_matches(expr, until)
    upcoming = next_run(expr, since)
    return upcoming is not None and upcoming <= floor_to_minute(until)
