"""
Repeatable Job Registry
Cron-style job registrations stored in a Redis hash per queue. The scheduler
process reads the due entries, enqueues them and moves them to their next
fire time.
"""

import json
import logging
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from celery.schedules import crontab

from celery_app import SCHEDULED_TASKS_QUEUE
from config import TIMEZONE

logger = logging.getLogger(__name__)

# Upper bound on how far ahead a pattern is searched (covers Feb 29 patterns)
MAX_LOOKAHEAD_DAYS = 366 * 5


def parse_cron(pattern: str) -> crontab:
    """Five-field cron expression -> celery crontab"""
    fields = pattern.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron pattern '{pattern}': expected 5 fields")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def _day_matches(schedule: crontab, day) -> bool:
    # crontab numbers weekdays from Sunday = 0
    weekday = (day.weekday() + 1) % 7
    return (
        day.month in schedule.month_of_year
        and day.day in schedule.day_of_month
        and weekday in schedule.day_of_week
    )


def _slot_instants(wall: datetime, zone: ZoneInfo) -> List[datetime]:
    """UTC instants of a local wall time: both passes of a repeated hour, the shifted time in a skipped one"""
    instants = []
    for fold in (0, 1):
        instant = wall.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)
        if instant.astimezone(zone).replace(tzinfo=None) == wall and instant not in instants:
            instants.append(instant)
    if not instants:
        instants.append(wall.replace(tzinfo=zone).astimezone(timezone.utc))
    return instants


def next_fire_time(pattern: str, after: datetime, tz: str = TIMEZONE) -> datetime:
    """First instant strictly after `after` whose wall time in the given zone matches the pattern"""
    schedule = parse_cron(pattern)
    zone = ZoneInfo(tz)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    hours = sorted(schedule.hour)
    minutes = sorted(schedule.minute)
    # start a day early: a wall time before after's can still be later in UTC around a clock change
    day = after.astimezone(zone).date() - timedelta(days=1)
    best: Optional[datetime] = None
    last_day = None
    for _ in range(MAX_LOOKAHEAD_DAYS):
        if _day_matches(schedule, day):
            for hour in hours:
                for minute in minutes:
                    for instant in _slot_instants(datetime.combine(day, dtime(hour, minute)), zone):
                        if instant > after and (best is None or instant < best):
                            best = instant
        if best is not None and last_day is None:
            last_day = day + timedelta(days=1)
        if last_day is not None and day >= last_day:
            return best
        day += timedelta(days=1)
    if best is not None:
        return best
    raise ValueError(f"Cron pattern '{pattern}' never fires")


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RepeatableJobRegistry:
    """Repeatable job registrations for one queue, stored in `repeat:{queue}`"""

    def __init__(self, client, queue: str = SCHEDULED_TASKS_QUEUE):
        self.client = client
        self.queue = queue
        self.key = f"repeat:{queue}"

    @staticmethod
    def make_key(name: str, pattern: str, tz: str) -> str:
        return f"{name}:{pattern}:{tz}"

    def _save(self, job: Dict[str, Any]):
        self.client.hset(self.key, job["key"], json.dumps(job, default=str))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.client.hget(self.key, key)
        return json.loads(raw) if raw else None

    def get_repeatable_jobs(self) -> List[Dict[str, Any]]:
        """All registrations ordered by next fire time"""
        jobs = [json.loads(raw) for raw in (self.client.hgetall(self.key) or {}).values()]
        jobs.sort(key=lambda job: job.get("next") or 0)
        return jobs

    def add(self, name: str, data: Optional[Dict[str, Any]], pattern: str,
            tz: str = TIMEZONE, opts: Optional[Dict[str, Any]] = None,
            now: Optional[datetime] = None) -> Dict[str, Any]:
        """Register (or refresh) a repeatable job; the same name/pattern/tz is stored once"""
        key = self.make_key(name, pattern, tz)
        existing = self.get(key)
        now = now or datetime.now(timezone.utc)
        job = {
            "key": key,
            "name": name,
            "pattern": pattern,
            "tz": tz,
            "next": existing["next"] if existing else _to_ms(next_fire_time(pattern, now, tz)),
            "data": data or {},
            "opts": opts or {},
        }
        self._save(job)
        return job

    def remove_repeatable_by_key(self, key: str) -> bool:
        return bool(self.client.hdel(self.key, key))

    def due_jobs(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now_ms = _to_ms(now or datetime.now(timezone.utc))
        return [job for job in self.get_repeatable_jobs() if job.get("next") and job["next"] <= now_ms]

    def advance(self, key: str, after: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Move a registration to its first fire time after `after` (missed slots are skipped)"""
        job = self.get(key)
        if job is None:
            return None
        after = after or datetime.now(timezone.utc)
        job["next"] = _to_ms(next_fire_time(job["pattern"], after, job["tz"]))
        self._save(job)
        return job
