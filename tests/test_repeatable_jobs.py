from datetime import datetime, timedelta, timezone

import pytest

from workers.repeatable_jobs import RepeatableJobRegistry, from_ms, next_fire_time, parse_cron


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_cron_rejects_wrong_field_count():
    with pytest.raises(ValueError):
        parse_cron("0 2 * *")


def test_next_fire_time_daily_pattern():
    assert next_fire_time("0 2 * * *", utc(2024, 1, 1, 1, 30), "UTC") == utc(2024, 1, 1, 2, 0)


def test_next_fire_time_is_strictly_after():
    assert next_fire_time("0 2 * * *", utc(2024, 1, 1, 2, 0), "UTC") == utc(2024, 1, 2, 2, 0)


def test_next_fire_time_step_minutes():
    assert next_fire_time("*/15 * * * *", utc(2024, 1, 1, 10, 7), "UTC") == utc(2024, 1, 1, 10, 15)


def test_next_fire_time_every_two_hours_rolls_over_midnight():
    assert next_fire_time("0 */2 * * *", utc(2024, 1, 1, 23, 5), "UTC") == utc(2024, 1, 2, 0, 0)


def test_next_fire_time_honours_time_zone():
    # 02:00 London summer time is 01:00 UTC
    assert next_fire_time("0 2 * * *", utc(2024, 7, 1, 0, 0), "Europe/London") == utc(2024, 7, 1, 1, 0)


def test_add_same_job_twice_keeps_one_registration(fake_redis):
    registry = RepeatableJobRegistry(fake_redis)
    now = utc(2024, 1, 1, 0, 30)
    first = registry.add("file-cleanup", {"task": "file-cleanup"}, "0 2 * * *", "UTC", now=now)
    second = registry.add("file-cleanup", {"task": "file-cleanup"}, "0 2 * * *", "UTC", now=now + timedelta(hours=5))

    jobs = registry.get_repeatable_jobs()
    assert len(jobs) == 1
    assert second["next"] == first["next"]
    assert from_ms(jobs[0]["next"]) == utc(2024, 1, 1, 2, 0)


def test_jobs_sorted_by_next_run(fake_redis):
    registry = RepeatableJobRegistry(fake_redis)
    now = utc(2024, 1, 1, 0, 30)
    registry.add("file-cleanup", {}, "0 2 * * *", "UTC", now=now)
    registry.add("document-retention-cleanup", {}, "0 * * * *", "UTC", now=now)

    assert [job["name"] for job in registry.get_repeatable_jobs()] == ["document-retention-cleanup", "file-cleanup"]


def test_due_jobs_and_advance_skip_missed_slots(fake_redis):
    registry = RepeatableJobRegistry(fake_redis)
    job = registry.add("document-retention-cleanup", {}, "0 * * * *", "UTC", now=utc(2024, 1, 1, 0, 30))

    later = utc(2024, 1, 1, 5, 10)
    due = registry.due_jobs(later)
    assert [d["key"] for d in due] == [job["key"]]

    advanced = registry.advance(job["key"], later)
    assert from_ms(advanced["next"]) == utc(2024, 1, 1, 6, 0)
    assert registry.due_jobs(later) == []


def test_remove_by_key(fake_redis):
    registry = RepeatableJobRegistry(fake_redis)
    job = registry.add("local-folder-scan", {}, "0 * * * *", "UTC")

    assert registry.remove_repeatable_by_key(job["key"]) is True
    assert registry.remove_repeatable_by_key(job["key"]) is False
    assert registry.get_repeatable_jobs() == []


@pytest.mark.parametrize("pattern, tz, after, expected", [
    # second pass of the repeated 01:00 hour (01:05 EST)
    ("*/15 * * * *", "America/New_York", utc(2024, 11, 3, 6, 5), utc(2024, 11, 3, 6, 15)),
    # end of the first pass (01:50 EDT) runs into 01:00 EST
    ("*/15 * * * *", "America/New_York", utc(2024, 11, 3, 5, 50), utc(2024, 11, 3, 6, 0)),
    ("0 * * * *", "America/New_York", utc(2024, 11, 3, 5, 0), utc(2024, 11, 3, 6, 0)),
    # second pass of the repeated 01:00 hour (01:05 GMT)
    ("*/15 * * * *", "Europe/London", utc(2024, 10, 27, 1, 5), utc(2024, 10, 27, 1, 15)),
    ("*/15 * * * *", "Europe/London", utc(2024, 10, 27, 0, 50), utc(2024, 10, 27, 1, 0)),
    # 02:30 does not exist on the spring-forward day and runs at 03:30 EDT
    ("30 2 * * *", "America/New_York", utc(2024, 3, 10, 6, 0), utc(2024, 3, 10, 7, 30)),
    ("30 2 * * *", "America/New_York", utc(2024, 3, 10, 7, 30), utc(2024, 3, 11, 6, 30)),
    ("*/15 * * * *", "America/New_York", utc(2024, 3, 10, 7, 0), utc(2024, 3, 10, 7, 15)),
])
def test_next_fire_time_across_clock_changes(pattern, tz, after, expected):
    result = next_fire_time(pattern, after, tz)

    assert result > after
    assert result == expected


def test_advance_in_repeated_hour_moves_forward(fake_redis):
    registry = RepeatableJobRegistry(fake_redis)
    job = registry.add("local-folder-scan", {}, "*/15 * * * *", "America/New_York", now=utc(2024, 11, 3, 5, 50))
    assert from_ms(job["next"]) == utc(2024, 11, 3, 6, 0)

    now = utc(2024, 11, 3, 6, 5)
    advanced = registry.advance(job["key"], now)
    assert from_ms(advanced["next"]) == utc(2024, 11, 3, 6, 15)
    assert registry.due_jobs(now) == []
