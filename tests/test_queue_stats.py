import base64
import json
import time

import pytest

from celery_app import DEAD_LETTER_KEY, EMAIL_QUEUE, INVOICE_IMPORT_QUEUE, SCHEDULED_TASKS_QUEUE
from services import queue_stats


def test_counts_start_at_zero(fake_redis):
    assert queue_stats.get_job_counts(EMAIL_QUEUE) == {
        "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0,
    }
    assert set(queue_stats.get_all_job_counts()) == {"file-import", "invoice-import", "email", "scheduled-tasks"}


def test_active_job_leaves_delayed(fake_redis):
    queue_stats.mark_delayed(EMAIL_QUEUE, "job-1", "tasks.send_email", {"to": "a@example.com"}, "451 try later")
    assert queue_stats.get_job_counts(EMAIL_QUEUE)["delayed"] == 1

    queue_stats.mark_active(EMAIL_QUEUE, "job-1", "tasks.send_email", {"to": "a@example.com"})
    counts = queue_stats.get_job_counts(EMAIL_QUEUE)
    assert counts["delayed"] == 0
    assert counts["active"] == 1

    queue_stats.mark_inactive(EMAIL_QUEUE, "job-1")
    assert queue_stats.get_job_counts(EMAIL_QUEUE)["active"] == 0


def test_completed_history_keeps_newest_per_job_kind(fake_redis):
    for i in range(55):
        queue_stats.record_completed(SCHEDULED_TASKS_QUEUE, f"scan-{i}", "local-folder-scan", {}, {"queued": i})

    assert queue_stats.get_job_counts(SCHEDULED_TASKS_QUEUE)["completed"] == 50


def test_failed_history_trimmed_by_age(fake_redis):
    key = f"queue:{INVOICE_IMPORT_QUEUE}:failed"
    fake_redis.zadd(key, {json.dumps({"id": "ancient"}): time.time() - 8 * 24 * 3600})

    queue_stats.record_failed(INVOICE_IMPORT_QUEUE, "job-2", "tasks.process_invoice_import", {}, "boom", 2)

    jobs = queue_stats.list_jobs(INVOICE_IMPORT_QUEUE, "failed")
    assert [job["id"] for job in jobs] == ["job-2"]
    assert jobs[0]["failedReason"] == "boom"
    assert jobs[0]["attemptsMade"] == 2


def test_dead_letter_entries(fake_redis):
    entry = queue_stats.move_to_dead_letter(EMAIL_QUEUE, "job-3", {"to": "x@example.com"}, "550 no such user", 1)

    assert entry["originalQueue"] == EMAIL_QUEUE
    assert queue_stats.get_dead_letter_count() == 1
    assert queue_stats.list_dead_letters()[0]["originalJobId"] == "job-3"
    assert fake_redis.llen(DEAD_LETTER_KEY) == 1


def test_list_jobs_rejects_unknown_state(fake_redis):
    with pytest.raises(ValueError):
        queue_stats.list_jobs(EMAIL_QUEUE, "paused")


def test_waiting_jobs_decoded_from_broker_messages(fake_redis):
    body = base64.b64encode(json.dumps([[], {"file_name": "inv.pdf"}, {}]).encode()).decode()
    message = {
        "body": body,
        "headers": {"id": "local-import-1-inv.pdf", "task": "tasks.process_invoice_import", "eta": None},
        "properties": {"body_encoding": "base64"},
    }
    fake_redis.lpush(INVOICE_IMPORT_QUEUE, json.dumps(message))
    fake_redis.lpush(INVOICE_IMPORT_QUEUE, "not json")

    jobs = queue_stats.list_jobs(INVOICE_IMPORT_QUEUE, "waiting")
    assert jobs == [{
        "id": "local-import-1-inv.pdf",
        "name": "tasks.process_invoice_import",
        "data": {"file_name": "inv.pdf"},
        "eta": None,
    }]
    assert queue_stats.get_job_counts(INVOICE_IMPORT_QUEUE)["waiting"] == 2
