#!/usr/bin/env python3
"""
Queue status diagnostics: counts, sample jobs per state and dead letters

Usage:
    python check_queue_status.py [queue-name]
"""

import sys
from datetime import datetime, timezone

from celery_app import INVOICE_IMPORT_QUEUE, MONITORED_QUEUES
from services import queue_stats
from utils.redis_connection import close_connection, create_redis_client, test_connection


def _when(ms):
    if not ms:
        return "Unknown"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _file_name(job):
    return (job.get("data") or {}).get("file_name") or job.get("name") or "Unknown"


def print_queue(client, queue):
    counts = queue_stats.get_job_counts(queue, client)
    print(f"Queue {queue}:")
    for state in ("waiting", "active", "completed", "failed", "delayed"):
        print(f"   {state.capitalize()}: {counts[state]}")
    print()

    if counts["waiting"]:
        print("   Waiting jobs (first 10):")
        for job in queue_stats.list_jobs(queue, "waiting", 10, client):
            print(f"   - {_file_name(job)} ({job.get('id')})")
        print()

    if counts["active"]:
        print("   Active jobs:")
        for job in queue_stats.list_jobs(queue, "active", 10, client):
            print(f"   - {_file_name(job)} (started: {_when(job.get('timestamp'))})")
        print()

    if counts["failed"]:
        print("   Recent failed jobs (first 5):")
        for job in queue_stats.list_jobs(queue, "failed", 5, client):
            print(f"   - {_file_name(job)}")
            print(f"     Error: {job.get('failedReason') or 'Unknown error'}")
            print(f"     Failed at: {_when(job.get('finishedOn'))}")
        print()


def main(argv, client=None):
    queues = argv[1:] or [INVOICE_IMPORT_QUEUE]
    unknown = [q for q in queues if q not in MONITORED_QUEUES]
    if unknown:
        print(f"Unknown queue(s): {', '.join(unknown)}. Known: {', '.join(MONITORED_QUEUES)}")
        return 2

    client = client if client is not None else create_redis_client()
    if not test_connection(client):
        print("Cannot reach Redis; check REDIS_URL / REDIS_HOST")
        close_connection(client)
        return 1
    try:
        for queue in queues:
            print_queue(client, queue)
        dead = queue_stats.get_dead_letter_count(client)
        print(f"Dead letter queue: {dead} job(s)")
        for entry in queue_stats.list_dead_letters(5, client):
            print(f"   - {entry['originalQueue']}/{entry['originalJobId']}: {entry.get('error')}")
    except Exception as e:
        print(f"Error checking queue status: {e}")
        return 1
    finally:
        close_connection(client)
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
