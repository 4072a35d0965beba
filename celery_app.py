"""
Celery Configuration for Background Job Processing
Named queues for file import, invoice import, email delivery and scheduled
tasks, with per-queue retry and retention defaults
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from celery import Celery
from kombu import Queue
from dotenv import load_dotenv

from config import REDIS_URL, EMAIL_RATE_LIMITS, EMAIL_RATE_MAX, EMAIL_RATE_DURATION_MS, EMAIL_PROVIDER

load_dotenv()

# Queue names
FILE_IMPORT_QUEUE = 'file-import'
INVOICE_IMPORT_QUEUE = 'invoice-import'
EMAIL_QUEUE = 'email'
SCHEDULED_TASKS_QUEUE = 'scheduled-tasks'
DEAD_LETTER_KEY = 'dead-letter'

MONITORED_QUEUES = (FILE_IMPORT_QUEUE, INVOICE_IMPORT_QUEUE, EMAIL_QUEUE, SCHEDULED_TASKS_QUEUE)

# Task names
SCHEDULED_TASK = 'tasks.run_scheduled_task'
FILE_IMPORT_TASK = 'tasks.process_file_import'
INVOICE_IMPORT_TASK = 'tasks.process_invoice_import'
SEND_EMAIL_TASK = 'tasks.send_email'

HOUR = 3600
DAY = 24 * HOUR


class PermanentJobError(Exception):
    """Raised by a task when retrying cannot help; the job goes straight to dead-letter"""


@dataclass(frozen=True)
class QueueOptions:
    """Retry and history-retention defaults for jobs on one queue"""
    attempts: int
    backoff_seconds: int
    keep_completed_age: int
    keep_completed_count: int
    keep_failed_age: int
    backoff_max_seconds: int = 600

    @property
    def max_retries(self) -> int:
        return self.attempts - 1


QUEUE_OPTIONS: Dict[str, QueueOptions] = {
    FILE_IMPORT_QUEUE: QueueOptions(
        attempts=3, backoff_seconds=2,
        keep_completed_age=DAY, keep_completed_count=1000, keep_failed_age=7 * DAY,
    ),
    INVOICE_IMPORT_QUEUE: QueueOptions(
        attempts=2, backoff_seconds=2,
        keep_completed_age=DAY, keep_completed_count=500, keep_failed_age=7 * DAY,
    ),
    # 1m, 2m, 4m ... capped at an hour
    EMAIL_QUEUE: QueueOptions(
        attempts=10, backoff_seconds=60, backoff_max_seconds=HOUR,
        keep_completed_age=7 * DAY, keep_completed_count=5000, keep_failed_age=30 * DAY,
    ),
    SCHEDULED_TASKS_QUEUE: QueueOptions(
        attempts=3, backoff_seconds=5,
        keep_completed_age=7 * DAY, keep_completed_count=100, keep_failed_age=30 * DAY,
    ),
}

# Repeatable scheduled jobs keep their own history windows
SCHEDULED_JOB_RETENTION: Dict[str, Dict[str, int]] = {
    'file-cleanup': {'keep_completed_age': 7 * DAY, 'keep_completed_count': 100, 'keep_failed_age': 30 * DAY},
    'document-retention-cleanup': {'keep_completed_age': 7 * DAY, 'keep_completed_count': 168, 'keep_failed_age': 30 * DAY},
    'local-folder-scan': {'keep_completed_age': DAY, 'keep_completed_count': 50, 'keep_failed_age': 7 * DAY},
}


def retention_for(queue: str, job_name: Optional[str] = None) -> Dict[str, int]:
    if queue == SCHEDULED_TASKS_QUEUE and job_name in SCHEDULED_JOB_RETENTION:
        return dict(SCHEDULED_JOB_RETENTION[job_name])
    options = QUEUE_OPTIONS.get(queue, QUEUE_OPTIONS[SCHEDULED_TASKS_QUEUE])
    return {
        'keep_completed_age': options.keep_completed_age,
        'keep_completed_count': options.keep_completed_count,
        'keep_failed_age': options.keep_failed_age,
    }


def email_rate_limit(provider: str = EMAIL_PROVIDER) -> str:
    """Celery rate limit string (per minute) for the configured mail provider"""
    max_jobs, duration_ms = EMAIL_RATE_LIMITS.get(provider, (EMAIL_RATE_MAX, EMAIL_RATE_DURATION_MS))
    per_minute = max_jobs * 60000 / duration_ms
    return f"{per_minute:g}/m"


# Create Celery app
celery_app = Celery(
    'invoice_portal',
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=['tasks.scheduled_tasks', 'tasks.import_tasks', 'tasks.email_tasks']
)

# Celery configuration
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,
    # A job is only removed from the broker once it finished; a lost worker re-delivers it
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_transport_options={'visibility_timeout': 2 * HOUR},
    result_expires=7 * DAY,
    task_queues=[Queue(name) for name in MONITORED_QUEUES],
    task_default_queue=SCHEDULED_TASKS_QUEUE,
    task_routes={
        SCHEDULED_TASK: {'queue': SCHEDULED_TASKS_QUEUE},
        FILE_IMPORT_TASK: {'queue': FILE_IMPORT_QUEUE},
        INVOICE_IMPORT_TASK: {'queue': INVOICE_IMPORT_QUEUE},
        SEND_EMAIL_TASK: {'queue': EMAIL_QUEUE},
    },
    task_annotations={
        SEND_EMAIL_TASK: {'rate_limit': email_rate_limit()},
    },
)


def enqueue(queue: str, task_name: str, kwargs: Dict[str, Any],
            job_id: Optional[str] = None, countdown: Optional[float] = None):
    """Send a job by task name onto a named queue"""
    return celery_app.send_task(
        task_name,
        kwargs=kwargs,
        queue=queue,
        task_id=job_id,
        countdown=countdown,
    )


if __name__ == '__main__':
    celery_app.start()
