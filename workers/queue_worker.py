"""
Queue Worker Process
Celery worker for the file-import, invoice-import, email and scheduled-tasks
queues, with job bookkeeping, dead-letter handling, a heartbeat and queue
health monitoring. Start with:

    celery -A workers.queue_worker worker -Q file-import,invoice-import,email,scheduled-tasks

Stalled jobs are covered by Celery's late acknowledgement: a job whose
worker dies is re-delivered after the broker visibility timeout.
"""

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis
from celery.signals import (
    task_prerun,
    task_postrun,
    task_retry,
    task_success,
    task_failure,
    worker_ready,
    worker_shutdown,
)

from celery_app import celery_app, MONITORED_QUEUES, SCHEDULED_TASK, QUEUE_OPTIONS, PermanentJobError
from config import (
    WORKER_HEARTBEAT_KEY,
    HEARTBEAT_TTL_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    HEALTH_MONITOR_INTERVAL_SECONDS,
    STATS_INTERVAL_SECONDS,
    QUEUE_ALERT_THRESHOLD,
    FAILED_ALERT_THRESHOLD,
)
from services import queue_stats
from utils.logging_setup import configure_logging
from utils.monitoring import set_queue_depth
from utils.redis_connection import create_redis_client, close_connection

logger = logging.getLogger(__name__)

__all__ = ["celery_app", "WorkerMonitor", "monitor"]


def queue_of(task, request=None) -> str:
    """Queue a job was delivered from, falling back to the static route table"""
    request = request if request is not None else task.request
    delivery_info = getattr(request, "delivery_info", None) or {}
    queue = delivery_info.get("routing_key")
    if queue:
        return queue
    route = celery_app.conf.task_routes.get(getattr(task, "name", None), {})
    return route.get("queue", celery_app.conf.task_default_queue)


def job_name_of(task_name: str, kwargs: Optional[Dict[str, Any]]) -> str:
    """Scheduled jobs are tracked under their schedule name, others under the task name"""
    if task_name == SCHEDULED_TASK and kwargs and kwargs.get("task"):
        return kwargs["task"]
    return task_name


class WorkerMonitor:
    """Heartbeat, health monitor and job bookkeeping for one worker process"""

    def __init__(self, client=None, workers: int = len(MONITORED_QUEUES)):
        self._client = client
        self.workers = workers
        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at = time.monotonic()
        self.last_failed_counts: Dict[str, int] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = create_redis_client()
        return self._client

    @property
    def uptime(self) -> float:
        return round(time.monotonic() - self._started_at, 3)

    # === Liveness ===

    def update_heartbeat(self):
        payload = json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pid": os.getpid(),
            "uptime": self.uptime,
            "workers": self.workers,
        })
        try:
            self.client.setex(WORKER_HEARTBEAT_KEY, HEARTBEAT_TTL_SECONDS, payload)
        except redis.exceptions.RedisError:
            pass

    def monitor_queue_health(self):
        """Warn on backlogs and on bursts of new failures"""
        for name in MONITORED_QUEUES:
            try:
                counts = queue_stats.get_job_counts(name, self.client)
            except redis.exceptions.RedisError as e:
                logger.warning(f"Could not read counts for {name}: {e}")
                continue

            if counts["waiting"] > QUEUE_ALERT_THRESHOLD:
                logger.warning(
                    f"ALERT: {name} queue has {counts['waiting']} waiting jobs (threshold: {QUEUE_ALERT_THRESHOLD})"
                )
            last_failed = self.last_failed_counts.get(name, 0)
            if counts["failed"] > last_failed + FAILED_ALERT_THRESHOLD:
                logger.warning(f"ALERT: {name} queue has {counts['failed'] - last_failed} new failed jobs")
            self.last_failed_counts[name] = counts["failed"]
            set_queue_depth(name, counts)

    def log_stats(self):
        try:
            for name in MONITORED_QUEUES:
                counts = queue_stats.get_job_counts(name, self.client)
                if counts["waiting"] or counts["active"]:
                    logger.info(
                        f"Queue {name}: {counts['waiting']} waiting, {counts['active']} active, "
                        f"{counts['completed']} completed, {counts['failed']} failed"
                    )
        except redis.exceptions.RedisError:
            pass

    def get_health_status(self) -> Dict[str, Any]:
        status = {
            "healthy": False,
            "uptime": self.uptime,
            "pid": os.getpid(),
            "workers": self.workers,
            "queues": {},
            "redisConnected": False,
        }
        try:
            self.client.ping()
            status["redisConnected"] = True
            for name in MONITORED_QUEUES:
                status["queues"][name] = queue_stats.get_job_counts(name, self.client)
            status["deadLetterQueue"] = {"waiting": queue_stats.get_dead_letter_count(self.client)}
            status["healthy"] = True
        except redis.exceptions.RedisError as e:
            status["error"] = str(e)
        return status

    # === Background loop ===

    def _run(self):
        next_heartbeat = next_monitor = next_stats = time.monotonic()
        while not self.stop_event.is_set():
            current = time.monotonic()
            if current >= next_heartbeat:
                self.update_heartbeat()
                next_heartbeat = current + HEARTBEAT_INTERVAL_SECONDS
            if current >= next_monitor:
                self.monitor_queue_health()
                next_monitor = current + HEALTH_MONITOR_INTERVAL_SECONDS
            if current >= next_stats:
                self.log_stats()
                next_stats = current + STATS_INTERVAL_SECONDS
            self.stop_event.wait(1)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="queue-worker-monitor", daemon=True)
        self._thread.start()
        logger.info("Queue worker monitor started")

    def stop(self):
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        if self._client is not None:
            close_connection(self._client)
            self._client = None
        logger.info("Queue worker monitor stopped")

    # === Job bookkeeping ===

    def job_started(self, queue: str, job_id: str, name: str, data: Any):
        try:
            queue_stats.mark_active(queue, job_id, name, data, self.client)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Bookkeeping failed for job {job_id}: {e}")

    def job_finished(self, queue: str, job_id: str):
        try:
            queue_stats.mark_inactive(queue, job_id, self.client)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Bookkeeping failed for job {job_id}: {e}")

    def job_retrying(self, queue: str, job_id: str, name: str, data: Any, reason: str, attempt: int):
        max_attempts = QUEUE_OPTIONS[queue].attempts if queue in QUEUE_OPTIONS else attempt + 1
        logger.warning(f"Job {name} ({job_id}) on {queue} deferred, attempt {attempt}/{max_attempts}: {reason}")
        try:
            queue_stats.mark_delayed(queue, job_id, name, data, reason, self.client)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Bookkeeping failed for job {job_id}: {e}")

    def job_succeeded(self, queue: str, job_id: str, name: str, data: Any, result: Any):
        if isinstance(result, dict) and result.get("alreadySent"):
            logger.info(f"Job {name} ({job_id}) skipped (already sent)")
        else:
            logger.info(f"Job {name} ({job_id}) on {queue} completed")
        try:
            queue_stats.record_completed(queue, job_id, name, data, result, self.client)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Bookkeeping failed for job {job_id}: {e}")

    def job_failed(self, queue: str, job_id: str, name: str, data: Any, error: BaseException, attempts: int):
        """Final failure: retries are exhausted or the error was permanent"""
        permanent = isinstance(error, PermanentJobError)
        logger.error(
            f"Job {name} ({job_id}) on {queue} failed after {attempts} attempt(s)"
            f"{' (permanent)' if permanent else ''}: {error}"
        )
        try:
            queue_stats.record_failed(queue, job_id, name, data, str(error), attempts, self.client)
            queue_stats.move_to_dead_letter(queue, job_id, data, str(error), attempts, self.client)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to move job {job_id} to dead letter queue: {e}")


monitor = WorkerMonitor()


@worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    configure_logging()
    consume_from = getattr(getattr(sender, "app", celery_app).amqp.queues, "consume_from", None)
    if consume_from:
        monitor.workers = len(consume_from)
    monitor.start()
    logger.info(f"Queue worker initialized and ready ({monitor.workers} queues)")


@worker_shutdown.connect
def on_worker_shutdown(sender=None, **kwargs):
    logger.info("Closing queue worker...")
    monitor.stop()


@task_prerun.connect
def on_task_prerun(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    monitor.job_started(queue_of(task), task_id, job_name_of(task.name, kwargs), kwargs)


@task_postrun.connect
def on_task_postrun(sender=None, task_id=None, task=None, **extra):
    monitor.job_finished(queue_of(task), task_id)


@task_retry.connect
def on_task_retry(sender=None, request=None, reason=None, **extra):
    kwargs = getattr(request, "kwargs", None) or {}
    monitor.job_retrying(
        queue_of(sender, request), request.id, job_name_of(sender.name, kwargs), kwargs,
        str(reason), (request.retries or 0) + 1,
    )


@task_success.connect
def on_task_success(sender=None, result=None, **extra):
    request = sender.request
    kwargs = request.kwargs or {}
    monitor.job_succeeded(queue_of(sender), request.id, job_name_of(sender.name, kwargs), kwargs, result)


@task_failure.connect
def on_task_failure(sender=None, task_id=None, exception=None, kwargs=None, **extra):
    attempts = (sender.request.retries or 0) + 1
    monitor.job_failed(queue_of(sender), task_id, job_name_of(sender.name, kwargs), kwargs, exception, attempts)
