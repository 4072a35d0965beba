"""
Scheduler Worker Process
Owns the repeatable jobs (file cleanup, document retention cleanup, local
folder scan) and enqueues them on the scheduled-tasks queue when due.
Run as its own process next to the Celery workers:

    python -m workers.scheduler

Registrations live in Redis, so they survive restarts; on shutdown they are
left in place and picked up again by the next scheduler.
"""

import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis

from celery_app import (
    SCHEDULED_TASKS_QUEUE,
    SCHEDULED_TASK,
    SCHEDULED_JOB_RETENTION,
    enqueue,
)
from config import (
    TIMEZONE,
    SCHEDULER_HEARTBEAT_KEY,
    SCHEDULER_LAST_RUN_KEY,
    HEARTBEAT_TTL_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    STATUS_INTERVAL_SECONDS,
    SCHEDULER_TICK_SECONDS,
    REDIS_READY_MAX_RETRIES,
    REDIS_READY_RETRY_DELAY_SECONDS,
    MISSED_JOB_THRESHOLD_HOURS,
    DEFAULT_IMPORT_FREQUENCY_MINUTES,
)
from services.queue_stats import get_job_counts
from services.settings_service import get_settings
from utils.logging_setup import configure_logging
from utils.monitoring import track_dispatch
from utils.redis_connection import create_redis_client, close_connection
from workers.repeatable_jobs import RepeatableJobRegistry, from_ms

logger = logging.getLogger(__name__)

FILE_CLEANUP_JOB = 'file-cleanup'
RETENTION_CLEANUP_JOB = 'document-retention-cleanup'
FOLDER_SCAN_JOB = 'local-folder-scan'

FILE_CLEANUP_PATTERN = '0 2 * * *'  # daily at 02:00
RETENTION_CLEANUP_PATTERN = '0 * * * *'  # hourly at :00


class RedisNotReadyError(RuntimeError):
    pass


def get_cron_pattern(frequency_minutes: int) -> str:
    """Cron pattern for an import frequency in minutes"""
    if frequency_minutes < 60:
        return f"*/{frequency_minutes} * * * *"
    if frequency_minutes == 60:
        return "0 * * * *"
    if frequency_minutes < 1440:
        return f"0 */{frequency_minutes // 60} * * *"
    return "0 0 * * *"


def get_frequency_label(frequency_minutes: int) -> str:
    if frequency_minutes < 60:
        return f"every {frequency_minutes} minutes"
    if frequency_minutes == 60:
        return "hourly"
    if frequency_minutes < 1440:
        return f"every {frequency_minutes // 60} hours"
    return "daily"


def _job_opts(name: str) -> Dict[str, Any]:
    return dict(SCHEDULED_JOB_RETENTION[name])


def reschedule_import_job(registry: RepeatableJobRegistry, enabled: bool, frequency_minutes: int,
                          tz: str = TIMEZONE) -> Optional[str]:
    """Replace the local-folder-scan registration; returns the new pattern or None when disabled

    An unchanged pattern keeps its registration and pending next run.
    """
    pattern = get_cron_pattern(frequency_minutes) if enabled else None
    keep = registry.make_key(FOLDER_SCAN_JOB, pattern, tz) if pattern else None
    for job in registry.get_repeatable_jobs():
        if job["name"] == FOLDER_SCAN_JOB and job["key"] != keep:
            registry.remove_repeatable_by_key(job["key"])
            logger.info(f"Removed existing {FOLDER_SCAN_JOB} registration ({job['pattern']})")

    if not enabled:
        logger.info("Local folder scan is disabled in settings")
        return None

    registry.add(FOLDER_SCAN_JOB, {"task": FOLDER_SCAN_JOB}, pattern, tz, _job_opts(FOLDER_SCAN_JOB))
    logger.info(f"Local folder scan scheduled: {get_frequency_label(frequency_minutes)} ({pattern})")
    return pattern


class SchedulerWorker:
    """
    Single-threaded scheduler loop.

    Args:
        client: Redis connection used for the queue and the registry
        health_client: separate Redis connection for heartbeat / last-run keys
        db: DatabaseManager for reading import settings
        tz: time zone the cron patterns are evaluated in
        sleep: injectable sleep used between Redis readiness checks
    """

    def __init__(self, client=None, health_client=None, db=None, tz: str = TIMEZONE, sleep=time.sleep):
        self.client = client if client is not None else create_redis_client()
        self.health_client = health_client if health_client is not None else create_redis_client(max_retries=3)
        self.db = db
        self.tz = tz
        self.registry = RepeatableJobRegistry(self.client, SCHEDULED_TASKS_QUEUE)
        self.stop_event = threading.Event()
        self.shutdown_signal: Optional[str] = None
        self._sleep = sleep
        self._started_at = time.monotonic()

    @property
    def uptime(self) -> float:
        return round(time.monotonic() - self._started_at, 3)

    # === Startup checks ===

    def wait_for_redis(self, max_retries: int = REDIS_READY_MAX_RETRIES,
                       retry_delay: float = REDIS_READY_RETRY_DELAY_SECONDS) -> bool:
        for attempt in range(1, max_retries + 1):
            try:
                get_job_counts(SCHEDULED_TASKS_QUEUE, self.client)
                logger.info("Redis connection verified")
                return True
            except redis.exceptions.RedisError as e:
                logger.info(f"Waiting for Redis... ({attempt}/{max_retries}): {e}")
                if attempt < max_retries:
                    self._sleep(retry_delay)
        raise RedisNotReadyError("Redis connection failed after maximum retries")

    def check_missed_jobs(self, now: Optional[datetime] = None):
        """Warn when the scheduler was down long enough to miss a daily run"""
        now = now or datetime.now(timezone.utc)
        try:
            last_run_raw = self.health_client.get(SCHEDULER_LAST_RUN_KEY)
            if last_run_raw:
                last_run = datetime.fromisoformat(last_run_raw.replace("Z", "+00:00"))
                if last_run.tzinfo is None:
                    last_run = last_run.replace(tzinfo=timezone.utc)
                hours_since = (now - last_run).total_seconds() / 3600
                if hours_since > MISSED_JOB_THRESHOLD_HOURS:
                    logger.warning(
                        f"Scheduler was down for {hours_since:.1f} hours; some scheduled jobs may have "
                        f"been missed (last run: {last_run.isoformat()})"
                    )
            self.health_client.set(SCHEDULER_LAST_RUN_KEY, now.isoformat())
        except (redis.exceptions.RedisError, ValueError) as e:
            logger.warning(f"Could not check for missed jobs: {e}")

    # === Liveness ===

    def update_heartbeat(self):
        payload = json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pid": os.getpid(),
            "uptime": self.uptime,
        })
        try:
            self.health_client.setex(SCHEDULER_HEARTBEAT_KEY, HEARTBEAT_TTL_SECONDS, payload)
        except redis.exceptions.RedisError:
            # a missing heartbeat is the signal; no log spam every 30 s
            pass

    def get_health_status(self) -> Dict[str, Any]:
        status = {
            "healthy": False,
            "uptime": self.uptime,
            "pid": os.getpid(),
            "scheduledJobs": [],
            "redisConnected": False,
        }
        try:
            status["scheduledJobs"] = describe_jobs(self.registry.get_repeatable_jobs())
            status["redisConnected"] = True
            status["healthy"] = True
        except redis.exceptions.RedisError as e:
            status["error"] = str(e)
        return status

    # === Registrations ===

    def _load_import_settings(self):
        frequency = DEFAULT_IMPORT_FREQUENCY_MINUTES
        enabled = True
        try:
            import_settings = get_settings(self.db, use_cache=False).import_settings
            frequency = import_settings.frequency or DEFAULT_IMPORT_FREQUENCY_MINUTES
            enabled = import_settings.enabled is not False
        except Exception as e:
            logger.warning(f"Could not load import settings, using defaults: {e}")
        return enabled, frequency

    def setup_scheduled_jobs(self) -> bool:
        """Register the current set of repeatable jobs and drop stale registrations

        Registrations that are re-registered unchanged keep their pending
        next run, so a slot missed while the scheduler was down still fires
        once on the first tick after a restart.
        """
        try:
            current = set()
            job = self.registry.add(FILE_CLEANUP_JOB, {"task": FILE_CLEANUP_JOB}, FILE_CLEANUP_PATTERN,
                                    self.tz, _job_opts(FILE_CLEANUP_JOB))
            current.add(job["key"])
            logger.info("File cleanup scheduled: daily at 2:00 AM")

            job = self.registry.add(RETENTION_CLEANUP_JOB, {"task": RETENTION_CLEANUP_JOB},
                                    RETENTION_CLEANUP_PATTERN, self.tz, _job_opts(RETENTION_CLEANUP_JOB))
            current.add(job["key"])
            logger.info("Document retention cleanup scheduled: hourly at :00")

            enabled, frequency = self._load_import_settings()
            pattern = reschedule_import_job(self.registry, enabled, frequency, self.tz)
            if pattern:
                current.add(self.registry.make_key(FOLDER_SCAN_JOB, pattern, self.tz))

            for job in self.registry.get_repeatable_jobs():
                if job["key"] not in current:
                    self.registry.remove_repeatable_by_key(job["key"])
                    logger.info(f"Removed stale repeatable job: {job['name']} ({job['pattern']})")

            logger.info("All scheduled jobs configured")
            return True
        except Exception as e:
            logger.error(f"Error setting up scheduled jobs: {e}", exc_info=True)
            return False

    # === Loop ===

    def dispatch_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Enqueue every registration whose next run has passed, then move it forward"""
        now = now or datetime.now(timezone.utc)
        dispatched = 0
        for job in self.registry.due_jobs(now):
            job_id = f"repeat:{job['key']}:{job['next']}"
            try:
                enqueue(SCHEDULED_TASKS_QUEUE, SCHEDULED_TASK, job.get("data") or {"task": job["name"]}, job_id=job_id)
            except Exception as e:
                # stays due; retried on the next tick
                logger.error(f"Failed to enqueue {job['name']}: {e}")
                continue
            self.registry.advance(job["key"], now)
            track_dispatch(job["name"])
            dispatched += 1
            logger.info(f"Enqueued scheduled job {job['name']} ({job_id})")
        return dispatched

    def log_status(self):
        try:
            jobs = self.registry.get_repeatable_jobs()
            if jobs:
                logger.info(f"Active scheduled jobs: {len(jobs)}")
                for job in describe_jobs(jobs):
                    logger.info(f"  - {job['name']}: next run at {job['nextRun'] or 'unknown'}")
            self.health_client.set(SCHEDULER_LAST_RUN_KEY, datetime.now(timezone.utc).isoformat())
        except redis.exceptions.RedisError as e:
            logger.warning(f"Error in status interval: {e}")

    def initialize(self):
        """Startup sequence; raises RedisNotReadyError when Redis never answers"""
        logger.info("Checking Redis connection...")
        self.wait_for_redis()
        self.check_missed_jobs()
        if not self.setup_scheduled_jobs():
            logger.error("Failed to setup scheduled jobs, will retry on next restart")
        self.update_heartbeat()
        logger.info("Scheduler initialized")

    def run(self, tick: float = SCHEDULER_TICK_SECONDS):
        next_heartbeat = time.monotonic() + HEARTBEAT_INTERVAL_SECONDS
        next_status = time.monotonic() + STATUS_INTERVAL_SECONDS
        while not self.stop_event.is_set():
            try:
                self.dispatch_due_jobs()
            except redis.exceptions.RedisError as e:
                logger.warning(f"Dispatch tick failed: {e}")

            current = time.monotonic()
            if current >= next_heartbeat:
                self.update_heartbeat()
                next_heartbeat = current + HEARTBEAT_INTERVAL_SECONDS
            if current >= next_status:
                self.log_status()
                next_status = current + STATUS_INTERVAL_SECONDS

            self.stop_event.wait(tick)

    def request_stop(self, signum, frame=None):
        self.shutdown_signal = signal.Signals(signum).name
        logger.info(f"Received {self.shutdown_signal}, stopping scheduler...")
        self.stop_event.set()

    def shutdown(self) -> int:
        """Close connections; registrations stay in Redis for the next start"""
        self.stop_event.set()
        try:
            close_connection(self.health_client)
            close_connection(self.client)
            logger.info("Scheduler stopped gracefully")
            return 0
        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}", exc_info=True)
            return 1


def describe_jobs(jobs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": job["name"],
            "pattern": job["pattern"],
            "nextRun": from_ms(job["next"]).isoformat() if job.get("next") else None,
        }
        for job in jobs
    ]


def main() -> int:
    configure_logging()
    logger.info("Initializing scheduler worker...")
    scheduler = SchedulerWorker()

    signal.signal(signal.SIGTERM, scheduler.request_stop)
    signal.signal(signal.SIGINT, scheduler.request_stop)

    try:
        scheduler.initialize()
    except RedisNotReadyError as e:
        logger.error(f"Failed to initialize scheduler: {e}. Exiting so the supervisor restarts it")
        return 1

    scheduler.run()
    return scheduler.shutdown()


if __name__ == '__main__':
    sys.exit(main())
