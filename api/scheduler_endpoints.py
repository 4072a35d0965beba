"""
Scheduler and Queue Health Endpoints
Read-only views of the scheduler heartbeat, repeatable job registrations and
per-queue job counts
"""

import json
import logging
from datetime import datetime, timezone

import redis
from flask import Blueprint, jsonify

from celery_app import MONITORED_QUEUES, SCHEDULED_TASKS_QUEUE
from config import SCHEDULER_HEARTBEAT_KEY, SCHEDULER_LAST_RUN_KEY, WORKER_HEARTBEAT_KEY
from database_manager import db_manager
from services import queue_stats
from utils.error_handlers import ServiceUnavailableError
from utils.rate_limiting import limiter, limit_for
from utils.redis_connection import get_redis
from workers.repeatable_jobs import RepeatableJobRegistry
from workers.scheduler import describe_jobs

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint('scheduler', __name__)


def _require_redis():
    client = get_redis()
    if client is None:
        raise ServiceUnavailableError("Redis is not configured")
    return client


def _read_json_key(client, key):
    raw = client.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return {"raw": raw}


@scheduler_bp.route("/api/health", methods=["GET"])
@limiter.limit(limit_for("/api/health", "120 per minute"))
def api_health():
    """Process status with database and Redis connectivity"""
    redis_status = "Not Configured"
    client = get_redis()
    if client is not None:
        try:
            client.ping()
            redis_status = "Connected"
        except redis.exceptions.RedisError:
            redis_status = "Disconnected"

    try:
        db_manager.execute_one("SELECT 1 AS ok")
        db_status = "Connected"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "Disconnected"

    return jsonify({
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_status,
        "redis": redis_status,
    })


@scheduler_bp.route("/api/scheduler/health", methods=["GET"])
@limiter.limit(limit_for("/api/scheduler/health"))
def api_scheduler_health():
    """
    Scheduler heartbeat and registrations.

    The heartbeat key expires after 60 s, so a missing key means the
    scheduler process is down.
    """
    client = _require_redis()
    try:
        heartbeat = _read_json_key(client, SCHEDULER_HEARTBEAT_KEY)
        last_run = client.get(SCHEDULER_LAST_RUN_KEY)
        jobs = RepeatableJobRegistry(client, SCHEDULED_TASKS_QUEUE).get_repeatable_jobs()
    except redis.exceptions.RedisError as e:
        raise ServiceUnavailableError(f"Redis error: {e}")

    age = None
    if heartbeat and heartbeat.get("timestamp"):
        beat_at = datetime.fromisoformat(heartbeat["timestamp"])
        age = round((datetime.now(timezone.utc) - beat_at).total_seconds(), 1)

    return jsonify({
        "healthy": heartbeat is not None,
        "heartbeat": {
            "present": heartbeat is not None,
            "ageSeconds": age,
            "data": heartbeat,
        },
        "lastRun": last_run,
        "scheduledJobs": describe_jobs(jobs),
    })


@scheduler_bp.route("/api/queues/status", methods=["GET"])
@limiter.limit(limit_for("/api/queues/status"))
def api_queue_status():
    """Job counts per queue, dead-letter size and the worker heartbeat"""
    client = _require_redis()
    try:
        queues = {name: queue_stats.get_job_counts(name, client) for name in MONITORED_QUEUES}
        dead_letters = queue_stats.get_dead_letter_count(client)
        worker = _read_json_key(client, WORKER_HEARTBEAT_KEY)
    except redis.exceptions.RedisError as e:
        raise ServiceUnavailableError(f"Redis error: {e}")

    return jsonify({
        "queues": queues,
        "deadLetterQueue": {"waiting": dead_letters},
        "worker": {"alive": worker is not None, "heartbeat": worker},
    })
