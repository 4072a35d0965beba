"""
Queue Bookkeeping
Per-queue job counts, finished-job history and the dead-letter list, kept
in Redis next to the Celery broker lists
"""

import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional

from celery_app import DEAD_LETTER_KEY, MONITORED_QUEUES, retention_for
from utils.redis_connection import get_redis

logger = logging.getLogger(__name__)

JOB_STATES = ("waiting", "active", "completed", "failed", "delayed")


def _key(queue: str, state: str) -> str:
    return f"queue:{queue}:{state}"


def _client(client):
    return client if client is not None else get_redis()


def get_job_counts(queue: str, client=None) -> Dict[str, int]:
    """Counts for one queue: waiting is the broker list, the rest are tracked by the worker"""
    r = _client(client)
    return {
        "waiting": int(r.llen(queue) or 0),
        "active": int(r.hlen(_key(queue, "active")) or 0),
        "completed": int(r.zcard(_key(queue, "completed")) or 0),
        "failed": int(r.zcard(_key(queue, "failed")) or 0),
        "delayed": int(r.hlen(_key(queue, "delayed")) or 0),
    }


def get_all_job_counts(client=None) -> Dict[str, Dict[str, int]]:
    return {queue: get_job_counts(queue, client) for queue in MONITORED_QUEUES}


def _job_record(job_id: str, name: Optional[str], data: Any, **extra) -> Dict[str, Any]:
    record = {"id": job_id, "name": name, "data": data, "timestamp": int(time.time() * 1000)}
    record.update(extra)
    return record


def mark_active(queue: str, job_id: str, name: Optional[str] = None, data: Any = None, client=None):
    r = _client(client)
    r.hdel(_key(queue, "delayed"), job_id)
    r.hset(_key(queue, "active"), job_id, json.dumps(_job_record(job_id, name, data), default=str))


def mark_inactive(queue: str, job_id: str, client=None):
    _client(client).hdel(_key(queue, "active"), job_id)


def mark_delayed(queue: str, job_id: str, name: Optional[str] = None, data: Any = None,
                 reason: Optional[str] = None, client=None):
    r = _client(client)
    record = _job_record(job_id, name, data, failedReason=reason)
    r.hset(_key(queue, "delayed"), job_id, json.dumps(record, default=str))


def _trim(r, key: str, max_age: int, max_count: Optional[int] = None):
    r.zremrangebyscore(key, "-inf", time.time() - max_age)
    if max_count is not None:
        # keep only the newest max_count entries
        r.zremrangebyrank(key, 0, -(max_count + 1))


def record_completed(queue: str, job_id: str, name: Optional[str] = None, data: Any = None,
                     result: Any = None, client=None):
    r = _client(client)
    key = _key(queue, "completed")
    now = time.time()
    record = _job_record(job_id, name, data, returnvalue=result, finishedOn=int(now * 1000))
    r.zadd(key, {json.dumps(record, default=str): now})
    retention = retention_for(queue, name)
    _trim(r, key, retention["keep_completed_age"], retention["keep_completed_count"])


def record_failed(queue: str, job_id: str, name: Optional[str] = None, data: Any = None,
                  error: Optional[str] = None, attempts: int = 0, client=None):
    r = _client(client)
    key = _key(queue, "failed")
    now = time.time()
    record = _job_record(job_id, name, data, failedReason=error, attemptsMade=attempts,
                         finishedOn=int(now * 1000))
    r.zadd(key, {json.dumps(record, default=str): now})
    retention = retention_for(queue, name)
    _trim(r, key, retention["keep_failed_age"])


def move_to_dead_letter(queue: str, job_id: str, data: Any, error: Optional[str],
                        attempts: int, client=None) -> Dict[str, Any]:
    """Park a job that exhausted its retries; dead letters are kept until reviewed"""
    entry = {
        "originalQueue": queue,
        "originalJobId": job_id,
        "data": data,
        "error": error,
        "attemptsMade": attempts,
        "failedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    _client(client).lpush(DEAD_LETTER_KEY, json.dumps(entry, default=str))
    logger.error(f"Job {job_id} from {queue} moved to dead letter queue after {attempts} attempts: {error}")
    return entry


def get_dead_letter_count(client=None) -> int:
    return int(_client(client).llen(DEAD_LETTER_KEY) or 0)


def list_dead_letters(limit: int = 10, client=None) -> List[Dict[str, Any]]:
    raw = _client(client).lrange(DEAD_LETTER_KEY, 0, limit - 1)
    return [json.loads(item) for item in raw]


def _decode_broker_message(raw: str) -> Optional[Dict[str, Any]]:
    """Turn a kombu message sitting on the broker list into a job record"""
    try:
        message = json.loads(raw)
        headers = message.get("headers") or {}
        body = message.get("body")
        kwargs = {}
        if body and (message.get("properties") or {}).get("body_encoding") == "base64":
            decoded = json.loads(base64.b64decode(body))
            if isinstance(decoded, list) and len(decoded) > 1:
                kwargs = decoded[1] or {}
        return {
            "id": headers.get("id"),
            "name": headers.get("task"),
            "data": kwargs,
            "eta": headers.get("eta"),
        }
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not decode queued message: {e}")
        return None


def list_jobs(queue: str, state: str, limit: int = 10, client=None) -> List[Dict[str, Any]]:
    """Newest-first job records for one state of one queue"""
    if state not in JOB_STATES:
        raise ValueError(f"Unknown job state '{state}'")
    r = _client(client)

    if state == "waiting":
        # kombu pushes with LPUSH and consumes from the tail
        raw = r.lrange(queue, 0, limit - 1)
        return [job for job in (_decode_broker_message(item) for item in raw) if job]

    if state in ("active", "delayed"):
        jobs = [json.loads(item) for item in (r.hgetall(_key(queue, state)) or {}).values()]
        jobs.sort(key=lambda job: job.get("timestamp", 0), reverse=True)
        return jobs[:limit]

    raw = r.zrevrange(_key(queue, state), 0, limit - 1)
    return [json.loads(item) for item in raw]
