"""
Import Logger Service
Keeps a rolling log of local-folder import runs in Redis for the log viewer,
plus cumulative statistics and the last run summary
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis

from utils.redis_connection import get_redis

logger = logging.getLogger(__name__)

IMPORT_LOGS_KEY = "import:logs"
IMPORT_STATS_KEY = "import:stats"
IMPORT_LAST_RUN_KEY = "import:lastRun"
MAX_LOGS = 500
LOG_RETENTION_SECONDS = 7 * 24 * 60 * 60


class LogLevel:
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"


_PYTHON_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.DEBUG: logging.DEBUG,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def empty_stats() -> Dict[str, Any]:
    return {
        "totalScans": 0,
        "totalFilesProcessed": 0,
        "totalSuccessful": 0,
        "totalFailed": 0,
        "lastRunAt": None,
        "lastRunDuration": None,
        "lastRunStats": None,
    }


def format_duration(duration_ms: int) -> str:
    if duration_ms > 60000:
        return f"{duration_ms / 60000:.1f} minutes"
    return f"{duration_ms / 1000:.1f} seconds"


class ImportLogger:
    """Redis-backed import log; every Redis failure is logged and swallowed"""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        return self._client if self._client is not None else get_redis()

    def add_log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        logger.log(_PYTHON_LEVELS.get(level, logging.INFO), f"[ImportLog] {message}")
        r = self.client
        if r is None:
            return
        entry = {
            "id": f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
            "timestamp": _now_iso(),
            "level": level,
            "message": message,
            "metadata": metadata or {},
        }
        try:
            r.lpush(IMPORT_LOGS_KEY, json.dumps(entry, default=str))
            r.ltrim(IMPORT_LOGS_KEY, 0, MAX_LOGS - 1)
            r.expire(IMPORT_LOGS_KEY, LOG_RETENTION_SECONDS)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to add import log: {e}")

    def info(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.add_log(LogLevel.INFO, message, metadata)

    def success(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.add_log(LogLevel.SUCCESS, message, metadata)

    def warning(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.add_log(LogLevel.WARNING, message, metadata)

    def error(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.add_log(LogLevel.ERROR, message, metadata)

    def get_logs(self, count: int = 100) -> List[Dict[str, Any]]:
        """Newest first"""
        r = self.client
        if r is None:
            return []
        try:
            raw = r.lrange(IMPORT_LOGS_KEY, 0, count - 1)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to get import logs: {e}")
            return []
        entries = []
        for item in raw:
            try:
                entries.append(json.loads(item))
            except ValueError:
                continue
        return entries

    def clear_logs(self):
        r = self.client
        if r is None:
            return
        try:
            r.delete(IMPORT_LOGS_KEY)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to clear import logs: {e}")
            return
        self.info("Import logs cleared")

    def get_stats(self) -> Dict[str, Any]:
        r = self.client
        if r is None:
            return empty_stats()
        try:
            raw = r.get(IMPORT_STATS_KEY)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to get import stats: {e}")
            return {}
        return json.loads(raw) if raw else empty_stats()

    def update_stats(self, stats: Dict[str, Any]):
        r = self.client
        if r is None:
            return
        updated = dict(self.get_stats())
        updated.update(stats)
        updated["updatedAt"] = _now_iso()
        try:
            r.set(IMPORT_STATS_KEY, json.dumps(updated, default=str))
            r.expire(IMPORT_STATS_KEY, LOG_RETENTION_SECONDS)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to update import stats: {e}")

    def _set_last_run(self, payload: Dict[str, Any]):
        r = self.client
        if r is None:
            return
        try:
            r.set(IMPORT_LAST_RUN_KEY, json.dumps(payload, default=str))
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to record import run: {e}")

    def start_run(self) -> Dict[str, Any]:
        started = time.time()
        run = {
            "runId": f"run-{int(started * 1000)}",
            "startTime": started,
            "startTimestamp": _now_iso(),
        }
        self.info(f"Import scan started (Run ID: {run['runId']})")
        self._set_last_run({"runId": run["runId"], "startedAt": run["startTimestamp"], "status": "running"})
        return run

    def end_run(self, run: Dict[str, Any], results: Dict[str, Any]) -> Dict[str, Any]:
        duration = int((time.time() - run["startTime"]) * 1000)
        duration_str = format_duration(duration)
        errors = results.get("errors") or []

        summary = dict(results)
        summary.update({"runId": run["runId"], "duration": duration})
        self.add_log(
            LogLevel.WARNING if errors else LogLevel.SUCCESS,
            f"Import scan completed in {duration_str}",
            summary,
        )
        if results.get("scanned"):
            self.info(f"  Files scanned: {results['scanned']}")
        if results.get("queued"):
            self.success(f"  Files queued for processing: {results['queued']}")
        if results.get("duplicates"):
            self.info(f"  Duplicates skipped: {results['duplicates']}")
        if results.get("skipped"):
            self.info(f"  Files skipped: {results['skipped']}")
        if errors:
            self.error(f"  Errors: {len(errors)}")
            for error in errors[:5]:
                self.error(f"    - {error.get('fileName') or 'Unknown'}: {error.get('error')}")

        existing = self.get_stats()
        self.update_stats({
            "totalScans": (existing.get("totalScans") or 0) + 1,
            "totalFilesProcessed": (existing.get("totalFilesProcessed") or 0) + (results.get("queued") or 0),
            "totalSuccessful": (existing.get("totalSuccessful") or 0) + (results.get("queued") or 0),
            "totalFailed": (existing.get("totalFailed") or 0) + len(errors),
            "lastRunAt": _now_iso(),
            "lastRunDuration": duration,
            "lastRunStats": results,
        })
        self._set_last_run({
            "runId": run["runId"],
            "startedAt": run["startTimestamp"],
            "endedAt": _now_iso(),
            "duration": duration,
            "status": "completed",
            "results": results,
        })
        return {"duration": duration, "durationStr": duration_str}

    def get_last_run(self) -> Optional[Dict[str, Any]]:
        r = self.client
        if r is None:
            return None
        try:
            raw = r.get(IMPORT_LAST_RUN_KEY)
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to get last import run: {e}")
            return None
        return json.loads(raw) if raw else None


import_logger = ImportLogger()
