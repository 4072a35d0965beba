"""
Import Settings Endpoints
Schedule, logs and manual trigger for the local FTP folder import
"""

import logging

import redis
from flask import Blueprint, jsonify, request

from celery_app import SCHEDULED_TASKS_QUEUE
from config import TIMEZONE
from services.folder_scanner import FolderScanner
from services.import_logger import import_logger
from services.settings_service import VALID_FREQUENCIES, get_settings, invalidate_cache, update_import_settings
from utils.error_handlers import ServiceUnavailableError, ValidationError
from utils.rate_limiting import limiter, limit_for
from utils.redis_connection import get_redis
from utils.request_logging import log_job_trigger
from workers.repeatable_jobs import RepeatableJobRegistry, from_ms
from workers.scheduler import FOLDER_SCAN_JOB, reschedule_import_job

logger = logging.getLogger(__name__)

import_settings_bp = Blueprint('import_settings', __name__, url_prefix='/api/import-settings')

MAX_LOG_COUNT = 500


def frequency_option_label(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes == 60:
        return "1 hour"
    if minutes < 1440:
        return f"{minutes // 60} hours"
    return "24 hours"


def _registry():
    client = get_redis()
    if client is None:
        return None
    return RepeatableJobRegistry(client, SCHEDULED_TASKS_QUEUE)


def _next_scheduled_run():
    registry = _registry()
    if registry is None:
        return None
    try:
        jobs = registry.get_repeatable_jobs()
    except redis.exceptions.RedisError as e:
        logger.warning(f"Could not read repeatable jobs: {e}")
        return None
    for job in jobs:
        if job["name"] == FOLDER_SCAN_JOB and job.get("next"):
            return from_ms(job["next"]).isoformat()
    return None


@import_settings_bp.route("", methods=["GET"])
@limiter.limit(limit_for("/api/import-settings"))
def api_get_import_settings():
    """Import settings plus Redis-side stats, last run and the next scheduled scan"""
    settings = get_settings(use_cache=False).import_settings
    body = settings.to_dict()
    body.update({
        "stats": import_logger.get_stats(),
        "lastRunDetails": import_logger.get_last_run(),
        "nextScheduledRun": _next_scheduled_run(),
        "validFrequencies": [
            {"value": minutes, "label": frequency_option_label(minutes)} for minutes in VALID_FREQUENCIES
        ],
    })
    return jsonify(body)


@import_settings_bp.route("", methods=["PUT"])
@limiter.limit(limit_for("/api/import-settings"))
def api_update_import_settings():
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    frequency = data.get("frequency")

    if frequency is not None and (isinstance(frequency, bool) or frequency not in VALID_FREQUENCIES):
        raise ValidationError(
            f"Invalid frequency. Must be one of: {', '.join(str(f) for f in VALID_FREQUENCIES)} minutes",
            details={"frequency": frequency},
        )
    if enabled is not None and not isinstance(enabled, bool):
        raise ValidationError("enabled must be true or false", details={"enabled": enabled})

    updated = update_import_settings(enabled=enabled, frequency=frequency)
    invalidate_cache()

    pattern = None
    if frequency is not None or enabled is not None:
        registry = _registry()
        if registry is None:
            raise ServiceUnavailableError("Settings saved but Redis is not configured; scan was not rescheduled")
        try:
            pattern = reschedule_import_job(registry, updated.enabled, updated.frequency, TIMEZONE)
        except redis.exceptions.RedisError as e:
            raise ServiceUnavailableError(f"Settings saved but the scan could not be rescheduled: {e}")

    import_logger.info(
        f"Import settings updated: frequency={frequency if frequency is not None else 'unchanged'}, "
        f"enabled={enabled if enabled is not None else 'unchanged'}"
    )
    return jsonify({
        "message": "Import settings updated successfully",
        "importSettings": updated.to_dict(),
        "pattern": pattern,
    })


@import_settings_bp.route("/logs", methods=["GET"])
@limiter.limit(limit_for("/api/import-settings"))
def api_get_import_logs():
    count = request.args.get("count", default=100, type=int) or 100
    logs = import_logger.get_logs(min(count, MAX_LOG_COUNT))
    return jsonify({"logs": logs, "count": len(logs)})


@import_settings_bp.route("/logs", methods=["DELETE"])
@limiter.limit(limit_for("/api/import-settings"))
def api_clear_import_logs():
    import_logger.clear_logs()
    return jsonify({"message": "Import logs cleared successfully"})


@import_settings_bp.route("/trigger", methods=["POST"])
@limiter.limit(limit_for("/api/import-settings/trigger", "5 per minute"))
@log_job_trigger
def api_trigger_import_scan():
    """Run a folder scan now, outside the schedule"""
    import_logger.info("Manual import scan triggered by user")
    try:
        results = FolderScanner().scan()
    except Exception as e:
        import_logger.error(f"Manual import scan failed: {e}")
        raise
    invalidate_cache()
    return jsonify({"success": True, "message": "Import scan completed", "results": results.to_dict()})


@import_settings_bp.route("/stats", methods=["GET"])
@limiter.limit(limit_for("/api/import-settings"))
def api_get_import_stats():
    return jsonify(import_logger.get_stats())
