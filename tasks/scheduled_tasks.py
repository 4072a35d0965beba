"""
Celery tasks for the repeatable scheduled jobs
The scheduler enqueues tasks.run_scheduled_task with {"task": <job name>};
this module dispatches to the file purge, the retention purge and the
local folder scan
"""

import logging
import os
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from celery_app import celery_app, QUEUE_OPTIONS, SCHEDULED_TASK, SCHEDULED_TASKS_QUEUE, PermanentJobError
from config import PORTAL_NAME, UPLOAD_FOLDER
from database_manager import DatabaseManager, db_manager
from models.portal_models import DOCUMENT_TABLES, to_db_timestamp, utc_now
from services.activity_logger import ActivityType, log_activity
from services.document_retention import should_delete_document
from services.email_service import queue_email
from services.folder_scanner import process_local_folder_scan
from services.settings_service import get_settings
from utils.monitoring import track_task_run

logger = logging.getLogger(__name__)

SCHEDULED_OPTIONS = QUEUE_OPTIONS[SCHEDULED_TASKS_QUEUE]


def resolve_upload_path(file_url: Optional[str]) -> Optional[str]:
    """Stored URLs like /uploads/x.pdf live under UPLOAD_FOLDER"""
    if not file_url:
        return None
    if file_url.startswith("/"):
        return os.path.join(UPLOAD_FOLDER, file_url.lstrip("/"))
    return file_url


def _remove_file(path: Optional[str]) -> bool:
    if path and os.path.exists(path):
        os.remove(path)
        return True
    return False


def cleanup_old_files(db: Optional[DatabaseManager] = None) -> Dict[str, int]:
    """Unlink and soft-delete uploaded files older than file_retention_days"""
    db = db or db_manager
    settings = get_settings(db, use_cache=False)
    days = settings.file_retention_days
    if not days or days <= 0:
        logger.info("File retention is disabled, skipping file cleanup")
        return {"deleted": 0, "errors": 0, "total": 0}

    cutoff = utc_now() - timedelta(days=int(days))
    rows = db.execute_query(
        "SELECT id, file_name, file_path FROM files WHERE deleted_at IS NULL AND uploaded_at < ?",
        (to_db_timestamp(cutoff),),
    )
    logger.info(f"Found {len(rows)} file(s) older than {days} days")

    deleted, errors = 0, 0
    for row in rows:
        try:
            _remove_file(row.get("file_path"))
            db.execute_update(
                "UPDATE files SET deleted_at = ? WHERE id = ?",
                (to_db_timestamp(utc_now()), row["id"]),
            )
            deleted += 1
        except Exception as e:
            errors += 1
            logger.error(f"Error deleting file {row['id']} ({row.get('file_name')}): {e}")

    if deleted:
        log_activity(ActivityType.FILE_PURGE, f"Purged {deleted} file(s) older than {days} days",
                     {"deleted": deleted, "errors": errors, "retentionDays": days}, db=db)
    logger.info(f"File cleanup complete: {deleted} deleted, {errors} errors")
    return {"deleted": deleted, "errors": errors, "total": len(rows)}


def _notify_company_users(db: DatabaseManager, document: Dict[str, Any], label: str, number: Optional[str],
                          period: int, portal_name: str) -> int:
    company_id = document.get("company_id")
    if not company_id:
        return 0
    company = db.execute_one("SELECT id, name, edi FROM companies WHERE id = ?", (company_id,))
    if not company or company.get("edi"):
        return 0

    users = db.execute_query(
        "SELECT email, name FROM users WHERE company_id = ? AND role = 'external_user' AND is_active = 1",
        (company_id,),
    )
    reference = number or f"#{document['id']}"
    subject = f"{label} {reference} removed - {portal_name}"
    html = (
        f"<p>{label} <strong>{reference}</strong> for {company['name']} has been removed from "
        f"{portal_name} because it reached the end of its {period} day retention period.</p>"
    )
    notified = 0
    for user in users:
        if not user.get("email"):
            continue
        try:
            queue_email(user["email"], subject, html,
                        metadata={"type": "document-deleted", "companyId": company_id}, db=db)
            notified += 1
        except Exception as e:
            logger.error(f"Failed to queue retention notice to {user['email']}: {e}")
    return notified


def cleanup_expired_documents(db: Optional[DatabaseManager] = None) -> Dict[str, Any]:
    """Delete invoices, credit notes and statements whose retention expiry has passed"""
    db = db or db_manager
    settings = get_settings(db, use_cache=False)
    period = settings.document_retention_period
    result = {"deleted": 0, "errors": 0, "total": 0, "byType": {}}
    if not period:
        logger.info("Document retention is disabled, skipping retention cleanup")
        return result

    now = utc_now()
    reason = f"Automatically deleted due to retention policy ({period} days)"
    portal_name = settings.portal_name or PORTAL_NAME

    for doc_type, meta in DOCUMENT_TABLES.items():
        table, number_column = meta["table"], meta["number_column"]
        documents = db.execute_query(
            f"""
            SELECT * FROM {table}
            WHERE deleted_at IS NULL AND retention_deleted_at IS NULL
              AND retention_expiry_date IS NOT NULL AND retention_expiry_date <= ?
            """,
            (to_db_timestamp(now),),
        )
        result["total"] += len(documents)
        deleted_here = 0

        for document in documents:
            if not should_delete_document(document, settings, now):
                continue
            try:
                try:
                    _remove_file(resolve_upload_path(document.get("file_url")))
                except OSError as e:
                    logger.warning(f"Could not remove file for {table} {document['id']}: {e}")

                stamp = to_db_timestamp(utc_now())
                db.execute_update(
                    f"UPDATE {table} SET deleted_at = ?, retention_deleted_at = ?, deleted_reason = ? WHERE id = ?",
                    (stamp, stamp, reason, document["id"]),
                )
                number = document.get(number_column)
                _notify_company_users(db, document, meta["label"], number, period, portal_name)
                log_activity(
                    ActivityType.DOCUMENT_DELETED,
                    f"{meta['label']} {number or document['id']} deleted by retention policy",
                    {"documentType": doc_type, "documentId": document["id"], "retentionPeriod": period},
                    company_id=document.get("company_id"), db=db,
                )
                deleted_here += 1
            except Exception as e:
                result["errors"] += 1
                logger.error(f"Error deleting {table} {document['id']}: {e}")

        result["byType"][doc_type] = deleted_here
        result["deleted"] += deleted_here

    logger.info(f"Retention cleanup complete: {result['deleted']} deleted, {result['errors']} errors")
    return result


def scan_local_folder(db: Optional[DatabaseManager] = None) -> Dict[str, Any]:
    return process_local_folder_scan(db=db)


SCHEDULED_JOBS = {
    "file-cleanup": cleanup_old_files,
    "document-retention-cleanup": cleanup_expired_documents,
    "local-folder-scan": scan_local_folder,
}


@celery_app.task(
    bind=True,
    name=SCHEDULED_TASK,
    autoretry_for=(Exception,),
    dont_autoretry_for=(PermanentJobError,),
    max_retries=SCHEDULED_OPTIONS.max_retries,
    retry_backoff=SCHEDULED_OPTIONS.backoff_seconds,
    retry_backoff_max=SCHEDULED_OPTIONS.backoff_max_seconds,
    retry_jitter=False,
)
def run_scheduled_task(self, task: Optional[str] = None, **data) -> Dict[str, Any]:
    """
    Run one scheduled job by name

    Args:
        task: file-cleanup | document-retention-cleanup | local-folder-scan

    Returns:
        {success, task, result} or {success: False, message: "Unknown task"}
    """
    handler = SCHEDULED_JOBS.get(task)
    if handler is None:
        logger.warning(f"Unknown scheduled task: {task}")
        return {"success": False, "message": "Unknown task"}

    logger.info(f"Running scheduled task: {task}", extra={"task": task, "job_id": self.request.id})
    started = time.monotonic()
    try:
        result = handler()
    except Exception:
        track_task_run(task, "failure", time.monotonic() - started)
        logger.error(f"Scheduled task {task} failed", exc_info=True)
        raise

    duration = time.monotonic() - started
    track_task_run(task, "success", duration)
    logger.info(f"Scheduled task {task} finished in {duration:.1f}s")
    return {"success": True, "task": task, "result": result}
