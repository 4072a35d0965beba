"""
Celery tasks for email delivery
Retries temporary SMTP failures with exponential backoff; permanent
rejections go straight to the dead-letter list
"""

import logging
import smtplib
from typing import Any, Dict, Optional

from celery_app import celery_app, EMAIL_QUEUE, QUEUE_OPTIONS, SEND_EMAIL_TASK, PermanentJobError
from models.portal_models import to_db_timestamp, utc_now
from services.activity_logger import ActivityType, log_activity
from services.email_service import PERMANENT, classify_smtp_error, get_email_log, send_email, update_email_log

logger = logging.getLogger(__name__)

EMAIL_OPTIONS = QUEUE_OPTIONS[EMAIL_QUEUE]


class RetryableEmailError(Exception):
    pass


@celery_app.task(
    bind=True,
    name=SEND_EMAIL_TASK,
    autoretry_for=(RetryableEmailError,),
    max_retries=EMAIL_OPTIONS.max_retries,
    retry_backoff=EMAIL_OPTIONS.backoff_seconds,
    retry_backoff_max=EMAIL_OPTIONS.backoff_max_seconds,
    retry_jitter=False,
)
def send_email_task(self, email_log_id: Optional[int] = None, to: Optional[str] = None,
                    subject: Optional[str] = None, html: Optional[str] = None,
                    text: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Send one queued email

    Returns:
        {success, to, messageId} or {alreadySent: True} when the log row is already sent
    """
    metadata = metadata or {}
    email_log = get_email_log(email_log_id) if email_log_id else None
    if email_log and email_log.get("status") == "sent":
        return {"alreadySent": True, "to": to}

    attempt = (self.request.retries or 0) + 1
    if email_log_id:
        update_email_log(email_log_id, status="sending", attempts=attempt)

    try:
        result = send_email(to, subject, html, text)
    except (smtplib.SMTPException, OSError) as e:
        kind, code = classify_smtp_error(e)
        if kind == PERMANENT:
            if email_log_id:
                update_email_log(email_log_id, status="failed", error=f"{code}: {e}")
            log_activity(ActivityType.EMAIL_FAILED, f"Email to {to} failed permanently",
                         {"to": to, "subject": subject, "code": code, "error": str(e)},
                         company_id=metadata.get("companyId"))
            raise PermanentJobError(f"Permanent failure ({code}): {e}") from e

        final = attempt >= EMAIL_OPTIONS.attempts
        if email_log_id:
            update_email_log(email_log_id, status="failed" if final else "deferred", error=f"{kind} {code}: {e}")
        if final:
            log_activity(ActivityType.EMAIL_FAILED, f"Email to {to} failed after {attempt} attempts",
                         {"to": to, "subject": subject, "code": code, "error": str(e)},
                         company_id=metadata.get("companyId"))
        raise RetryableEmailError(f"{kind} ({code}): {e}") from e

    if email_log_id:
        update_email_log(email_log_id, status="sent", error=None, sent_at=to_db_timestamp(utc_now()))
    log_activity(ActivityType.EMAIL_SENT, f"Email sent to {to}", {"to": to, "subject": subject},
                 company_id=metadata.get("companyId"))
    return {"success": True, "to": to, "messageId": result.get("messageId")}
