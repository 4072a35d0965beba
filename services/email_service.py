"""
Email Service
SMTP delivery, email log bookkeeping and the queue_email() entry point used
by jobs that notify users
"""

import logging
import re
import smtplib
import socket
import ssl
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime, make_msgid
from typing import Any, Dict, Optional, Tuple

from celery_app import EMAIL_QUEUE, SEND_EMAIL_TASK, enqueue
from config import SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_SECURE, EMAIL_FROM
from database_manager import DatabaseManager, db_manager
from models.portal_models import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

TEMPORARY = "TEMPORARY"
PERMANENT = "PERMANENT"
RATE_LIMITED = "RATE_LIMITED"
UNKNOWN = "UNKNOWN"

RATE_LIMIT_PATTERNS = [
    r"exceeded", r"rate.?limit", r"messages.per.*hour", r"too many", r"quota exceeded",
    r"sending.?limit", r"throttl", r"\b429\b", r"daily.?limit", r"4\.7\.1",
]

TRANSIENT_PATTERNS = [
    "timeout", "timed out", "connection", "network", "temporarily", "try again",
    "service unavailable", "busy", "overload", "temporary failure",
]

PERMANENT_PATTERNS = [
    "user unknown", "mailbox not found", "does not exist", "invalid recipient",
    "rejected", "blocked", "blacklisted", "authentication failed", "relay denied",
    "not allowed", "mailbox unavailable", "no such user", "bad address", "permanent",
]


def _response_code(error: Exception) -> Optional[int]:
    code = getattr(error, "smtp_code", None)
    if code:
        return int(code)
    if isinstance(error, smtplib.SMTPRecipientsRefused) and error.recipients:
        return int(next(iter(error.recipients.values()))[0])
    match = re.search(r"\b([45]\d{2})\b", str(error))
    return int(match.group(1)) if match else None


def classify_smtp_error(error: Exception) -> Tuple[str, Any]:
    """Decide whether a send failure is worth retrying"""
    message = str(error)
    lowered = message.lower()
    code = _response_code(error)

    for pattern in RATE_LIMIT_PATTERNS:
        if re.search(pattern, message, re.IGNORECASE):
            return RATE_LIMITED, code or 450

    if code and 500 <= code < 600:
        return PERMANENT, code
    if code and 400 <= code < 500:
        return TEMPORARY, code

    if isinstance(error, (socket.timeout, ConnectionError, smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return TEMPORARY, "NETWORK"
    if any(pattern in lowered for pattern in TRANSIENT_PATTERNS):
        return TEMPORARY, "NETWORK"
    if any(pattern in lowered for pattern in PERMANENT_PATTERNS):
        return PERMANENT, code or 550

    return UNKNOWN, None


def build_message(to: str, subject: str, html: str, text: Optional[str] = None,
                  sender: str = EMAIL_FROM) -> EmailMessage:
    msg = EmailMessage()
    msg["To"] = to
    msg["From"] = sender
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=sender.split("@")[-1] if "@" in sender else None)
    msg["Date"] = format_datetime(datetime.now(timezone.utc))
    msg.set_content(text or re.sub(r"<[^>]+>", "", html))
    msg.add_alternative(html, subtype="html")
    return msg


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
    """Deliver one message over SMTP; raises the smtplib / socket error on failure"""
    msg = build_message(to, subject, html, text)
    context = ssl.create_default_context()
    if SMTP_SECURE:
        with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=30, context=context) as smtp:
            if SMTP_USER:
                smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    else:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30) as smtp:
            smtp.ehlo()
            if SMTP_USER:
                smtp.starttls(context=context)
                smtp.ehlo()
                smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    return {"messageId": msg["Message-ID"], "to": to}


# === Email log ===

def get_email_log(email_log_id: int, db: Optional[DatabaseManager] = None) -> Optional[Dict[str, Any]]:
    db = db or db_manager
    return db.execute_one("SELECT * FROM email_logs WHERE id = ?", (email_log_id,))


def update_email_log(email_log_id: int, db: Optional[DatabaseManager] = None, **fields):
    db = db or db_manager
    if not fields:
        return
    columns = ", ".join(f"{name} = ?" for name in fields)
    db.execute_update(f"UPDATE email_logs SET {columns} WHERE id = ?", tuple(fields.values()) + (email_log_id,))


def queue_email(to: str, subject: str, html: str, text: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None, db: Optional[DatabaseManager] = None) -> Dict[str, Any]:
    """Create the email log row and enqueue the send; the job id is derived from the log id"""
    if not to or not subject or not html:
        raise ValueError("Email queue: to, subject, and html are required")
    db = db or db_manager

    email_log_id = db.execute_insert(
        "INSERT INTO email_logs (to_address, subject, status, attempts, created_at) VALUES (?, ?, ?, ?, ?)",
        (to, subject, "queued", 0, to_db_timestamp(utc_now())),
    )
    job_id = f"email_{email_log_id}"
    update_email_log(email_log_id, db, job_id=job_id)

    enqueue(EMAIL_QUEUE, SEND_EMAIL_TASK, {
        "email_log_id": email_log_id,
        "to": to,
        "subject": subject,
        "html": html,
        "text": text,
        "metadata": metadata or {},
    }, job_id=job_id)
    logger.info(f"Queued email {job_id} to={to}")
    return {"jobId": job_id, "emailLogId": email_log_id}
