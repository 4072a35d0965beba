"""
Activity Logger
Audit rows for actions taken by background jobs (system user)
"""

import json
import logging
from typing import Any, Dict, Optional

from database_manager import DatabaseManager, db_manager
from models.portal_models import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

SYSTEM_USER_EMAIL = "system@invoice-portal"
SYSTEM_ROLE = "system"


class ActivityType:
    DOCUMENT_DELETED = "document_deleted"
    FILE_PURGE = "file_purge"
    FILE_IMPORT = "file_import"
    FILE_IMPORT_FAILED = "file_import_failed"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    IMPORT_BATCH_COMPLETE = "import_batch_complete"
    SETTINGS_UPDATED = "settings_updated"


def log_activity(activity_type: str, action: str, details: Optional[Dict[str, Any]] = None,
                 company_id: Optional[int] = None, user_email: str = SYSTEM_USER_EMAIL,
                 user_role: str = SYSTEM_ROLE, db: Optional[DatabaseManager] = None) -> Optional[int]:
    """Insert an activity row; audit failures never break the calling job"""
    db = db or db_manager
    try:
        return db.execute_insert(
            """
            INSERT INTO activity_logs (type, user_email, user_role, action, details, company_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (activity_type, user_email, user_role, action,
             json.dumps(details or {}, default=str), company_id, to_db_timestamp(utc_now())),
        )
    except Exception as e:
        logger.error(f"Failed to log activity '{activity_type}': {e}")
        return None
