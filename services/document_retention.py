"""
Document Retention
Retention start/expiry dates for invoices, credit notes and statements and
the check used by the hourly purge
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from config import TIMEZONE
from models.portal_models import PortalSettings, parse_db_timestamp, utc_now

UPLOAD_DATE = "upload_date"
INVOICE_DATE = "invoice_date"


def calculate_retention_expiry_date(retention_period: Optional[int], start_date: Any,
                                    tz: str = TIMEZONE) -> Optional[datetime]:
    """start + period days, normalised to local midnight of the expiry day; None when retention is off"""
    if not retention_period or not start_date:
        return None
    start = parse_db_timestamp(start_date).astimezone(ZoneInfo(tz))
    expiry = start + timedelta(days=int(retention_period))
    return expiry.replace(hour=0, minute=0, second=0, microsecond=0)


def get_retention_start_date(document: Optional[Dict[str, Any]], date_trigger: str) -> Optional[datetime]:
    if not document:
        return None

    if date_trigger == INVOICE_DATE:
        # statements carry the period end instead of an issue date
        for column in ("issue_date", "period_end"):
            if document.get(column):
                return parse_db_timestamp(document[column])

    if document.get("created_at"):
        return parse_db_timestamp(document["created_at"])
    return utc_now()


def should_delete_document(document: Dict[str, Any], settings: PortalSettings,
                           now: Optional[datetime] = None) -> bool:
    if not settings.document_retention_period:
        return False
    if document.get("retention_deleted_at") or document.get("deleted_at"):
        return False
    if not document.get("retention_expiry_date"):
        return False
    now = now or utc_now()
    return parse_db_timestamp(document["retention_expiry_date"]) <= now


def calculate_document_retention_dates(document: Dict[str, Any], settings: PortalSettings) -> Dict[str, Optional[datetime]]:
    period = settings.document_retention_period
    if not period:
        return {"retention_start_date": None, "retention_expiry_date": None}

    start = get_retention_start_date(document, settings.document_retention_date_trigger or UPLOAD_DATE)
    return {
        "retention_start_date": start,
        "retention_expiry_date": calculate_retention_expiry_date(period, start),
    }
