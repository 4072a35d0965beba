"""
Celery tasks for document import
Parses an uploaded or FTP-dropped file with the default template for its
type, allocates it to a company and supplier, creates the invoice / credit
note / statement and records the file row
"""

import json
import logging
import os
import re
from typing import Any, Dict, Optional

from celery_app import (
    celery_app,
    FILE_IMPORT_QUEUE,
    FILE_IMPORT_TASK,
    INVOICE_IMPORT_QUEUE,
    INVOICE_IMPORT_TASK,
    QUEUE_OPTIONS,
    PermanentJobError,
)
from database_manager import DatabaseManager, db_manager
from models.portal_models import DOCUMENT_TABLES, to_db_timestamp, utc_now
from services.activity_logger import ActivityType, log_activity
from services.document_retention import calculate_document_retention_dates
from services.folder_scanner import calculate_file_hash, move_to_failed, move_to_processed
from services.import_logger import import_logger
from services.settings_service import get_settings
from services.supplier_matcher import SupplierMatcher
from services.template_parser import (
    detect_document_type,
    extract_full_text,
    file_type_for,
    parse_amount,
    parse_date,
    parse_fields,
)

logger = logging.getLogger(__name__)

LOCAL_FTP_SOURCE = "local-ftp"

ACCOUNT_FIELDS = ["accountNumber", "account_number", "customerNumber", "customer_number"]
NUMBER_FIELDS = ["invoiceNumber", "invoice_number", "documentNumber", "creditNoteNumber", "statementNumber"]
AMOUNT_FIELDS = ["totalAmount", "total_amount", "amount", "total"]
DATE_FIELDS = ["invoiceDate", "invoice_date", "date", "documentDate", "periodEnd", "period_end"]


def _first(parsed: Dict[str, Any], fields) -> Optional[str]:
    for name in fields:
        value = parsed.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def find_duplicate_file(db: DatabaseManager, file_hash: str) -> Optional[Dict[str, Any]]:
    """An allocated, non-deleted file with the same content"""
    return db.execute_one(
        "SELECT id, file_name FROM files WHERE file_hash = ? AND deleted_at IS NULL AND status = 'parsed' LIMIT 1",
        (file_hash,),
    )


def find_default_template(db: DatabaseManager, file_type: str, template_type: str) -> Optional[Dict[str, Any]]:
    return db.execute_one(
        "SELECT * FROM templates WHERE file_type = ? AND template_type = ? AND is_default = 1 ORDER BY id LIMIT 1",
        (file_type, template_type),
    )


def match_company(db: DatabaseManager, account_number: Optional[str]) -> Optional[Dict[str, Any]]:
    """Account numbers match companies.reference_no (digits only) or companies.code"""
    if not account_number:
        return None
    digits = re.sub(r"\D", "", account_number)
    if digits:
        company = db.execute_one(
            "SELECT * FROM companies WHERE reference_no = ? OR reference_no = ? LIMIT 1",
            (digits, str(int(digits))),
        )
        if company:
            return company
    return db.execute_one(
        "SELECT * FROM companies WHERE code = ? OR code = ? LIMIT 1",
        (account_number, digits or account_number),
    )


def validate_fields(parsed: Dict[str, Any]):
    """List of missing or invalid crucial fields, in priority order"""
    missing = []
    if _first(parsed, NUMBER_FIELDS) is None:
        missing.append("Document Number")
    if parse_amount(_first(parsed, AMOUNT_FIELDS)) is None:
        missing.append("Total")
    if parse_date(_first(parsed, DATE_FIELDS)) is None:
        missing.append("invalid_date_format")
    return missing


def import_document(file_path: str, file_name: Optional[str] = None, original_name: Optional[str] = None,
                    import_id: Optional[str] = None, user_id: Optional[int] = None, source: str = "manual",
                    file_hash: Optional[str] = None, document_type: str = "auto",
                    db: Optional[DatabaseManager] = None) -> Dict[str, Any]:
    """
    Import one file end to end.

    Data problems (no template, unreadable file, no company) are recorded on
    the files row and do not raise; infrastructure errors propagate so the
    queue can retry the job.
    """
    db = db or db_manager
    file_name = file_name or os.path.basename(file_path)
    original_name = original_name or file_name
    log_prefix = f"[Import {import_id}]" if import_id else "[Import]"

    if not file_path or not os.path.exists(file_path):
        raise PermanentJobError(f"File not found: {file_path}")

    file_type = file_type_for(file_name)
    if file_type is None:
        raise PermanentJobError(f"Unsupported file type: {file_name}")

    file_hash = file_hash or calculate_file_hash(file_path)
    is_duplicate = find_duplicate_file(db, file_hash) is not None
    if is_duplicate:
        logger.warning(f"{log_prefix} Duplicate file content: {file_name}")

    status, failure_reason, detail = "parsed", None, None
    parsed: Dict[str, Any] = {}
    company, supplier_match = None, {"supplier": None, "match_method": None}

    try:
        if document_type in (None, "", "auto"):
            document_type = detect_document_type(extract_full_text(file_path, file_type))
            logger.info(f"{log_prefix} Detected document type: {document_type}")
        if document_type not in DOCUMENT_TABLES:
            raise PermanentJobError(f"Unknown document type: {document_type}")

        template = find_default_template(db, file_type, document_type)
        if template is None:
            status, failure_reason = "failed", "parsing_error"
            detail = f"No default {file_type} template for {document_type}"
        else:
            parsed = parse_fields(file_path, file_type, template)
    except PermanentJobError:
        raise
    except Exception as e:
        logger.error(f"{log_prefix} Failed to parse {file_name}: {e}")
        status, failure_reason, detail = "failed", "parsing_error", str(e)

    if status != "failed":
        account_number = _first(parsed, ACCOUNT_FIELDS)
        company = match_company(db, account_number)
        supplier_match = SupplierMatcher(db).find_supplier(parsed)
        missing = validate_fields(parsed)

        if is_duplicate:
            status, failure_reason, detail = "unallocated", "duplicate", "duplicate"
            company = None
        elif company is None:
            status, failure_reason = "unallocated", "unallocated"
            detail = "company_not_found" if account_number else "Missing Account Number"
        elif missing:
            failure_reason, detail = "validation_error", f"Missing {missing[0]}"

    now = utc_now()
    file_id = db.execute_insert(
        """
        INSERT INTO files (file_name, file_path, file_hash, status, failure_reason, source, document_type,
                           parsed_data, uploaded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (original_name, file_path, file_hash, status, failure_reason, source, document_type,
         json.dumps({k: v for k, v in parsed.items() if k != "fullText"}, default=str),
         to_db_timestamp(now)),
    )

    document_id = None
    if company is not None:
        document_id = _create_document(db, document_type, parsed, company, supplier_match, file_id,
                                       file_path, failure_reason, detail, import_id)

    final_path = file_path
    if source == LOCAL_FTP_SOURCE:
        if document_id is not None:
            final_path = move_to_processed(file_path, file_name)
        else:
            final_path = move_to_failed(file_path, file_name, detail or failure_reason or "unallocated")
        db.execute_update("UPDATE files SET file_path = ? WHERE id = ?", (final_path, file_id))
        if document_id is not None:
            table = DOCUMENT_TABLES[document_type]["table"]
            db.execute_update(f"UPDATE {table} SET file_url = ? WHERE id = ?", (final_path, document_id))

    result = {
        "success": status != "failed",
        "importId": import_id,
        "fileId": file_id,
        "documentId": document_id,
        "documentType": document_type,
        "status": status,
        "failureReason": failure_reason,
        "detail": detail,
        "companyId": company["id"] if company else None,
        "supplierId": supplier_match["supplier"]["id"] if supplier_match.get("supplier") else None,
        "matchMethod": supplier_match.get("match_method"),
        "filePath": final_path,
    }

    if document_id is not None:
        log_activity(ActivityType.FILE_IMPORT, f"Imported {original_name}",
                     {"fileId": file_id, "documentId": document_id, "documentType": document_type,
                      "source": source, "userId": user_id},
                     company_id=company["id"], db=db)
    else:
        log_activity(ActivityType.FILE_IMPORT_FAILED, f"Could not allocate {original_name}",
                     {"fileId": file_id, "status": status, "failureReason": failure_reason,
                      "detail": detail, "source": source, "userId": user_id}, db=db)

    if source == LOCAL_FTP_SOURCE:
        if document_id is not None:
            import_logger.success(f"Imported {original_name} as {document_type}", {"fileId": file_id})
        else:
            import_logger.warning(f"{original_name}: {detail or failure_reason}", {"fileId": file_id})

    logger.info(f"{log_prefix} {file_name} -> status={status} reason={failure_reason} document={document_id}")
    return result


def _create_document(db: DatabaseManager, document_type: str, parsed: Dict[str, Any], company: Dict[str, Any],
                     supplier_match: Dict[str, Any], file_id: int, file_path: str,
                     failure_reason: Optional[str], detail: Optional[str], import_id: Optional[str]) -> int:
    meta = DOCUMENT_TABLES[document_type]
    date_column = "period_end" if document_type == "statement" else "issue_date"
    document_date = parse_date(_first(parsed, DATE_FIELDS))
    now = utc_now()

    retention = calculate_document_retention_dates(
        {date_column: document_date, "created_at": now}, get_settings(db)
    )
    supplier = supplier_match.get("supplier")
    metadata = {
        "importId": import_id,
        "supplierMatchMethod": supplier_match.get("match_method"),
        "failureReason": detail if failure_reason else None,
        "fieldLabels": {k: v for k, v in parsed.items() if k != "fullText"},
    }

    return db.execute_insert(
        f"""
        INSERT INTO {meta['table']} ({meta['number_column']}, company_id, supplier_id, file_id, {date_column},
                                     amount, file_url, status, retention_start_date, retention_expiry_date,
                                     metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            _first(parsed, NUMBER_FIELDS),
            company["id"],
            supplier["id"] if supplier else None,
            file_id,
            to_db_timestamp(document_date),
            parse_amount(_first(parsed, AMOUNT_FIELDS)),
            file_path,
            "review" if failure_reason else "ready",
            to_db_timestamp(retention["retention_start_date"]),
            to_db_timestamp(retention["retention_expiry_date"]),
            json.dumps(metadata, default=str),
            to_db_timestamp(now),
        ),
    )


INVOICE_OPTIONS = QUEUE_OPTIONS[INVOICE_IMPORT_QUEUE]
FILE_OPTIONS = QUEUE_OPTIONS[FILE_IMPORT_QUEUE]


@celery_app.task(
    bind=True,
    name=INVOICE_IMPORT_TASK,
    autoretry_for=(Exception,),
    dont_autoretry_for=(PermanentJobError,),
    max_retries=INVOICE_OPTIONS.max_retries,
    retry_backoff=INVOICE_OPTIONS.backoff_seconds,
    retry_backoff_max=INVOICE_OPTIONS.backoff_max_seconds,
    retry_jitter=False,
)
def process_invoice_import(self, file_path: str, file_name: Optional[str] = None, original_name: Optional[str] = None,
                           import_id: Optional[str] = None, user_id: Optional[int] = None,
                           source: str = LOCAL_FTP_SOURCE, file_hash: Optional[str] = None,
                           document_type: str = "auto") -> Dict[str, Any]:
    """Import a file found by the local folder scan"""
    return import_document(file_path, file_name, original_name, import_id, user_id, source, file_hash,
                           document_type)


@celery_app.task(
    bind=True,
    name=FILE_IMPORT_TASK,
    autoretry_for=(Exception,),
    dont_autoretry_for=(PermanentJobError,),
    max_retries=FILE_OPTIONS.max_retries,
    retry_backoff=FILE_OPTIONS.backoff_seconds,
    retry_backoff_max=FILE_OPTIONS.backoff_max_seconds,
    retry_jitter=False,
)
def process_file_import(self, file_path: str, file_name: Optional[str] = None, original_name: Optional[str] = None,
                        import_id: Optional[str] = None, user_id: Optional[int] = None,
                        file_hash: Optional[str] = None, document_type: str = "auto") -> Dict[str, Any]:
    """Import a file uploaded through the portal"""
    return import_document(file_path, file_name, original_name, import_id, user_id, "manual", file_hash,
                           document_type)
