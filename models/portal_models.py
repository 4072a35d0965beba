"""
Portal Models
Dataclasses and table schema for the data the background jobs touch:
settings, companies, users, suppliers, templates, files, documents and logs
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import json

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Store timestamps as sortable UTC text so range queries work on both backends"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_db_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# Document kinds handled by import and retention jobs
DOCUMENT_TABLES: Dict[str, Dict[str, str]] = {
    "invoice": {"table": "invoices", "number_column": "invoice_number", "label": "Invoice"},
    "credit_note": {"table": "credit_notes", "number_column": "credit_note_number", "label": "Credit Note"},
    "statement": {"table": "statements", "number_column": "statement_number", "label": "Statement"},
}

FAILURE_REASONS = ("unallocated", "parsing_error", "validation_error", "duplicate", "other")


@dataclass
class ImportSettings:
    """Scheduler-facing part of the settings row (stored as JSON)"""
    enabled: bool = True
    frequency: int = 60  # minutes
    last_run: Optional[str] = None
    last_run_duration: Optional[int] = None  # milliseconds
    last_run_stats: Optional[Dict[str, Any]] = None

    @classmethod
    def from_json(cls, raw: Any) -> "ImportSettings":
        if not raw:
            return cls()
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
        return cls(
            enabled=data.get("enabled") is not False,
            frequency=int(data.get("frequency") or 60),
            last_run=data.get("lastRun"),
            last_run_duration=data.get("lastRunDuration"),
            last_run_stats=data.get("lastRunStats"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "frequency": self.frequency,
            "lastRun": self.last_run,
            "lastRunDuration": self.last_run_duration,
            "lastRunStats": self.last_run_stats,
        }


@dataclass
class PortalSettings:
    """The single settings row"""
    file_retention_days: Optional[int] = None
    document_retention_period: Optional[int] = None  # days, None = disabled
    document_retention_date_trigger: str = "upload_date"  # upload_date | invoice_date
    portal_name: Optional[str] = None
    import_settings: ImportSettings = field(default_factory=ImportSettings)

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "PortalSettings":
        if not row:
            return cls()
        return cls(
            file_retention_days=row.get("file_retention_days"),
            document_retention_period=row.get("document_retention_period"),
            document_retention_date_trigger=row.get("document_retention_date_trigger") or "upload_date",
            portal_name=row.get("portal_name"),
            import_settings=ImportSettings.from_json(row.get("import_settings")),
        )


@dataclass
class ScanResults:
    """Outcome of one local folder scan"""
    scanned: int = 0
    queued: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    files: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "queued": self.queued,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "errors": list(self.errors),
            "files": list(self.files),
        }


# === Database Schema ===

def _pk(db_type: str) -> str:
    if db_type == "mysql":
        return "INT AUTO_INCREMENT PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"


def _document_table(db_type: str, table: str, number_column: str, date_column: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
    id {_pk(db_type)},
    {number_column} VARCHAR(255),
    company_id INTEGER,
    supplier_id INTEGER,
    file_id INTEGER,
    {date_column} VARCHAR(32),
    amount DECIMAL(12, 2),
    file_url VARCHAR(1024),
    status VARCHAR(32) DEFAULT 'ready',
    retention_start_date VARCHAR(32),
    retention_expiry_date VARCHAR(32),
    retention_deleted_at VARCHAR(32),
    deleted_at VARCHAR(32),
    deleted_reason TEXT,
    metadata TEXT,
    created_at VARCHAR(32) NOT NULL
)
"""


def get_portal_schema(db_type: str = "sqlite") -> List[str]:
    """DDL statements for every table the background jobs read or write"""
    pk = _pk(db_type)
    statements = [
        f"""
CREATE TABLE IF NOT EXISTS settings (
    id {pk},
    file_retention_days INTEGER,
    document_retention_period INTEGER,
    document_retention_date_trigger VARCHAR(32) DEFAULT 'upload_date',
    import_settings TEXT,
    portal_name VARCHAR(255),
    updated_at VARCHAR(32)
)
""",
        f"""
CREATE TABLE IF NOT EXISTS companies (
    id {pk},
    name VARCHAR(255) NOT NULL,
    reference_no VARCHAR(64),
    code VARCHAR(64),
    edi INTEGER DEFAULT 0
)
""",
        f"""
CREATE TABLE IF NOT EXISTS users (
    id {pk},
    email VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    role VARCHAR(32) NOT NULL,
    company_id INTEGER,
    is_active INTEGER DEFAULT 1,
    created_at VARCHAR(32)
)
""",
        f"""
CREATE TABLE IF NOT EXISTS suppliers (
    id {pk},
    name VARCHAR(255) NOT NULL,
    code VARCHAR(64),
    is_active INTEGER DEFAULT 1,
    deleted_at VARCHAR(32)
)
""",
        f"""
CREATE TABLE IF NOT EXISTS templates (
    id {pk},
    name VARCHAR(255) NOT NULL,
    file_type VARCHAR(16) NOT NULL,
    template_type VARCHAR(32) NOT NULL,
    is_default INTEGER DEFAULT 0,
    coordinates TEXT,
    excel_cells TEXT
)
""",
        f"""
CREATE TABLE IF NOT EXISTS files (
    id {pk},
    file_name VARCHAR(512) NOT NULL,
    file_path VARCHAR(1024),
    file_hash VARCHAR(64),
    status VARCHAR(32) DEFAULT 'uploaded',
    failure_reason VARCHAR(32),
    source VARCHAR(32),
    document_type VARCHAR(32),
    parsed_data TEXT,
    uploaded_at VARCHAR(32) NOT NULL,
    deleted_at VARCHAR(32)
)
""",
        _document_table(db_type, "invoices", "invoice_number", "issue_date"),
        _document_table(db_type, "credit_notes", "credit_note_number", "issue_date"),
        _document_table(db_type, "statements", "statement_number", "period_end"),
        f"""
CREATE TABLE IF NOT EXISTS email_logs (
    id {pk},
    job_id VARCHAR(255),
    to_address VARCHAR(255) NOT NULL,
    subject VARCHAR(512),
    status VARCHAR(32) NOT NULL,
    error TEXT,
    attempts INTEGER DEFAULT 0,
    created_at VARCHAR(32) NOT NULL,
    sent_at VARCHAR(32)
)
""",
        f"""
CREATE TABLE IF NOT EXISTS activity_logs (
    id {pk},
    type VARCHAR(64) NOT NULL,
    user_email VARCHAR(255),
    user_role VARCHAR(32),
    action TEXT,
    details TEXT,
    company_id INTEGER,
    created_at VARCHAR(32) NOT NULL
)
""",
    ]
    return statements


def get_portal_indexes(db_type: str = "sqlite") -> List[str]:
    # MySQL has no IF NOT EXISTS for indexes; the migration skips duplicates
    create = "CREATE INDEX IF NOT EXISTS" if db_type == "sqlite" else "CREATE INDEX"
    return [
        f"{create} idx_files_hash ON files (file_hash)",
        f"{create} idx_files_uploaded ON files (uploaded_at)",
        f"{create} idx_invoices_expiry ON invoices (retention_expiry_date)",
        f"{create} idx_credit_notes_expiry ON credit_notes (retention_expiry_date)",
        f"{create} idx_statements_expiry ON statements (retention_expiry_date)",
        f"{create} idx_email_logs_job ON email_logs (job_id)",
    ]
