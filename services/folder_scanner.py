"""
Local Folder Scanner
Picks up PDF and Excel files dropped into the FTP inbound folder and queues
them for invoice import. Files that are still uploading, already queued, or
recently imported are left alone; hash duplicates are moved aside.
"""

import hashlib
import html as html_lib
import logging
import os
import shutil
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from celery_app import INVOICE_IMPORT_QUEUE, INVOICE_IMPORT_TASK, enqueue
from config import (
    FTP_INBOUND_PATH,
    FTP_PROCESSED_PATH,
    FTP_FAILED_PATH,
    IMPORT_ALLOWED_EXTENSIONS,
    MIN_FILE_AGE_SECONDS,
    RECENTLY_PROCESSED_WINDOW_SECONDS,
    PORTAL_NAME,
)
from database_manager import DatabaseManager, db_manager
from models.portal_models import ScanResults, to_db_timestamp
from services import queue_stats
from services.email_service import queue_email
from services.import_logger import ImportLogger, import_logger as default_import_logger
from services.settings_service import get_settings, record_import_run
from utils.redis_connection import get_redis

logger = logging.getLogger(__name__)

# Enough to cover any realistic backlog when collecting queued file names
QUEUED_NAME_SCAN_LIMIT = 10000


def calculate_file_hash(file_path: str) -> str:
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def dated_folder(base_path: str, *parts: str) -> str:
    """base/<parts>/<YYYY-MM-DD>, created on demand"""
    path = os.path.join(base_path, *parts, datetime.now(timezone.utc).strftime("%Y-%m-%d"))
    os.makedirs(path, exist_ok=True)
    return path


def _unique_destination(folder: str, file_name: str) -> str:
    destination = os.path.join(folder, file_name)
    if os.path.exists(destination):
        base, ext = os.path.splitext(file_name)
        destination = os.path.join(folder, f"{base}-{int(time.time() * 1000)}{ext}")
    return destination


def move_to_processed(file_path: str, file_name: str, processed_path: str = FTP_PROCESSED_PATH) -> str:
    destination = _unique_destination(dated_folder(processed_path), file_name)
    shutil.move(file_path, destination)
    logger.info(f"Moved to processed: {destination}")
    return destination


def move_to_failed(file_path: str, file_name: str, error: str, failed_path: str = FTP_FAILED_PATH) -> str:
    """Move the file aside and write a .error.txt note next to it"""
    destination = _unique_destination(dated_folder(failed_path), file_name)
    shutil.move(file_path, destination)
    with open(destination + ".error.txt", "w", encoding="utf-8") as note:
        note.write(f"Failed at: {datetime.now(timezone.utc).isoformat()}\nError: {error}\n")
    logger.info(f"Moved to failed: {destination}")
    return destination


class FolderScanner:
    """One scan of the inbound folder"""

    def __init__(self, db: Optional[DatabaseManager] = None, client=None,
                 import_log: Optional[ImportLogger] = None,
                 inbound_path: str = FTP_INBOUND_PATH,
                 processed_path: str = FTP_PROCESSED_PATH,
                 failed_path: str = FTP_FAILED_PATH):
        self.db = db or db_manager
        self._client = client
        self.import_log = import_log or default_import_logger
        self.inbound_path = inbound_path
        self.processed_path = processed_path
        self.failed_path = failed_path

    @property
    def client(self):
        return self._client if self._client is not None else get_redis()

    def queued_file_names(self) -> Set[str]:
        """Names of files already waiting, running or waiting to retry on invoice-import"""
        client = self.client
        if client is None:
            return set()
        names = set()
        for state in ("waiting", "active", "delayed"):
            for job in queue_stats.list_jobs(INVOICE_IMPORT_QUEUE, state, QUEUED_NAME_SCAN_LIMIT, client):
                data = job.get("data") or {}
                if data.get("file_name"):
                    names.add(data["file_name"])
        return names

    def _system_user_id(self) -> Optional[int]:
        row = self.db.execute_one(
            "SELECT id FROM users WHERE role = 'global_admin' ORDER BY created_at, id LIMIT 1"
        )
        return row["id"] if row else None

    def _find_duplicate(self, file_hash: str) -> Optional[Dict[str, Any]]:
        return self.db.execute_one(
            "SELECT id, file_name FROM files WHERE file_hash = ? AND deleted_at IS NULL LIMIT 1",
            (file_hash,),
        )

    def _recently_processed(self, file_name: str) -> bool:
        cutoff = datetime.fromtimestamp(time.time() - RECENTLY_PROCESSED_WINDOW_SECONDS, tz=timezone.utc)
        row = self.db.execute_one(
            "SELECT id FROM files WHERE file_name = ? AND uploaded_at >= ? LIMIT 1",
            (file_name, to_db_timestamp(cutoff)),
        )
        return row is not None

    def _supported_files(self):
        names = sorted(os.listdir(self.inbound_path))
        return [
            name for name in names
            if os.path.isfile(os.path.join(self.inbound_path, name))
            and os.path.splitext(name)[1].lower() in IMPORT_ALLOWED_EXTENSIONS
        ]

    def _process_file(self, file_name: str, results: ScanResults, queued_names: Set[str], user_id: Optional[int]):
        file_path = os.path.join(self.inbound_path, file_name)
        stats = os.stat(file_path)

        age = time.time() - stats.st_mtime
        if age < MIN_FILE_AGE_SECONDS:
            logger.info(f"File too new, waiting: {file_name} ({int(age)}s old)")
            results.skipped += 1
            return

        if file_name in queued_names:
            logger.info(f"File already queued: {file_name}")
            results.skipped += 1
            return

        file_hash = calculate_file_hash(file_path)
        if self._find_duplicate(file_hash):
            destination = _unique_destination(dated_folder(self.processed_path, "duplicates"), file_name)
            shutil.move(file_path, destination)
            logger.info(f"Duplicate file (hash match): {file_name} -> {destination}")
            results.duplicates += 1
            return

        if self._recently_processed(file_name):
            logger.info(f"File recently processed: {file_name}")
            results.skipped += 1
            return

        import_id = f"local-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        enqueue(INVOICE_IMPORT_QUEUE, INVOICE_IMPORT_TASK, {
            "file_path": file_path,
            "file_name": file_name,
            "original_name": file_name,
            "import_id": import_id,
            "user_id": user_id,
            "source": "local-ftp",
            "file_hash": file_hash,
            "document_type": "auto",
        }, job_id=f"local-import-{int(time.time() * 1000)}-{file_name}")
        queued_names.add(file_name)

        logger.info(f"Queued file: {file_name} (import: {import_id})")
        results.queued += 1
        results.files.append({"fileName": file_name, "fileSize": stats.st_size, "importId": import_id})

    def scan(self) -> ScanResults:
        results = ScanResults()
        run = self.import_log.start_run()
        self.import_log.info(f"Scanning inbound folder: {self.inbound_path}")

        try:
            if not os.path.isdir(self.inbound_path):
                logger.warning(f"Inbound folder does not exist, creating: {self.inbound_path}")
                os.makedirs(self.inbound_path, exist_ok=True)
                self.import_log.end_run(run, results.to_dict())
                return results

            os.makedirs(self.processed_path, exist_ok=True)
            os.makedirs(self.failed_path, exist_ok=True)

            files = self._supported_files()
            results.scanned = len(files)
            logger.info(f"Found {len(files)} supported file(s) in inbound folder")

            if files:
                queued_names = self.queued_file_names()
                user_id = self._system_user_id()
                for file_name in files:
                    try:
                        self._process_file(file_name, results, queued_names, user_id)
                    except Exception as e:
                        logger.error(f"Error processing file {file_name}: {e}")
                        results.errors.append({"fileName": file_name, "error": str(e)})
                        try:
                            move_to_failed(os.path.join(self.inbound_path, file_name), file_name, str(e),
                                           self.failed_path)
                        except OSError as move_error:
                            logger.error(f"Could not move failed file {file_name}: {move_error}")
        except Exception as e:
            self.import_log.error(f"Local folder scan failed: {e}")
            results.errors.append({"fileName": None, "error": str(e)})
            self.import_log.end_run(run, results.to_dict())
            raise

        summary = self.import_log.end_run(run, results.to_dict())
        try:
            record_import_run(summary["duration"], {
                "scanned": results.scanned,
                "queued": results.queued,
                "processed": results.queued,
                "failed": len(results.errors),
                "duplicates": results.duplicates,
            }, self.db)
        except Exception as e:
            logger.error(f"Failed to update settings with run info: {e}")
        return results

    def send_summary_email(self, results: ScanResults) -> int:
        """Queue a summary for each active global admin; returns how many were queued"""
        admins = self.db.execute_query(
            "SELECT email, name FROM users WHERE role = 'global_admin' AND is_active = 1"
        )
        if not admins:
            logger.info("No active global admins to notify")
            return 0

        portal_name = get_settings(self.db).portal_name or PORTAL_NAME
        subject, body = build_summary_email(results, portal_name)
        sent = 0
        for admin in admins:
            if not admin.get("email"):
                continue
            queue_email(admin["email"], subject, body, metadata={"type": "import-summary"}, db=self.db)
            sent += 1
        return sent


def build_summary_email(results: ScanResults, portal_name: str):
    has_errors = bool(results.errors)
    subject = (
        f"FTP Import Scan Complete ({len(results.errors)} errors) - {portal_name}"
        if has_errors else f"FTP Import Scan Complete - {portal_name}"
    )
    rows = [
        ("Files Scanned", results.scanned),
        ("Queued for Import", results.queued),
        ("Skipped", results.skipped),
        ("Duplicates", results.duplicates),
        ("Errors", len(results.errors)),
    ]
    parts = ["<h2>FTP Import Scan Results</h2>", "<p>The scheduled FTP folder scan has completed.</p>", "<table>"]
    parts += [f"<tr><td><strong>{label}</strong></td><td>{value}</td></tr>" for label, value in rows]
    parts.append("</table>")
    if results.files:
        parts.append("<h3>Files Queued for Import:</h3><ul>")
        parts += [
            f"<li>{html_lib.escape(f['fileName'])} ({f['fileSize'] / 1024:.1f} KB)</li>" for f in results.files
        ]
        parts.append("</ul>")
    if has_errors:
        parts.append("<h3>Errors:</h3><ul>")
        parts += [
            f"<li><strong>{html_lib.escape(e.get('fileName') or 'General')}</strong>: "
            f"{html_lib.escape(str(e.get('error')))}</li>"
            for e in results.errors
        ]
        parts.append("</ul>")
    parts.append(f"<p>This is an automated message from {html_lib.escape(portal_name)}.</p>")
    return subject, "\n".join(parts)


def process_local_folder_scan(db: Optional[DatabaseManager] = None, client=None, **options) -> Dict[str, Any]:
    """Scheduled job entry point: scan, then notify admins when anything happened"""
    scanner = FolderScanner(db=db, client=client, **options)
    results = scanner.scan()
    if results.queued > 0 or results.errors:
        try:
            scanner.send_summary_email(results)
        except Exception as e:
            logger.error(f"Failed to send scan summary email: {e}")
    return results.to_dict()
