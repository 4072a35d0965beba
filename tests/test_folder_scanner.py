import hashlib
import os

import pytest

from celery_app import INVOICE_IMPORT_QUEUE, INVOICE_IMPORT_TASK, SEND_EMAIL_TASK
from models.portal_models import ScanResults, to_db_timestamp, utc_now
from services import folder_scanner, queue_stats
from services.folder_scanner import FolderScanner, build_summary_email, move_to_failed
from services.import_logger import ImportLogger
from services.settings_service import get_settings


@pytest.fixture()
def folders(tmp_path):
    paths = {name: tmp_path / name for name in ("inbound", "processed", "failed")}
    paths["inbound"].mkdir()
    return paths


@pytest.fixture()
def scanner(db, fake_redis, folders):
    return FolderScanner(
        db=db,
        client=fake_redis,
        import_log=ImportLogger(fake_redis),
        inbound_path=str(folders["inbound"]),
        processed_path=str(folders["processed"]),
        failed_path=str(folders["failed"]),
    )


@pytest.fixture()
def drop_file(folders, age_file):
    def _drop(name, content=b"%PDF-1.4 invoice", age=120):
        path = folders["inbound"] / name
        path.write_bytes(content)
        if age:
            age_file(str(path), age)
        return path
    return _drop


def _insert_file(db, name, file_hash, uploaded_at=None):
    db.execute_insert(
        "INSERT INTO files (file_name, file_hash, status, uploaded_at) VALUES (?, ?, ?, ?)",
        (name, file_hash, "parsed", to_db_timestamp(uploaded_at or utc_now())),
    )


def test_new_file_is_queued(scanner, drop_file, sent_tasks, db):
    drop_file("inv-001.pdf")
    drop_file("notes.txt")

    results = scanner.scan()

    assert results.scanned == 1
    assert results.queued == 1
    job = sent_tasks[0]
    assert job["name"] == INVOICE_IMPORT_TASK
    assert job["queue"] == INVOICE_IMPORT_QUEUE
    assert job["task_id"].startswith("local-import-")
    assert job["kwargs"]["file_name"] == "inv-001.pdf"
    assert job["kwargs"]["source"] == "local-ftp"
    assert job["kwargs"]["file_hash"] == hashlib.sha256(b"%PDF-1.4 invoice").hexdigest()

    run_stats = get_settings(db, use_cache=False).import_settings.last_run_stats
    assert run_stats == {"scanned": 1, "queued": 1, "processed": 1, "failed": 0, "duplicates": 0}


def test_young_file_is_left_alone(scanner, drop_file, sent_tasks):
    drop_file("uploading.pdf", age=0)

    results = scanner.scan()

    assert results.skipped == 1
    assert sent_tasks == []


def test_already_queued_file_is_skipped(scanner, drop_file, sent_tasks, fake_redis):
    drop_file("inv-002.pdf")
    queue_stats.mark_delayed(INVOICE_IMPORT_QUEUE, "job-9", INVOICE_IMPORT_TASK,
                             {"file_name": "inv-002.pdf"}, "retrying", fake_redis)

    results = scanner.scan()

    assert results.skipped == 1
    assert results.queued == 0


def test_duplicate_moved_to_dated_duplicates_folder(scanner, drop_file, sent_tasks, db, folders):
    content = b"%PDF-1.4 same content"
    _insert_file(db, "older.pdf", hashlib.sha256(content).hexdigest())
    drop_file("inv-003.pdf", content)

    results = scanner.scan()

    assert results.duplicates == 1
    assert sent_tasks == []
    assert not (folders["inbound"] / "inv-003.pdf").exists()
    moved = list((folders["processed"] / "duplicates").glob("*/inv-003.pdf"))
    assert len(moved) == 1


def test_recently_processed_name_is_skipped(scanner, drop_file, sent_tasks, db):
    _insert_file(db, "inv-004.pdf", "another-hash")
    drop_file("inv-004.pdf")

    results = scanner.scan()

    assert results.skipped == 1
    assert sent_tasks == []


def test_missing_inbound_folder_is_created(db, fake_redis, tmp_path):
    inbound = tmp_path / "not-yet"
    scanner = FolderScanner(db=db, client=fake_redis, import_log=ImportLogger(fake_redis),
                            inbound_path=str(inbound), processed_path=str(tmp_path / "p"),
                            failed_path=str(tmp_path / "f"))

    results = scanner.scan()

    assert inbound.is_dir()
    assert results.scanned == 0


def test_unreadable_file_moved_to_failed(scanner, drop_file, sent_tasks, folders, monkeypatch):
    drop_file("broken.pdf")

    def explode(path):
        raise OSError("disk read error")

    monkeypatch.setattr(folder_scanner, "calculate_file_hash", explode)
    results = scanner.scan()

    assert results.errors == [{"fileName": "broken.pdf", "error": "disk read error"}]
    notes = list(folders["failed"].glob("*/broken.pdf.error.txt"))
    assert len(notes) == 1
    assert "Error: disk read error" in notes[0].read_text()


def test_move_to_failed_keeps_existing_file(tmp_path):
    failed = tmp_path / "failed"
    for content in (b"one", b"two"):
        source = tmp_path / "a.pdf"
        source.write_bytes(content)
        move_to_failed(str(source), "a.pdf", "bad", str(failed))

    moved = [p for p in failed.glob("*/*.pdf")]
    assert len(moved) == 2


def test_summary_email_goes_to_active_admins(scanner, sent_tasks, db):
    for email, active in (("admin@example.com", 1), ("former@example.com", 0)):
        db.execute_insert(
            "INSERT INTO users (email, name, role, is_active, created_at) VALUES (?, ?, ?, ?, ?)",
            (email, "Admin", "global_admin", active, to_db_timestamp(utc_now())),
        )
    results = ScanResults(scanned=2, queued=1, files=[{"fileName": "a.pdf", "fileSize": 2048, "importId": "x"}])

    assert scanner.send_summary_email(results) == 1
    assert [task["name"] for task in sent_tasks] == [SEND_EMAIL_TASK]
    assert sent_tasks[0]["kwargs"]["to"] == "admin@example.com"


def test_summary_email_content():
    results = ScanResults(scanned=1, errors=[{"fileName": "<x>.pdf", "error": "bad"}])

    subject, body = build_summary_email(results, "Acme Portal")

    assert subject == "FTP Import Scan Complete (1 errors) - Acme Portal"
    assert "&lt;x&gt;.pdf" in body


def test_scheduled_scan_only_emails_when_something_happened(db, fake_redis, sent_tasks, tmp_path):
    result = folder_scanner.process_local_folder_scan(
        db=db, client=fake_redis, import_log=ImportLogger(fake_redis), inbound_path=str(tmp_path / "in"),
        processed_path=str(tmp_path / "p"), failed_path=str(tmp_path / "f"),
    )

    assert result["queued"] == 0
    assert sent_tasks == []
    assert os.path.isdir(tmp_path / "in")
