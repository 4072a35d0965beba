from datetime import timedelta

import pytest

from models.portal_models import to_db_timestamp, utc_now
from services.settings_service import invalidate_cache
from tasks import scheduled_tasks
from tasks.scheduled_tasks import (
    cleanup_expired_documents,
    cleanup_old_files,
    resolve_upload_path,
    run_scheduled_task,
)


def _set_retention(db, **columns):
    assignments = ", ".join(f"{name} = ?" for name in columns)
    db.execute_update(f"UPDATE settings SET {assignments}", tuple(columns.values()))
    invalidate_cache()


def _stamp(days_ago=0):
    return to_db_timestamp(utc_now() - timedelta(days=days_ago))


@pytest.fixture()
def upload_folder(tmp_path, monkeypatch):
    folder = tmp_path / "uploads"
    folder.mkdir()
    monkeypatch.setattr(scheduled_tasks, "UPLOAD_FOLDER", str(folder))
    return folder


def test_unknown_task(db):
    assert run_scheduled_task(task="defragment") == {"success": False, "message": "Unknown task"}


def test_file_cleanup_disabled(db):
    result = run_scheduled_task(task="file-cleanup")

    assert result == {"success": True, "task": "file-cleanup", "result": {"deleted": 0, "errors": 0, "total": 0}}


def test_file_cleanup_removes_old_files(db, tmp_path):
    _set_retention(db, file_retention_days=30)
    old_file = tmp_path / "old.pdf"
    old_file.write_bytes(b"old")
    new_file = tmp_path / "new.pdf"
    new_file.write_bytes(b"new")
    for name, path, uploaded in (("old.pdf", old_file, _stamp(45)), ("new.pdf", new_file, _stamp(1)),
                                 ("gone.pdf", tmp_path / "gone.pdf", _stamp(60))):
        db.execute_insert(
            "INSERT INTO files (file_name, file_path, uploaded_at) VALUES (?, ?, ?)",
            (name, str(path), uploaded),
        )

    result = cleanup_old_files(db)

    assert result == {"deleted": 2, "errors": 0, "total": 2}
    assert not old_file.exists()
    assert new_file.exists()
    remaining = db.execute_query("SELECT file_name FROM files WHERE deleted_at IS NULL")
    assert [row["file_name"] for row in remaining] == ["new.pdf"]
    assert db.execute_one("SELECT * FROM activity_logs WHERE type = 'file_purge'") is not None


def test_resolve_upload_path(upload_folder):
    assert resolve_upload_path("/invoices/a.pdf") == str(upload_folder / "invoices" / "a.pdf")
    assert resolve_upload_path("relative/a.pdf") == "relative/a.pdf"
    assert resolve_upload_path(None) is None


def test_retention_cleanup_disabled(db):
    assert cleanup_expired_documents(db) == {"deleted": 0, "errors": 0, "total": 0, "byType": {}}


def test_retention_cleanup_deletes_expired_and_notifies(db, sent_tasks, upload_folder):
    _set_retention(db, document_retention_period=30)
    regular = db.execute_insert("INSERT INTO companies (name, edi) VALUES (?, ?)", ("Regular Ltd", 0))
    edi = db.execute_insert("INSERT INTO companies (name, edi) VALUES (?, ?)", ("EDI Ltd", 1))
    for email, company_id, role in (("buyer@regular.test", regular, "external_user"),
                                    ("staff@regular.test", regular, "company_admin"),
                                    ("buyer@edi.test", edi, "external_user")):
        db.execute_insert(
            "INSERT INTO users (email, role, company_id, is_active) VALUES (?, ?, ?, 1)",
            (email, role, company_id),
        )

    (upload_folder / "inv-1.pdf").write_bytes(b"pdf")
    rows = (
        ("INV-1", regular, "/inv-1.pdf", _stamp(1)),
        ("INV-2", edi, None, _stamp(2)),
        ("INV-3", regular, None, to_db_timestamp(utc_now() + timedelta(days=3))),
    )
    for number, company_id, file_url, expiry in rows:
        db.execute_insert(
            "INSERT INTO invoices (invoice_number, company_id, file_url, retention_expiry_date, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (number, company_id, file_url, expiry, _stamp(40)),
        )

    result = cleanup_expired_documents(db)

    assert result["deleted"] == 2
    assert result["byType"] == {"invoice": 2, "credit_note": 0, "statement": 0}
    assert not (upload_folder / "inv-1.pdf").exists()

    deleted = db.execute_one("SELECT * FROM invoices WHERE invoice_number = 'INV-1'")
    assert deleted["retention_deleted_at"]
    assert deleted["deleted_reason"] == "Automatically deleted due to retention policy (30 days)"
    assert db.execute_one("SELECT deleted_at FROM invoices WHERE invoice_number = 'INV-3'")["deleted_at"] is None

    assert [task["kwargs"]["to"] for task in sent_tasks] == ["buyer@regular.test"]
    activity = db.execute_query("SELECT * FROM activity_logs WHERE type = 'document_deleted'")
    assert len(activity) == 2


def test_retention_cleanup_is_idempotent(db, sent_tasks, upload_folder):
    _set_retention(db, document_retention_period=7)
    db.execute_insert(
        "INSERT INTO credit_notes (credit_note_number, retention_expiry_date, created_at) VALUES (?, ?, ?)",
        ("CN-1", _stamp(1), _stamp(10)),
    )

    assert cleanup_expired_documents(db)["deleted"] == 1
    assert cleanup_expired_documents(db)["deleted"] == 0


def test_scheduled_task_dispatches_retention(db, sent_tasks):
    result = run_scheduled_task(task="document-retention-cleanup")

    assert result["success"] is True
    assert result["result"]["deleted"] == 0
