import pytest

from services import settings_service
from services.settings_service import get_settings, record_import_run, update_import_settings


def test_defaults_from_seeded_row(db):
    settings = get_settings(db)

    assert settings.import_settings.enabled is True
    assert settings.import_settings.frequency == 60
    assert settings.document_retention_period is None
    assert settings.document_retention_date_trigger == "upload_date"


def test_cached_until_invalidated(db):
    first = get_settings(db)
    db.execute_update("UPDATE settings SET document_retention_period = ?", (90,))

    assert get_settings(db) is first
    assert get_settings(db, use_cache=False).document_retention_period == 90


def test_cache_expires(db, monkeypatch):
    get_settings(db)
    db.execute_update("UPDATE settings SET file_retention_days = ?", (14,))
    monkeypatch.setattr(settings_service, "SETTINGS_CACHE_TTL_SECONDS", 0)

    assert get_settings(db).file_retention_days == 14


def test_update_keeps_last_run(db):
    record_import_run(1500, {"scanned": 3, "queued": 2}, db)

    updated = update_import_settings(db, frequency=240)

    assert updated.frequency == 240
    assert updated.last_run_duration == 1500
    assert get_settings(db).import_settings.last_run_stats == {"scanned": 3, "queued": 2}


def test_update_rejects_unknown_frequency(db):
    with pytest.raises(ValueError):
        update_import_settings(db, frequency=45)


def test_missing_row_is_created(db):
    db.execute_update("DELETE FROM settings")

    update_import_settings(db, enabled=False)

    assert get_settings(db, use_cache=False).import_settings.enabled is False
