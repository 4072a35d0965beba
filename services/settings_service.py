"""
Settings Service
Reads the single settings row with a short in-process cache and persists
import schedule changes
"""

import json
import logging
import threading
import time
from typing import Optional

from config import SETTINGS_CACHE_TTL_SECONDS
from database_manager import DatabaseManager, db_manager
from models.portal_models import ImportSettings, PortalSettings, to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

VALID_FREQUENCIES = [15, 30, 60, 120, 240, 360, 720, 1440]

_lock = threading.Lock()
_cache = {"db": None, "value": None, "loaded_at": 0.0}


def invalidate_cache():
    with _lock:
        _cache.update({"db": None, "value": None, "loaded_at": 0.0})


def _load_row(db: DatabaseManager) -> Optional[dict]:
    return db.execute_one("SELECT * FROM settings ORDER BY id LIMIT 1")


def get_settings(db: Optional[DatabaseManager] = None, use_cache: bool = True) -> PortalSettings:
    db = db or db_manager
    with _lock:
        fresh = time.monotonic() - _cache["loaded_at"] < SETTINGS_CACHE_TTL_SECONDS
        if use_cache and _cache["db"] is db and _cache["value"] is not None and fresh:
            return _cache["value"]

    settings = PortalSettings.from_row(_load_row(db))
    with _lock:
        _cache.update({"db": db, "value": settings, "loaded_at": time.monotonic()})
    return settings


def get_import_settings(db: Optional[DatabaseManager] = None) -> ImportSettings:
    return get_settings(db).import_settings


def save_import_settings(import_settings: ImportSettings, db: Optional[DatabaseManager] = None) -> ImportSettings:
    """Write the import_settings JSON back, creating the settings row if needed"""
    db = db or db_manager
    payload = json.dumps(import_settings.to_dict())
    now = to_db_timestamp(utc_now())
    row = _load_row(db)
    if row:
        db.execute_update(
            "UPDATE settings SET import_settings = ?, updated_at = ? WHERE id = ?",
            (payload, now, row["id"]),
        )
    else:
        db.execute_insert(
            "INSERT INTO settings (import_settings, document_retention_date_trigger, updated_at) VALUES (?, ?, ?)",
            (payload, "upload_date", now),
        )
    invalidate_cache()
    return import_settings


def update_import_settings(db: Optional[DatabaseManager] = None, enabled: Optional[bool] = None,
                           frequency: Optional[int] = None) -> ImportSettings:
    """Change the enabled flag and/or frequency, keeping last-run bookkeeping"""
    if frequency is not None and frequency not in VALID_FREQUENCIES:
        raise ValueError(f"Invalid frequency {frequency}. Must be one of: {', '.join(map(str, VALID_FREQUENCIES))}")

    current = get_settings(db, use_cache=False).import_settings
    if enabled is not None:
        current.enabled = bool(enabled)
    if frequency is not None:
        current.frequency = int(frequency)
    return save_import_settings(current, db)


def record_import_run(duration_ms: int, stats: dict, db: Optional[DatabaseManager] = None) -> ImportSettings:
    current = get_settings(db, use_cache=False).import_settings
    current.last_run = utc_now().isoformat()
    current.last_run_duration = duration_ms
    current.last_run_stats = stats
    return save_import_settings(current, db)
