"""
Portal Schema Migration
Creates the tables used by the import, retention and email jobs and seeds
the single settings row
"""

import os
import sys
import json
import traceback
from datetime import datetime

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from database_manager import DatabaseManager, db_manager as default_db
from models.portal_models import get_portal_schema, get_portal_indexes, to_db_timestamp, utc_now
from config import DEFAULT_IMPORT_FREQUENCY_MINUTES, PORTAL_NAME


def _is_already_exists(error: Exception) -> bool:
    text = str(error).lower()
    return "already exists" in text or "duplicate key name" in text


def _index_name(statement: str) -> str:
    return next((token for token in statement.split() if token.startswith("idx_")), "index")


def seed_settings(db: DatabaseManager):
    """Insert the settings row when the table is empty"""
    existing = db.execute_one("SELECT id FROM settings ORDER BY id LIMIT 1")
    if existing:
        return existing["id"]
    import_settings = json.dumps({"enabled": True, "frequency": DEFAULT_IMPORT_FREQUENCY_MINUTES})
    return db.execute_insert(
        """
        INSERT INTO settings (file_retention_days, document_retention_period,
                              document_retention_date_trigger, import_settings,
                              portal_name, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (None, None, "upload_date", import_settings, PORTAL_NAME, to_db_timestamp(utc_now())),
    )


def run_portal_migration(db: DatabaseManager = None, verbose: bool = True) -> bool:
    """Run the portal migration"""
    db = db or default_db

    if verbose:
        print("=" * 70)
        print("INVOICE PORTAL MIGRATION")
        print("=" * 70)
        print(f"Database type: {db.db_type}")
        print(f"Timestamp: {datetime.now().isoformat()}")
        print()

    try:
        statements = get_portal_schema(db.db_type)
        db.execute_script(statements)
        if verbose:
            print(f"  Created/verified {len(statements)} tables")

        for statement in get_portal_indexes(db.db_type):
            try:
                db.execute_update(statement)
                if verbose:
                    print(f"  Created index {_index_name(statement)}")
            except Exception as e:
                if _is_already_exists(e):
                    if verbose:
                        print(f"  Index {_index_name(statement)} already exists")
                else:
                    raise

        seed_settings(db)
        if verbose:
            print()
            print("Migration completed successfully")
        return True
    except Exception as e:
        print(f"Migration failed: {e}")
        traceback.print_exc()
        return False


if __name__ == "__main__":
    success = run_portal_migration()
    sys.exit(0 if success else 1)
