# db/infra/core.py
import json
import logging
import sqlite3

from contextlib import contextmanager

from vibe_crm.config import MIGRATIONS_PATH
from vibe_crm.db.infra.migrations import apply_migrations

logger = logging.getLogger(__name__)


def init_db(db_path: str, migrations_dir=MIGRATIONS_PATH):
    """
    Initialize the control-plane database:
    - open connection
    - apply migrations
    """
    logger.info("Initializing database at %s", db_path)
    try:
        with get_conn(db_path) as conn:
            apply_migrations(conn, migrations_dir)
    except Exception:
        logger.exception("Database initialization failed")
        raise


def safe_json_loads(value: str | None, default):
    """
    Safely load JSON from DB fields.
    Returns default if value is None, empty, or invalid.
    """
    if not value or not value.strip():
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in DB field")
        return default


def dump_json(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


# -----------------------
# Connection helper
# -----------------------

@contextmanager
def get_conn(path):
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
