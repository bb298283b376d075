# vibe_crm/provisioning/tenant_db.py
"""
Connection pool for the tenant Postgres database (where generated CRM
tables live).

    with tenant_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")

The block is one transaction: committed on success, rolled back on error.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Optional

from psycopg2 import pool

from vibe_crm.config import TENANT_DATABASE_URL, TENANT_POOL_MAX, TENANT_POOL_MIN

logger = logging.getLogger(__name__)

_pg_pool: Optional[pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()


def get_pool(dsn: Optional[str] = None) -> pool.ThreadedConnectionPool:
    global _pg_pool

    if _pg_pool is None:
        with _pool_lock:
            if _pg_pool is None:
                dsn = dsn or TENANT_DATABASE_URL
                if not dsn:
                    raise RuntimeError("TENANT_DATABASE_URL is not configured")
                _pg_pool = pool.ThreadedConnectionPool(TENANT_POOL_MIN, TENANT_POOL_MAX, dsn)
                logger.info(
                    "Tenant connection pool initialized (min=%d, max=%d)",
                    TENANT_POOL_MIN,
                    TENANT_POOL_MAX,
                )
    return _pg_pool


def close_pool() -> None:
    global _pg_pool

    with _pool_lock:
        if _pg_pool is not None:
            _pg_pool.closeall()
            _pg_pool = None
            logger.info("Tenant connection pool closed")


@contextmanager
def tenant_connection(dsn: Optional[str] = None):
    pg_pool = get_pool(dsn)
    conn = pg_pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)
