"""db/traces.py

Decision Trace Recorder (append-only audit log) and the daily quota check
that counts it.

Construction modes:

- TraceRecorder(db_path="...")
- TraceRecorder(conn=sqlite3.Connection)
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from vibe_crm.config import DAILY_REQUEST_LIMIT
from vibe_crm.db.infra.core import dump_json, get_conn, safe_json_loads
from vibe_crm.errors import QuotaExceeded
from vibe_crm.utils import start_of_day, to_iso, utc_now

logger = logging.getLogger(__name__)


class TraceRecorder:
    def __init__(
        self,
        db_path: Optional[str] = None,
        conn=None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        if conn is None and db_path is None:
            raise ValueError("TraceRecorder requires either db_path or conn")

        self._db_path = db_path
        self._conn = conn
        self._clock = clock

    @contextmanager
    def _connection(self):
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._db_path) as conn:
                yield conn

    # -----------------------
    # WRITE operations
    # -----------------------

    def record(
        self,
        *,
        user_id: str,
        intent: str,
        action: str,
        project_id: Optional[str] = None,
        precedent: Optional[str] = None,
        version: Optional[str] = None,
        schema_before: Optional[Dict[str, Any]] = None,
        schema_after: Optional[Dict[str, Any]] = None,
    ) -> str:
        trace_id = str(uuid.uuid4())
        timestamp = to_iso(self._clock())

        logger.info("Recording decision trace for project %s (%s)", project_id, action)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO decision_traces
                        (id, project_id, user_id, intent, action, precedent,
                         version, schema_before, schema_after, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        trace_id,
                        project_id,
                        user_id,
                        intent,
                        action,
                        precedent,
                        version,
                        dump_json(schema_before),
                        dump_json(schema_after),
                        timestamp,
                    ),
                )
        except Exception:
            logger.exception("Failed to record decision trace for project %s", project_id)
            raise

        return trace_id

    def record_nonblocking(self, **entry) -> Optional[str]:
        """
        Record a trace without letting a storage failure escape.
        Returns None when the write failed; the failure is already logged.
        """
        try:
            return self.record(**entry)
        except Exception:
            return None

    # -----------------------
    # READ operations
    # -----------------------

    def list(self, project_id: str) -> list[dict]:
        """Traces for a project, newest first."""
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, project_id, user_id, intent, action, precedent,
                           version, schema_before, schema_after, timestamp
                    FROM decision_traces
                    WHERE project_id = ?
                    ORDER BY timestamp DESC, rowid DESC
                    """,
                    (project_id,),
                ).fetchall()
        except Exception:
            logger.exception("Failed to load decision traces for project %s", project_id)
            raise

        return [
            {
                "id": row["id"],
                "project_id": row["project_id"],
                "user_id": row["user_id"],
                "intent": row["intent"],
                "action": row["action"],
                "precedent": row["precedent"],
                "version": row["version"],
                "schema_before": safe_json_loads(row["schema_before"], None),
                "schema_after": safe_json_loads(row["schema_after"], None),
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    def count_since(self, user_id: str, since: datetime) -> int:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM decision_traces WHERE user_id = ? AND timestamp >= ?",
                    (user_id, to_iso(since)),
                ).fetchone()
        except Exception:
            logger.exception("Failed to count decision traces for %s", user_id)
            raise
        return int(row[0])


class QuotaTracker:
    """
    Daily AI request quota, counted from the trace table since UTC midnight.
    """

    def __init__(
        self,
        traces: TraceRecorder,
        *,
        limit: int = DAILY_REQUEST_LIMIT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._traces = traces
        self._limit = limit
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    def used_today(self, user_id: str) -> int:
        return self._traces.count_since(user_id, start_of_day(self._clock()))

    def check(self, user_id: str) -> int:
        """Raise QuotaExceeded when exhausted, else return the remaining count."""
        used = self.used_today(user_id)
        if used >= self._limit:
            logger.info("Quota exhausted for %s (%d/%d)", user_id, used, self._limit)
            raise QuotaExceeded(self._limit, used)
        return self._limit - used


# -----------------------
# Transaction-scoped recorder
# -----------------------

@contextmanager
def trace_recorder(db_path: str):
    """
    Yield a TraceRecorder bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield TraceRecorder(conn=conn)
