"""db/locks.py

Per-project schema lock with a short TTL.

State per project: UNLOCKED -> LOCKED(owner, expiry) -> UNLOCKED.
Expired rows are purged lazily on acquire; nothing depends on a sweeper.

Construction modes:

- SchemaLockManager(db_path="...")
- SchemaLockManager(conn=sqlite3.Connection)

Scoped use around a critical section:

with SchemaLockManager(db_path).hold(project_id, user_id) as lock:
    ...

hold() never shares a lock between runs; a run may reuse a lock only by
passing the lock_id that acquire() returned.
"""
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional

from vibe_crm.config import LOCK_TTL_MAX, LOCK_TTL_MIN, LOCK_TTL_MINUTES
from vibe_crm.db.infra.core import get_conn
from vibe_crm.errors import LockConflict
from vibe_crm.models import LockResult, LockState
from vibe_crm.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class SchemaLockManager:
    def __init__(
        self,
        db_path: Optional[str] = None,
        conn=None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        if conn is None and db_path is None:
            raise ValueError("SchemaLockManager requires either db_path or conn")

        self._db_path = db_path
        self._conn = conn
        self._clock = clock

    # -----------------------
    # internal helpers
    # -----------------------

    @contextmanager
    def _connection(self):
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._db_path) as conn:
                yield conn

    @staticmethod
    def _check_ttl(ttl_minutes: int) -> None:
        if isinstance(ttl_minutes, bool) or not isinstance(ttl_minutes, int):
            raise ValueError("Lock duration must be an integer number of minutes")
        if not LOCK_TTL_MIN <= ttl_minutes <= LOCK_TTL_MAX:
            raise ValueError(
                f"Lock duration must be between {LOCK_TTL_MIN} and {LOCK_TTL_MAX} minutes"
            )

    @staticmethod
    def _row_to_state(row) -> LockState:
        return LockState(
            id=row["id"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            locked_at=row["locked_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _purge(conn, now_iso: str) -> None:
        purged = conn.execute(
            "DELETE FROM schema_locks WHERE expires_at <= ?",
            (now_iso,),
        ).rowcount
        if purged:
            logger.debug("Purged %d expired schema lock(s)", purged)

    def _current(self, conn, project_id: str, now_iso: str) -> LockState | None:
        row = conn.execute(
            """
            SELECT id, project_id, user_id, locked_at, expires_at
            FROM schema_locks
            WHERE project_id = ? AND expires_at > ?
            """,
            (project_id, now_iso),
        ).fetchone()
        return self._row_to_state(row) if row else None

    # -----------------------
    # Operations
    # -----------------------

    def acquire(
        self,
        project_id: str,
        user_id: str,
        ttl_minutes: int = LOCK_TTL_MINUTES,
    ) -> LockResult:
        """
        Acquire or extend the lock on ``project_id``.

        - another owner holds an unexpired lock -> lock_acquired=False with that owner
        - caller already holds it -> expiry pushed to now + ttl, lock_extended=True
        - otherwise a fresh lock is created
        """
        self._check_ttl(ttl_minutes)
        now = self._clock()
        now_iso = to_iso(now)
        expires_at = to_iso(now + timedelta(minutes=ttl_minutes))

        try:
            with self._connection() as conn:
                self._purge(conn, now_iso)

                current = self._current(conn, project_id, now_iso)
                if current is not None:
                    return self._resolve_existing(conn, current, user_id, expires_at)

                lock_id = str(uuid.uuid4())
                try:
                    conn.execute(
                        """
                        INSERT INTO schema_locks (id, project_id, user_id, locked_at, expires_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (lock_id, project_id, user_id, now_iso, expires_at),
                    )
                except sqlite3.IntegrityError:
                    # Lost the race between read and insert
                    current = self._current(conn, project_id, now_iso)
                    if current is None:
                        raise
                    return self._resolve_existing(conn, current, user_id, expires_at)
        except Exception:
            logger.exception("Failed to acquire schema lock for project %s", project_id)
            raise

        logger.info("Schema lock acquired on %s by %s until %s", project_id, user_id, expires_at)
        return LockResult(
            lock_acquired=True,
            locked_by=user_id,
            expires_at=expires_at,
            lock_id=lock_id,
        )

    def _resolve_existing(self, conn, current: LockState, user_id: str, expires_at: str) -> LockResult:
        if current.user_id != user_id:
            logger.info(
                "Schema lock on %s refused for %s: held by %s until %s",
                current.project_id,
                user_id,
                current.user_id,
                current.expires_at,
            )
            return LockResult(
                lock_acquired=False,
                locked_by=current.user_id,
                expires_at=current.expires_at,
            )

        conn.execute(
            "UPDATE schema_locks SET expires_at = ? WHERE id = ?",
            (expires_at, current.id),
        )
        logger.info("Schema lock on %s extended by %s until %s", current.project_id, user_id, expires_at)
        return LockResult(
            lock_acquired=True,
            locked_by=user_id,
            expires_at=expires_at,
            lock_id=current.id,
            lock_extended=True,
        )

    def release(self, project_id: str, user_id: str) -> bool:
        """
        Delete the lock iff ``user_id`` owns it. Releasing someone else's
        lock (or no lock) is a no-op. Returns whether a row was removed.
        """
        try:
            with self._connection() as conn:
                deleted = conn.execute(
                    "DELETE FROM schema_locks WHERE project_id = ? AND user_id = ?",
                    (project_id, user_id),
                ).rowcount
        except Exception:
            logger.exception("Failed to release schema lock for project %s", project_id)
            raise

        if deleted:
            logger.info("Schema lock on %s released by %s", project_id, user_id)
        return bool(deleted)

    def status(self, project_id: str, user_id: Optional[str] = None) -> dict:
        now_iso = to_iso(self._clock())
        try:
            with self._connection() as conn:
                current = self._current(conn, project_id, now_iso)
        except Exception:
            logger.exception("Failed to read schema lock for project %s", project_id)
            raise

        if current is None:
            return {"is_locked": False}
        return {
            "is_locked": True,
            "locked_by": current.user_id,
            "is_own_lock": user_id is not None and current.user_id == user_id,
            "locked_at": current.locked_at,
            "expires_at": current.expires_at,
        }

    def sweep_expired(self) -> int:
        now_iso = to_iso(self._clock())
        with self._connection() as conn:
            return conn.execute(
                "DELETE FROM schema_locks WHERE expires_at <= ?",
                (now_iso,),
            ).rowcount

    @contextmanager
    def hold(
        self,
        project_id: str,
        user_id: str,
        ttl_minutes: int = LOCK_TTL_MINUTES,
        lock_id: Optional[str] = None,
    ):
        """
        Scoped acquisition for one critical section.

        Any unexpired lock on the project raises LockConflict, including
        one held by the same user from another request. The only way in
        past an existing lock is to pass the ``lock_id`` returned by
        acquire(); that lock is extended and left in place. A lock created
        here is released by id on every exit path.
        """
        result = self._claim(project_id, user_id, ttl_minutes, lock_id)
        try:
            yield result
        finally:
            if not result.lock_extended:
                self._release_id(project_id, result.lock_id)

    def _claim(self, project_id: str, user_id: str, ttl_minutes: int, lock_id: Optional[str]) -> LockResult:
        self._check_ttl(ttl_minutes)
        now = self._clock()
        now_iso = to_iso(now)
        expires_at = to_iso(now + timedelta(minutes=ttl_minutes))

        with self._connection() as conn:
            self._purge(conn, now_iso)
            current = self._current(conn, project_id, now_iso)
            if current is None:
                new_id = str(uuid.uuid4())
                try:
                    conn.execute(
                        """
                        INSERT INTO schema_locks (id, project_id, user_id, locked_at, expires_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (new_id, project_id, user_id, now_iso, expires_at),
                    )
                except sqlite3.IntegrityError:
                    current = self._current(conn, project_id, now_iso)
                    if current is None:
                        raise
                else:
                    logger.debug("Schema lock %s taken on %s for one run", new_id, project_id)
                    return LockResult(
                        lock_acquired=True,
                        locked_by=user_id,
                        expires_at=expires_at,
                        lock_id=new_id,
                    )

            if lock_id is not None and current.id == lock_id and current.user_id == user_id:
                return self._resolve_existing(conn, current, user_id, expires_at)

        if current.user_id == user_id:
            logger.info("Schema on %s is already being changed by %s", project_id, user_id)
            raise LockConflict(
                current.user_id,
                current.expires_at,
                message=f"Schema is already being changed by another request until {current.expires_at}",
            )
        raise LockConflict(current.user_id, current.expires_at)

    def _release_id(self, project_id: str, lock_id: str) -> None:
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM schema_locks WHERE id = ?", (lock_id,))
        except Exception:
            logger.exception("Failed to release schema lock for project %s", project_id)
            raise


# -----------------------
# Transaction-scoped manager
# -----------------------

@contextmanager
def lock_manager(db_path: str, clock: Callable[[], datetime] = utc_now):
    """
    Yield a SchemaLockManager bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield SchemaLockManager(conn=conn, clock=clock)
