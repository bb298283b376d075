"""db/versions.py

Schema version store. Rows are append-only; exactly one row per project is
active after any write (deactivate-all then activate-one, in one
transaction, backed by a partial unique index).

Construction modes:

- VersionStore(db_path="...")
- VersionStore(conn=sqlite3.Connection)
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from vibe_crm.db.infra.core import dump_json, get_conn, safe_json_loads
from vibe_crm.errors import NotFoundError
from vibe_crm.models import CREATE, MODIFY
from vibe_crm.utils import bump_version, max_version, next_free_patch, to_iso, utc_now

logger = logging.getLogger(__name__)

INITIAL_VERSION = "1.0.0"


class VersionStore:
    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError("VersionStore requires either db_path or conn")

        self._db_path = db_path
        self._conn = conn

    @contextmanager
    def _connection(self):
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._db_path) as conn:
                yield conn

    @staticmethod
    def _row_to_dict(row, include_schema: bool = True) -> dict:
        record = {
            "id": row["id"],
            "project_id": row["project_id"],
            "user_id": row["user_id"],
            "schema_version": row["schema_version"],
            "is_active": bool(row["is_active"]),
            "created_at": row["created_at"],
        }
        if include_schema:
            record["schema_json"] = safe_json_loads(row["schema_json"], None)
        return record

    # -----------------------
    # READ operations
    # -----------------------

    def history(self, project_id: str, include_schema: bool = False) -> list[dict]:
        """All versions of a project, most recently stored first."""
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, project_id, user_id, schema_version, schema_json, is_active, created_at
                    FROM schema_versions
                    WHERE project_id = ?
                    ORDER BY id DESC
                    """,
                    (project_id,),
                ).fetchall()
        except Exception:
            logger.exception("Failed to load version history for project %s", project_id)
            raise
        return [self._row_to_dict(r, include_schema) for r in rows]

    def get(self, project_id: str, version: str) -> dict | None:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, project_id, user_id, schema_version, schema_json, is_active, created_at
                    FROM schema_versions
                    WHERE project_id = ? AND schema_version = ?
                    """,
                    (project_id, version),
                ).fetchone()
        except Exception:
            logger.exception("Failed to load version %s of project %s", version, project_id)
            raise
        return self._row_to_dict(row) if row else None

    def require(self, project_id: str, version: str) -> dict:
        record = self.get(project_id, version)
        if record is None:
            raise NotFoundError(f"Version {version} not found for project '{project_id}'")
        return record

    def active(self, project_id: str) -> dict | None:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, project_id, user_id, schema_version, schema_json, is_active, created_at
                    FROM schema_versions
                    WHERE project_id = ? AND is_active = 1
                    """,
                    (project_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to load active version of project %s", project_id)
            raise
        return self._row_to_dict(row) if row else None

    def version_numbers(self, project_id: str) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT schema_version FROM schema_versions WHERE project_id = ?",
                (project_id,),
            ).fetchall()
        return [r[0] for r in rows]

    # -----------------------
    # Version numbering
    # -----------------------

    def next_version(self, project_id: str, intent: str) -> str:
        """
        First version is 1.0.0. MODIFY bumps the minor of the highest stored
        version; CREATE over an existing project bumps the major.
        """
        highest = max_version(self.version_numbers(project_id))
        if highest is None:
            return INITIAL_VERSION
        if intent == MODIFY:
            return bump_version(highest, "minor")
        if intent == CREATE:
            return bump_version(highest, "major")
        raise ValueError(f"No version rule for intent {intent!r}")

    def rollback_version(self, project_id: str, target_version: str) -> str:
        """
        Patch-increment of the rollback *target*, skipping numbers already
        used by this project (1.2.0 active, target 1.0.0 -> 1.0.1).
        """
        return next_free_patch(target_version, self.version_numbers(project_id))

    # -----------------------
    # WRITE operations
    # -----------------------

    def add(
        self,
        project_id: str,
        user_id: str,
        version: str,
        schema: Dict[str, Any],
        *,
        activate: bool = True,
    ) -> dict:
        created_at = to_iso(utc_now())
        logger.info("Storing version %s of project %s (activate=%s)", version, project_id, activate)
        try:
            with self._connection() as conn:
                if activate:
                    conn.execute(
                        "UPDATE schema_versions SET is_active = 0 WHERE project_id = ?",
                        (project_id,),
                    )
                cur = conn.execute(
                    """
                    INSERT INTO schema_versions
                        (project_id, user_id, schema_version, schema_json, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (project_id, user_id, version, dump_json(schema), 1 if activate else 0, created_at),
                )
                row_id = cur.lastrowid
        except Exception:
            logger.exception("Failed to store version %s of project %s", version, project_id)
            raise

        return {
            "id": row_id,
            "project_id": project_id,
            "user_id": user_id,
            "schema_version": version,
            "schema_json": schema,
            "is_active": activate,
            "created_at": created_at,
        }

    def activate(self, project_id: str, version: str) -> None:
        logger.info("Activating version %s of project %s", version, project_id)
        try:
            with self._connection() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM schema_versions WHERE project_id = ? AND schema_version = ?",
                    (project_id, version),
                ).fetchone()
                if not exists:
                    raise NotFoundError(f"Version {version} not found for project '{project_id}'")
                conn.execute(
                    "UPDATE schema_versions SET is_active = 0 WHERE project_id = ?",
                    (project_id,),
                )
                conn.execute(
                    "UPDATE schema_versions SET is_active = 1 WHERE project_id = ? AND schema_version = ?",
                    (project_id, version),
                )
        except NotFoundError:
            raise
        except Exception:
            logger.exception("Failed to activate version %s of project %s", version, project_id)
            raise


# -----------------------
# Transaction-scoped store
# -----------------------

@contextmanager
def version_store(db_path: str):
    """
    Yield a VersionStore bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield VersionStore(conn=conn)
