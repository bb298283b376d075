"""db/projects.py

Construction modes:

- ProjectDAO(db_path="...")
- ProjectDAO(conn=sqlite3.Connection)
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Optional

from vibe_crm.db.infra.core import get_conn
from vibe_crm.errors import NotFoundError
from vibe_crm.utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class ProjectDAO:
    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError("ProjectDAO requires either db_path or conn")

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
    def _row_to_dict(row) -> dict:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "name": row["name"],
            "description": row["description"],
            "created_at": row["created_at"],
        }

    # -----------------------
    # READ operations
    # -----------------------

    def get(self, project_id: str) -> dict | None:
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT id, user_id, name, description, created_at FROM projects WHERE id = ?",
                    (project_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to load project %s from DB", project_id)
            raise
        return self._row_to_dict(row) if row else None

    def get_owned(self, project_id: str, user_id: str) -> dict:
        """
        Return the project if ``user_id`` owns it. A foreign project is
        reported exactly like a missing one.
        """
        project = self.get(project_id)
        if project is None or project["user_id"] != user_id:
            raise NotFoundError(f"Project '{project_id}' not found")
        return project

    def list_for_user(self, user_id: str) -> list[dict]:
        try:
            with self._connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, name, description, created_at
                    FROM projects
                    WHERE user_id = ?
                    ORDER BY created_at DESC
                    """,
                    (user_id,),
                ).fetchall()
        except Exception:
            logger.exception("Failed to list projects for %s", user_id)
            raise
        return [self._row_to_dict(r) for r in rows]

    # -----------------------
    # WRITE operations
    # -----------------------

    def create(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> dict:
        project_id = project_id or str(uuid.uuid4())
        created_at = to_iso(utc_now())

        logger.info("Creating project %s for %s", project_id, user_id)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO projects (id, user_id, name, description, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (project_id, user_id, name, description, created_at),
                )
        except Exception:
            logger.exception("Failed to create project %s", project_id)
            raise

        return {
            "id": project_id,
            "user_id": user_id,
            "name": name,
            "description": description,
            "created_at": created_at,
        }

    def delete(self, project_id: str) -> None:
        logger.info("Deleting project %s from DB", project_id)
        try:
            with self._connection() as conn:
                conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        except Exception:
            logger.exception("Failed to delete project %s", project_id)
            raise


# -----------------------
# Transaction-scoped DAO
# -----------------------

@contextmanager
def project_dao(db_path: str):
    """
    Yield a ProjectDAO bound to a single transaction.
    """
    with get_conn(db_path) as conn:
        yield ProjectDAO(conn=conn)
