# service.py
"""
Surface operations exposed to the rest of the application (HTTP handlers,
CLI, UI). Each takes the caller's Identity, enforces project ownership and
returns plain dicts. error_response() maps any exception to a
(status, body) pair with a machine-checkable ``error`` kind.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from vibe_crm.db.projects import ProjectDAO
from vibe_crm.engine import SchemaPipeline, request_errors
from vibe_crm.errors import (
    AuthFailure,
    GenerationFailure,
    InvalidIntent,
    LockConflict,
    NotFoundError,
    PipelineError,
    ProvisioningFailure,
    QuotaExceeded,
    ValidationFailure,
)
from vibe_crm.models import Identity
from vibe_crm.provisioning.schema_diff import desired_columns, diff_schemas
from vibe_crm.structured_schemas import AcquireLockRequest, CRMSchema, CreateProjectRequest

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    AuthFailure.kind: 401,
    NotFoundError.kind: 404,
    InvalidIntent.kind: 400,
    ValidationFailure.kind: 422,
    LockConflict.kind: 409,
    QuotaExceeded.kind: 429,
    GenerationFailure.kind: 502,
    ProvisioningFailure.kind: 500,
    PipelineError.kind: 500,
}


def error_response(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    if isinstance(exc, PipelineError):
        return STATUS_BY_KIND.get(exc.kind, 500), exc.to_dict()
    logger.error("Unhandled error in schema service", exc_info=exc)
    return 500, {"error": PipelineError.kind, "message": "Internal error"}


class SchemaService:
    def __init__(self, pipeline: SchemaPipeline):
        self.pipeline = pipeline

    @property
    def projects(self) -> ProjectDAO:
        return self.pipeline.projects

    @staticmethod
    def _user(identity: Optional[Identity]) -> str:
        if identity is None or not identity.id:
            raise AuthFailure()
        return identity.id

    def _owned(self, identity: Optional[Identity], project_id: str) -> str:
        user_id = self._user(identity)
        self.projects.get_owned(project_id, user_id)
        return user_id

    # -----------------------
    # Projects
    # -----------------------

    def create_project(self, identity: Identity, name: str, description: Optional[str] = None) -> dict:
        user_id = self._user(identity)
        try:
            request = CreateProjectRequest(name=name, description=description)
        except ValidationError as e:
            raise ValidationFailure(request_errors(e), message="Invalid request") from e
        return self.projects.create(user_id, request.name, request.description)

    def list_projects(self, identity: Identity) -> list[dict]:
        return self.projects.list_for_user(self._user(identity))

    # -----------------------
    # Generation / rollback
    # -----------------------

    def generate_schema(
        self,
        identity: Identity,
        prompt: str,
        project_id: Optional[str] = None,
        *,
        confirm_destructive: bool = False,
        lock_id: Optional[str] = None,
    ) -> dict:
        user_id = self._user(identity)
        result = self.pipeline.generate_schema(
            prompt,
            user_id,
            project_id,
            confirm_destructive=confirm_destructive,
            lock_id=lock_id,
        )
        return result.to_dict()

    def rollback(
        self,
        identity: Identity,
        project_id: str,
        target_version: str,
        reason: Optional[str] = None,
        *,
        confirm_destructive: bool = False,
        lock_id: Optional[str] = None,
    ) -> dict:
        user_id = self._user(identity)
        result = self.pipeline.rollback(
            project_id,
            user_id,
            target_version,
            reason,
            confirm_destructive=confirm_destructive,
            lock_id=lock_id,
        )
        return {
            "success": True,
            "new_version": result.version,
            "rolled_back_to": target_version,
            "trace_id": result.trace_id,
            "provision": result.provision.to_dict() if result.provision else None,
            "warnings": list(result.warnings),
        }

    # -----------------------
    # Locks
    # -----------------------

    def acquire_lock(self, identity: Identity, project_id: str, duration_minutes: int | None = None) -> dict:
        """
        Returns the lock body on success; raises LockConflict (409) when
        another user holds the lock.
        """
        user_id = self._owned(identity, project_id)
        payload = {} if duration_minutes is None else {"duration_minutes": duration_minutes}
        try:
            request = AcquireLockRequest(**payload)
        except ValidationError as e:
            raise ValidationFailure(request_errors(e), message="Invalid request") from e

        result = self.pipeline.locks.acquire(project_id, user_id, request.duration_minutes)
        if not result.lock_acquired:
            raise LockConflict(result.locked_by, result.expires_at)
        return result.to_dict()

    def release_lock(self, identity: Identity, project_id: str) -> dict:
        user_id = self._owned(identity, project_id)
        released = self.pipeline.locks.release(project_id, user_id)
        return {"released": released}

    def lock_status(self, identity: Identity, project_id: str) -> dict:
        user_id = self._owned(identity, project_id)
        return self.pipeline.locks.status(project_id, user_id)

    # -----------------------
    # History
    # -----------------------

    def get_version_history(self, identity: Identity, project_id: str) -> dict:
        self._owned(identity, project_id)
        history = self.pipeline.versions.history(project_id)
        active = next((v["schema_version"] for v in history if v["is_active"]), None)
        return {"project_id": project_id, "active_version": active, "versions": history}

    def get_version(self, identity: Identity, project_id: str, version: str) -> dict:
        self._owned(identity, project_id)
        return self.pipeline.versions.require(project_id, version)

    def compare_versions(self, identity: Identity, project_id: str, from_version: str, to_version: str) -> dict:
        """
        Table and column changes that take ``from_version`` to ``to_version``.
        Type changes are reported as "before -> after".
        """
        self._owned(identity, project_id)
        before = self.pipeline.versions.require(project_id, from_version)
        after = self.pipeline.versions.require(project_id, to_version)
        diff = diff_schemas(
            desired_columns(CRMSchema.model_validate(before["schema_json"])),
            desired_columns(CRMSchema.model_validate(after["schema_json"])),
        )
        return {
            "project_id": project_id,
            "from_version": from_version,
            "to_version": to_version,
            "changes": diff.to_dict(),
            "is_destructive": diff.is_destructive,
        }

    def get_decision_traces(self, identity: Identity, project_id: str) -> dict:
        self._owned(identity, project_id)
        history = self.pipeline.versions.history(project_id)
        return {
            "project_id": project_id,
            "traces": self.pipeline.traces.list(project_id),
            "versions": history,
            "active_version": next((v["schema_version"] for v in history if v["is_active"]), None),
        }

    # -----------------------
    # Provisioning helpers
    # -----------------------

    def plan(self, identity: Identity, project_id: str, version: Optional[str] = None) -> str:
        """Dry-run SQL for a stored version (the active one by default)."""
        self._owned(identity, project_id)
        if version:
            record = self.pipeline.versions.require(project_id, version)
        else:
            record = self.pipeline.versions.active(project_id)
            if record is None:
                raise NotFoundError(f"Project '{project_id}' has no active schema")
        return self.pipeline.provisioner.plan(project_id, record["schema_json"]).to_sql()

    def deprovision(self, identity: Identity, project_id: str, tables: Optional[list] = None) -> dict:
        self._owned(identity, project_id)
        with self.pipeline.locks.hold(project_id, identity.id, self.pipeline.lock_ttl_minutes):
            result = self.pipeline.provisioner.deprovision(project_id, tables)
        return result.to_dict()
