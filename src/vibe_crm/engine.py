# engine.py
from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from vibe_crm.config import LOCK_TTL_MINUTES, TRACE_REJECTED_ATTEMPTS, DAILY_REQUEST_LIMIT
from vibe_crm.db.locks import SchemaLockManager
from vibe_crm.db.projects import ProjectDAO
from vibe_crm.db.traces import QuotaTracker, TraceRecorder
from vibe_crm.db.versions import VersionStore
from vibe_crm.errors import (
    AuthFailure,
    InvalidIntent,
    NotFoundError,
    PipelineError,
    ProvisioningFailure,
    ValidationFailure,
)
from vibe_crm.generator import SchemaGenerator
from vibe_crm.intent import IntentClassifier
from vibe_crm.models import INVALID, MODIFY, PipelineResult
from vibe_crm.provisioning.provisioner import Provisioner
from vibe_crm.structured_schemas import GenerateSchemaRequest, RollbackRequest
from vibe_crm.utils import utc_now
from vibe_crm.validator import validate

logger = logging.getLogger(__name__)

ROLLBACK = "ROLLBACK"
ROLLBACK_PRECEDENT = "User requested rollback to previous schema version"


def request_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


def describe_generation(schema: Dict[str, Any]) -> str:
    names = [t.get("name", "?") for t in schema.get("tables", []) if isinstance(t, dict)]
    return f"Generated {len(names)} table(s): {', '.join(names)}"


# =========================
# SchemaPipeline
# =========================

class SchemaPipeline:
    """
    End-to-end schema flow:

    prompt -> quota -> intent -> (MODIFY) load active schema -> generate
    -> validate -> [lock: recheck active, version, provision, activate, trace] -> result

    Rollback skips generation: stored version -> validate ->
    [lock: version, provision, activate, trace].

    - No HTTP knowledge
    - Each call re-reads state; nothing is cached between calls
    """

    def __init__(
        self,
        *,
        db_path: str,
        classifier: IntentClassifier,
        generator: SchemaGenerator,
        provisioner: Provisioner,
        daily_limit: int = DAILY_REQUEST_LIMIT,
        lock_ttl_minutes: int = LOCK_TTL_MINUTES,
        trace_rejected: bool = TRACE_REJECTED_ATTEMPTS,
        clock: Callable = utc_now,
        on_warning: Optional[Callable[[str], None]] = None,
    ):
        self.classifier = classifier
        self.generator = generator
        self.provisioner = provisioner
        self.lock_ttl_minutes = lock_ttl_minutes
        self.trace_rejected = trace_rejected
        self.on_warning = on_warning

        self.projects = ProjectDAO(db_path=db_path)
        self.versions = VersionStore(db_path=db_path)
        self.traces = TraceRecorder(db_path=db_path, clock=clock)
        self.quota = QuotaTracker(self.traces, limit=daily_limit, clock=clock)
        self.locks = SchemaLockManager(db_path=db_path, clock=clock)

    # -------------------------
    # Internal helpers
    # -------------------------

    def _warn(self, warnings: List[str], message: str) -> None:
        warnings.append(message)
        if self.on_warning:
            self.on_warning(message)
        else:
            logger.warning(message)

    def _trace(self, warnings: List[str], **entry) -> Optional[str]:
        trace_id = self.traces.record_nonblocking(**entry)
        if trace_id is None:
            self._warn(warnings, "Decision trace could not be recorded")
        return trace_id

    def _reject(self, exc: PipelineError, *, user_id: str, project_id: Optional[str], prompt: str):
        if self.trace_rejected:
            self.traces.record_nonblocking(
                user_id=user_id,
                project_id=project_id,
                intent=prompt,
                action=f"Rejected ({exc.kind}): {exc.message}",
                precedent="; ".join(getattr(exc, "errors", [])) or None,
            )
        raise exc

    def _record_version(self, project_id: str, user_id: str, version: str, schema: Dict[str, Any]) -> None:
        try:
            self.versions.add(project_id, user_id, version, schema, activate=True)
        except Exception as e:
            logger.error(
                "Project %s: live tables are at version %s but the version row was not stored",
                project_id,
                version,
            )
            raise ProvisioningFailure(
                f"Schema for project '{project_id}' was applied but version {version} could not be recorded"
            ) from e

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        if not user_id:
            raise AuthFailure()
        return user_id

    # -------------------------
    # Generate
    # -------------------------

    def generate_schema(
        self,
        prompt: str,
        user_id: str,
        project_id: Optional[str] = None,
        *,
        confirm_destructive: bool = False,
        lock_ttl_minutes: Optional[int] = None,
        lock_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        ``lock_id`` lets a caller that already holds the project lock (from
        acquire) run inside it; without it any live lock is a conflict.
        """
        user_id = self._require_user(user_id)
        try:
            request = GenerateSchemaRequest(prompt=prompt, project_id=project_id)
        except ValidationError as e:
            raise ValidationFailure(request_errors(e), message="Invalid request") from e

        if request.project_id:
            self.projects.get_owned(request.project_id, user_id)

        # Quota is checked before any model call is paid for
        self.quota.check(user_id)

        intent = self.classifier.classify(request.prompt)
        if intent == INVALID:
            self._reject(InvalidIntent(), user_id=user_id, project_id=request.project_id, prompt=request.prompt)

        existing: Optional[Dict[str, Any]] = None
        base_version: Optional[str] = None
        if request.project_id:
            active = self.versions.active(request.project_id)
            if active:
                existing = active["schema_json"]
                base_version = active["schema_version"]
            if intent == MODIFY and existing is None:
                raise NotFoundError(f"Project '{request.project_id}' has no active schema to modify")

        try:
            generated = self.generator.generate(
                request.prompt,
                existing if intent == MODIFY else None,
            )
        except PipelineError as e:
            self._reject(e, user_id=user_id, project_id=request.project_id, prompt=request.prompt)

        result = validate(generated.schema)
        if not result.passed:
            self._reject(
                ValidationFailure(result.errors, message="The AI generated an invalid schema"),
                user_id=user_id,
                project_id=request.project_id,
                prompt=request.prompt,
            )

        warnings: List[str] = []
        schema = copy.deepcopy(generated.schema)

        if not request.project_id:
            trace_id = self._trace(
                warnings,
                user_id=user_id,
                intent=request.prompt,
                action=describe_generation(schema),
                precedent=generated.reasoning,
                version=schema.get("version"),
                schema_before=None,
                schema_after=schema,
            )
            return PipelineResult(
                intent=intent,
                schema=schema,
                reasoning=generated.reasoning,
                trace_id=trace_id,
                warnings=warnings,
            )

        with self.locks.hold(request.project_id, user_id, lock_ttl_minutes or self.lock_ttl_minutes, lock_id):
            current = self.versions.active(request.project_id)
            current_label = current["schema_version"] if current else None
            if intent == MODIFY and current_label != base_version:
                raise ValidationFailure(
                    [f"Active schema moved from v{base_version} to v{current_label or 'none'} during generation"],
                    message="Schema changed, retry the request",
                )

            version = self.versions.next_version(request.project_id, intent)
            schema["version"] = version

            provision = self.provisioner.sync(
                request.project_id,
                schema,
                allow_destructive=confirm_destructive,
            )
            self._record_version(request.project_id, user_id, version, schema)

            trace_id = self._trace(
                warnings,
                user_id=user_id,
                project_id=request.project_id,
                intent=request.prompt,
                action=describe_generation(schema),
                precedent=generated.reasoning,
                version=version,
                schema_before=current["schema_json"] if current else None,
                schema_after=schema,
            )

        logger.info("Project %s now at version %s", request.project_id, version)
        return PipelineResult(
            intent=intent,
            schema=schema,
            reasoning=generated.reasoning,
            project_id=request.project_id,
            version=version,
            provision=provision,
            trace_id=trace_id,
            warnings=warnings,
        )

    # -------------------------
    # Rollback
    # -------------------------

    def rollback(
        self,
        project_id: str,
        user_id: str,
        target_version: str,
        reason: Optional[str] = None,
        *,
        confirm_destructive: bool = False,
        lock_ttl_minutes: Optional[int] = None,
        lock_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Re-activate the content of ``target_version`` under a new version
        number (target patch + 1, skipping used numbers), re-provisioning
        the live tables to match it.
        """
        user_id = self._require_user(user_id)
        try:
            request = RollbackRequest(target_version=target_version, reason=reason)
        except ValidationError as e:
            raise ValidationFailure(request_errors(e), message="Invalid request") from e

        self.projects.get_owned(project_id, user_id)
        target = self.versions.require(project_id, request.target_version)
        restored = target["schema_json"]

        result = validate(restored)
        if not result.passed:
            raise ValidationFailure(
                result.errors,
                message=f"Stored version {request.target_version} no longer passes validation",
            )

        warnings: List[str] = []
        with self.locks.hold(project_id, user_id, lock_ttl_minutes or self.lock_ttl_minutes, lock_id):
            current = self.versions.active(project_id)
            new_version = self.versions.rollback_version(project_id, request.target_version)

            provision = self.provisioner.sync(
                project_id,
                restored,
                allow_destructive=confirm_destructive,
            )
            self._record_version(project_id, user_id, new_version, restored)

            current_label = current["schema_version"] if current else "none"
            trace_id = self._trace(
                warnings,
                user_id=user_id,
                project_id=project_id,
                intent=f"Rollback to v{request.target_version}: {request.reason or 'No reason provided'}",
                action=f"Rolled back from v{current_label} to v{new_version}",
                precedent=ROLLBACK_PRECEDENT,
                version=new_version,
                schema_before=current["schema_json"] if current else None,
                schema_after=restored,
            )

        logger.info(
            "Project %s rolled back to %s as version %s",
            project_id,
            request.target_version,
            new_version,
        )
        return PipelineResult(
            intent=ROLLBACK,
            schema=restored,
            reasoning=ROLLBACK_PRECEDENT,
            project_id=project_id,
            version=new_version,
            provision=provision,
            trace_id=trace_id,
            warnings=warnings,
        )
