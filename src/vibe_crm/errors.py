# errors.py
"""
Error taxonomy for the schema pipeline.

Every error that crosses the service boundary is a PipelineError carrying a
machine-checkable ``kind`` plus a human-readable message. ``to_dict()`` is
the wire shape used by the service layer and the CLI.
"""
from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class AuthFailure(PipelineError):
    kind = "unauthenticated"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class NotFoundError(PipelineError):
    """Missing resource, or a resource owned by someone else."""
    kind = "not_found"


class QuotaExceeded(PipelineError):
    kind = "quota_exceeded"

    def __init__(self, limit: int, used: int):
        super().__init__(
            f"Daily limit of {limit} AI requests reached. Try again tomorrow."
        )
        self.limit = limit
        self.used = used

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body.update({"limit": self.limit, "used": self.used})
        return body


class InvalidIntent(PipelineError):
    kind = "invalid_intent"

    def __init__(self, message: str = "Prompt does not describe a CRM schema change. Please rephrase."):
        super().__init__(message)


class GenerationFailure(PipelineError):
    kind = "generation_failure"


class ValidationFailure(PipelineError):
    kind = "validation_failure"

    def __init__(self, errors: List[str], message: str = "Schema validation failed"):
        super().__init__(message)
        self.errors = list(errors)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = list(self.errors)
        return body


class LockConflict(PipelineError):
    kind = "lock_conflict"

    def __init__(self, locked_by: str, expires_at: str, message: Optional[str] = None):
        super().__init__(message or f"Schema is locked by another user until {expires_at}")
        self.locked_by = locked_by
        self.expires_at = expires_at

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body.update({
            "lock_acquired": False,
            "locked_by": self.locked_by,
            "expires_at": self.expires_at,
        })
        return body


class ProvisioningFailure(PipelineError):
    kind = "provisioning_failure"

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["table"] = self.table
        return body
