# models.py
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# -------------------------
# Identity
# -------------------------

@dataclass(frozen=True)
class Identity:
    """
    Authenticated caller as resolved by the identity provider.
    """
    id: str
    email: Optional[str] = None


# -------------------------
# Intent
# -------------------------

CREATE = "CREATE"
MODIFY = "MODIFY"
INVALID = "INVALID"
INTENTS = (CREATE, MODIFY, INVALID)


# -------------------------
# Locks
# -------------------------

@dataclass(frozen=True)
class LockState:
    id: str
    project_id: str
    user_id: str
    locked_at: str
    expires_at: str


@dataclass
class LockResult:
    lock_acquired: bool
    locked_by: str
    expires_at: str
    lock_id: Optional[str] = None
    lock_extended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "lock_acquired": self.lock_acquired,
            "locked_by": self.locked_by,
            "expires_at": self.expires_at,
        }
        if self.lock_acquired:
            body["lock_id"] = self.lock_id
            body["lock_extended"] = self.lock_extended
        return body


# -------------------------
# Provisioning / pipeline results
# -------------------------

@dataclass
class ProvisionResult:
    namespace: str
    tables_created: List[str] = field(default_factory=list)
    tables_altered: List[str] = field(default_factory=list)
    tables_dropped: List[str] = field(default_factory=list)
    statements: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineResult:
    """
    Outcome of one generate run (or rollback).
    ``version`` is None for preview runs that were not provisioned.
    """
    intent: str
    schema: Dict[str, Any]
    reasoning: str = ""
    project_id: Optional[str] = None
    version: Optional[str] = None
    provision: Optional[ProvisionResult] = None
    trace_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "schema": self.schema,
            "reasoning": self.reasoning,
            "project_id": self.project_id,
            "version": self.version,
            "provision": self.provision.to_dict() if self.provision else None,
            "trace_id": self.trace_id,
            "warnings": list(self.warnings),
        }
