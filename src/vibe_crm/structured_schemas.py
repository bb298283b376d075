# structured_schemas.py
"""
Pydantic models for the CRM schema document and for request payloads.

The models enforce the structural layer of validation (shapes, enums,
identifier pattern, cardinality). Semantic rules that need the whole
document (reserved words, foreign-key targets, cycles, audit columns) live
in vibe_crm.validator.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from vibe_crm.config import (
    LOCK_TTL_MAX,
    LOCK_TTL_MIN,
    LOCK_TTL_MINUTES,
    MAX_COLUMNS,
    MAX_IDENTIFIER_LEN,
    MAX_TABLES,
    PROMPT_MAX_LEN,
    PROMPT_MIN_LEN,
)

Identifier = Annotated[
    str,
    StringConstraints(min_length=1, max_length=MAX_IDENTIFIER_LEN, pattern=r"^[a-z][a-z0-9_]*$"),
]
# Foreign-key targets may be schema-qualified (auth.users)
TableRef = Annotated[
    str,
    StringConstraints(min_length=1, pattern=r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)?$"),
]
SemVer = Annotated[str, StringConstraints(pattern=r"^\d+\.\d+\.\d+$")]

ColumnType = Literal[
    "UUID",
    "TEXT",
    "VARCHAR",
    "INTEGER",
    "BIGINT",
    "BOOLEAN",
    "TIMESTAMP",
    "TIMESTAMPTZ",
    "DATE",
    "NUMERIC",
    "JSONB",
    "TEXT[]",
    "INTEGER[]",
    "UUID[]",
]
OnDelete = Literal["CASCADE", "RESTRICT", "SET NULL", "NO ACTION"]
RelationshipType = Literal["one-to-one", "one-to-many", "many-to-one", "many-to-many"]
DisplayType = Literal["currency", "url", "email", "phone", "textarea", "enum"]


class ReferenceDef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table: TableRef
    column: Identifier
    on_delete: OnDelete = Field("NO ACTION", alias="onDelete")


class ColumnDef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Identifier
    type: ColumnType
    nullable: bool
    default: Optional[Union[bool, int, float, str]] = None
    unique: bool = False
    primary_key: bool = Field(False, alias="primaryKey")
    references: Optional[ReferenceDef] = None


class IndexDef(BaseModel):
    name: Annotated[str, StringConstraints(min_length=1, max_length=MAX_IDENTIFIER_LEN)]
    columns: List[str] = Field(min_length=1)
    unique: bool = False


class ColumnHint(BaseModel):
    display_name: Annotated[str, StringConstraints(min_length=1)]
    filterable: bool = False
    sortable: bool = False
    mobile_priority: Optional[int] = Field(None, ge=1, le=4)
    type: Optional[DisplayType] = None


class UIHints(BaseModel):
    icon: Annotated[str, StringConstraints(min_length=1)]
    label: Annotated[str, StringConstraints(min_length=1)]
    description: Annotated[str, StringConstraints(min_length=1)]
    color: Optional[str] = None
    columns: Dict[str, ColumnHint] = Field(default_factory=dict)


class TableDef(BaseModel):
    name: Identifier
    columns: List[ColumnDef] = Field(min_length=1, max_length=MAX_COLUMNS)
    indexes: List[IndexDef] = Field(default_factory=list)
    ui_hints: UIHints

    def column(self, name: str) -> Optional[ColumnDef]:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class RelationshipDef(BaseModel):
    from_table: Annotated[str, StringConstraints(min_length=1)]
    from_column: Annotated[str, StringConstraints(min_length=1)]
    to_table: Annotated[str, StringConstraints(min_length=1)]
    to_column: Annotated[str, StringConstraints(min_length=1)]
    type: RelationshipType


class CRMSchema(BaseModel):
    version: SemVer
    tables: List[TableDef] = Field(min_length=1, max_length=MAX_TABLES)
    relationships: List[RelationshipDef] = Field(default_factory=list)

    def table(self, name: str) -> Optional[TableDef]:
        for t in self.tables:
            if t.name == name:
                return t
        return None

    def to_document(self) -> Dict[str, Any]:
        """Plain-JSON form with the camelCase keys used in stored documents."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -------------------------
# Request payloads
# -------------------------

class GenerateSchemaRequest(BaseModel):
    prompt: Annotated[str, StringConstraints(min_length=PROMPT_MIN_LEN, max_length=PROMPT_MAX_LEN)]
    project_id: Optional[str] = None


class AcquireLockRequest(BaseModel):
    duration_minutes: int = Field(LOCK_TTL_MINUTES, ge=LOCK_TTL_MIN, le=LOCK_TTL_MAX, strict=True)


class RollbackRequest(BaseModel):
    target_version: SemVer
    reason: Optional[Annotated[str, StringConstraints(max_length=500)]] = None


class CreateProjectRequest(BaseModel):
    name: Annotated[str, StringConstraints(min_length=1, max_length=100)]
    description: Optional[Annotated[str, StringConstraints(max_length=500)]] = None


def derive_relationships(schema: CRMSchema) -> List[RelationshipDef]:
    """
    Build relationship metadata from foreign-key columns.

    A unique FK column is one-to-one, every other FK is many-to-one.
    References to external tables are not described.
    """
    names = {t.name for t in schema.tables}
    rels: List[RelationshipDef] = []
    for table in schema.tables:
        for col in table.columns:
            ref = col.references
            if ref is None or ref.table not in names:
                continue
            rels.append(
                RelationshipDef(
                    from_table=table.name,
                    from_column=col.name,
                    to_table=ref.table,
                    to_column=ref.column,
                    type="one-to-one" if (col.unique or col.primary_key) else "many-to-one",
                )
            )
    return rels


# -------------------------
# Schema registry
# -------------------------

# Registry of reusable schemas (Pydantic BaseModel classes or JSON schema dicts)
SCHEMA_REGISTRY: Dict[str, Any] = {}


def register_schema(name: str, schema: Any) -> None:
    """
    Register a schema by name.
    The schema can be a Pydantic BaseModel class or a JSON schema dict.
    """
    if not name:
        raise ValueError("Schema name must be non-empty")
    SCHEMA_REGISTRY[name] = schema


def get_schema(name: str) -> Any:
    """
    Lookup a schema by name from the registry. Returns None if not found.
    """
    return SCHEMA_REGISTRY.get(name)


def schema_to_json(schema: Any) -> Optional[Dict[str, Any]]:
    """
    Convert a Pydantic model class or JSON schema dict into a JSON schema dict.
    Returns None if conversion fails.
    """
    if schema is None:
        return None
    if isinstance(schema, dict):
        return schema
    if hasattr(schema, "model_json_schema"):
        try:
            return schema.model_json_schema(by_alias=True)
        except Exception:
            return None
    return None


def schema_json_text(name: str) -> str:
    """Pretty JSON schema text for embedding in prompts."""
    resolved = schema_to_json(get_schema(name))
    if resolved is None:
        raise KeyError(f"No JSON schema registered under {name!r}")
    return json.dumps(resolved, indent=2)


register_schema("crm_schema", CRMSchema)
register_schema("generate_request", GenerateSchemaRequest)
register_schema("acquire_lock_request", AcquireLockRequest)
