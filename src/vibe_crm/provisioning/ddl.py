# vibe_crm/provisioning/ddl.py
"""
DDL and row-level-security synthesis for a validated CRM schema.

Everything here is pure string assembly. Types come only from TYPE_MAP,
identifiers only through sql_utils.quote_ident (which re-validates them),
defaults only through sql_utils.render_default. Each project lives in its
own Postgres schema namespace, crm_<sanitized project id>.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from vibe_crm.config import EXTERNAL_TABLES, MAX_IDENTIFIER_LEN, TENANT_COLUMN, TENANT_ID_EXPR, TENANT_ROLE
from vibe_crm.db.infra.sql_utils import (
    UnsafeIdentifierError,
    qualified_name,
    quote_ident,
    quote_ident_list,
    render_default,
    sanitize_identifier,
    validate_identifier,
)
from vibe_crm.structured_schemas import ColumnDef, CRMSchema, TableDef
from vibe_crm.validator import dependency_graph

TYPE_MAP: Dict[str, str] = {
    "UUID": "uuid",
    "TEXT": "text",
    "VARCHAR": "varchar",
    "INTEGER": "integer",
    "BIGINT": "bigint",
    "BOOLEAN": "boolean",
    "TIMESTAMP": "timestamp",
    "TIMESTAMPTZ": "timestamptz",
    "DATE": "date",
    "NUMERIC": "numeric",
    "JSONB": "jsonb",
    "TEXT[]": "text[]",
    "INTEGER[]": "integer[]",
    "UUID[]": "uuid[]",
}

POLICY_OPERATIONS = ("SELECT", "INSERT", "UPDATE", "DELETE")
UPDATED_AT_FUNCTION = "update_updated_at"
NAMESPACE_PREFIX = "crm_"

_FUNCTION_CALL_RE = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?\(\)$")


@dataclass(frozen=True)
class Statement:
    sql: str
    table: Optional[str] = None
    kind: str = "ddl"


@dataclass
class ProvisioningPlan:
    namespace: str
    statements: List[Statement] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)

    def add(self, sql: str, table: Optional[str] = None, kind: str = "ddl") -> None:
        self.statements.append(Statement(sql=sql, table=table, kind=kind))

    def extend(self, statements: Iterable[Statement]) -> None:
        self.statements.extend(statements)

    def to_sql(self) -> str:
        """Render the plan as one reviewable script (dry run)."""
        lines = [f"-- namespace: {self.namespace}", "BEGIN;"]
        current = object()
        for stmt in self.statements:
            if stmt.table != current:
                current = stmt.table
                lines.append("")
                lines.append(f"-- {stmt.table}" if stmt.table else "-- namespace setup")
            lines.append(stmt.sql.rstrip().rstrip(";") + ";")
        lines.append("")
        lines.append("COMMIT;")
        return "\n".join(lines) + "\n"


# -------------------------
# Naming
# -------------------------

def namespace_for(project_id: str) -> str:
    """crm_<project id with disallowed characters replaced by underscores>"""
    return sanitize_identifier(NAMESPACE_PREFIX + str(project_id))


def bounded_name(base: str) -> str:
    """
    Keep derived object names within the identifier limit; long names are
    truncated and suffixed with a short hash so they stay unique.
    """
    if len(base) <= MAX_IDENTIFIER_LEN:
        return base
    digest = hashlib.sha1(base.encode("utf-8")).hexdigest()[:8]
    return f"{base[:MAX_IDENTIFIER_LEN - 9]}_{digest}"


def policy_name(table: str, operation: str) -> str:
    return bounded_name(f"{table}_{operation.lower()}_policy")


def trigger_name(table: str) -> str:
    return bounded_name(f"{table}_updated_at")


def _reference_target(namespace: str, ref_table: str) -> str:
    if ref_table in EXTERNAL_TABLES and "." in ref_table:
        schema_name, table_name = ref_table.split(".", 1)
        return qualified_name(schema_name, table_name)
    return qualified_name(namespace, ref_table)


# -------------------------
# Ordering
# -------------------------

def topological_order(schema: CRMSchema) -> List[TableDef]:
    """
    Tables ordered so every referenced table precedes the tables that
    reference it. Raises ValueError on a dependency cycle.
    """
    graph = dependency_graph(schema.to_document())
    by_name = {t.name: t for t in schema.tables}
    remaining = {name: set(deps) for name, deps in graph.items()}
    ordered: List[TableDef] = []

    while remaining:
        ready = [name for name in by_name if name in remaining and not remaining[name]]
        if not ready:
            raise ValueError(
                "Circular dependency detected involving table '%s'" % sorted(remaining)[0]
            )
        for name in ready:
            ordered.append(by_name[name])
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return ordered


# -------------------------
# DDL builder
# -------------------------

class DDLBuilder:
    def __init__(
        self,
        namespace: str,
        *,
        tenant_column: str = TENANT_COLUMN,
        tenant_id_expr: str = TENANT_ID_EXPR,
        tenant_role: str = TENANT_ROLE,
    ):
        validate_identifier(namespace)
        validate_identifier(tenant_column)
        validate_identifier(tenant_role)
        if not _FUNCTION_CALL_RE.match(tenant_id_expr):
            raise UnsafeIdentifierError(f"Tenant id expression {tenant_id_expr!r} is not a plain function call")

        self.namespace = namespace
        self.tenant_column = tenant_column
        self.tenant_id_expr = tenant_id_expr
        self.tenant_role = tenant_role

    def table_ref(self, table: str) -> str:
        return qualified_name(self.namespace, table)

    # ----- namespace -----

    def create_namespace(self) -> str:
        return f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self.namespace)}"

    def drop_namespace(self) -> str:
        return f"DROP SCHEMA IF EXISTS {quote_ident(self.namespace)} CASCADE"

    def updated_at_function(self) -> str:
        fn = qualified_name(self.namespace, UPDATED_AT_FUNCTION)
        return (
            f"CREATE OR REPLACE FUNCTION {fn}() RETURNS trigger AS $$\n"
            "BEGIN\n"
            "    NEW.updated_at = now();\n"
            "    RETURN NEW;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql"
        )

    # ----- columns / tables -----

    def column_definition(self, column: ColumnDef) -> str:
        sql_type = TYPE_MAP.get(column.type)
        if sql_type is None:
            raise ValueError(f"Unsupported column type {column.type!r}")

        parts = [quote_ident(column.name), sql_type]
        if column.primary_key:
            parts.append("PRIMARY KEY")
        elif not column.nullable:
            parts.append("NOT NULL")
        if column.unique and not column.primary_key:
            parts.append("UNIQUE")
        if column.default is not None:
            parts.append(f"DEFAULT {render_default(column.default)}")
        if column.references is not None:
            ref = column.references
            parts.append(
                f"REFERENCES {_reference_target(self.namespace, ref.table)} ({quote_ident(ref.column)})"
                f" ON DELETE {ref.on_delete}"
            )
        return " ".join(parts)

    def create_table(self, table: TableDef) -> str:
        columns = ",\n".join(f"    {self.column_definition(c)}" for c in table.columns)
        return f"CREATE TABLE IF NOT EXISTS {self.table_ref(table.name)} (\n{columns}\n)"

    def drop_table(self, table: str) -> str:
        return f"DROP TABLE IF EXISTS {self.table_ref(table)} CASCADE"

    def add_column(self, table: str, column: ColumnDef) -> str:
        """
        ALTER TABLE ... ADD COLUMN. A NOT NULL column needs a default,
        otherwise existing rows could not satisfy it.
        """
        if not column.nullable and column.default is None and not column.primary_key:
            raise ValueError(
                f"Cannot add non-nullable column '{table}.{column.name}' without a default value"
            )
        return (
            f"ALTER TABLE {self.table_ref(table)} "
            f"ADD COLUMN IF NOT EXISTS {self.column_definition(column)}"
        )

    def drop_column(self, table: str, column: str) -> str:
        return f"ALTER TABLE {self.table_ref(table)} DROP COLUMN IF EXISTS {quote_ident(column)}"

    def alter_column_type(self, table: str, column: ColumnDef) -> str:
        sql_type = TYPE_MAP[column.type]
        col = quote_ident(column.name)
        return (
            f"ALTER TABLE {self.table_ref(table)} "
            f"ALTER COLUMN {col} TYPE {sql_type} USING {col}::{sql_type}"
        )

    # ----- row-level security -----

    def policies(self, table: str) -> List[str]:
        ref = self.table_ref(table)
        predicate = f"{quote_ident(self.tenant_column)} = {self.tenant_id_expr}"
        role = quote_ident(self.tenant_role)

        statements = [f"ALTER TABLE {ref} ENABLE ROW LEVEL SECURITY"]
        for op in POLICY_OPERATIONS:
            name = quote_ident(policy_name(table, op))
            statements.append(f"DROP POLICY IF EXISTS {name} ON {ref}")
            if op == "INSERT":
                clause = f"WITH CHECK ({predicate})"
            elif op == "UPDATE":
                clause = f"USING ({predicate}) WITH CHECK ({predicate})"
            else:
                clause = f"USING ({predicate})"
            statements.append(f"CREATE POLICY {name} ON {ref} FOR {op} TO {role} {clause}")
        return statements

    # ----- indexes / triggers -----

    def indexes(self, table: TableDef) -> List[str]:
        """
        Tenant column, creation time (descending), every column hinted as
        sortable or filterable, then declared indexes. Deduplicated by name.
        """
        ref = self.table_ref(table.name)
        column_names = {c.name for c in table.columns}
        wanted: Dict[str, str] = {}

        def add(name: str, columns: List[str], *, unique: bool = False, descending: bool = False):
            name = bounded_name(name)
            if name in wanted:
                return
            cols = quote_ident_list(columns)
            if descending:
                cols = ", ".join(f"{quote_ident(c)} DESC" for c in columns)
            kind = "UNIQUE INDEX" if unique else "INDEX"
            wanted[name] = f"CREATE {kind} IF NOT EXISTS {quote_ident(name)} ON {ref} ({cols})"

        if self.tenant_column in column_names:
            add(f"idx_{table.name}_{self.tenant_column}", [self.tenant_column])
        if "created_at" in column_names:
            add(f"idx_{table.name}_created_at", ["created_at"], descending=True)

        for col_name, hint in table.ui_hints.columns.items():
            if col_name in column_names and (hint.sortable or hint.filterable):
                add(f"idx_{table.name}_{col_name}", [col_name])

        for idx in table.indexes:
            try:
                validate_identifier(idx.name)
                name = idx.name
            except UnsafeIdentifierError:
                name = f"idx_{table.name}_{'_'.join(idx.columns)}"
            add(name, list(idx.columns), unique=idx.unique)

        return list(wanted.values())

    def updated_at_trigger(self, table: str) -> List[str]:
        ref = self.table_ref(table)
        name = quote_ident(trigger_name(table))
        fn = qualified_name(self.namespace, UPDATED_AT_FUNCTION)
        return [
            f"DROP TRIGGER IF EXISTS {name} ON {ref}",
            f"CREATE TRIGGER {name} BEFORE UPDATE ON {ref} FOR EACH ROW EXECUTE FUNCTION {fn}()",
        ]

    def table_extras(self, table: TableDef) -> List[Statement]:
        """Policies, indexes and the updated_at trigger for one table."""
        stmts = [Statement(sql, table.name, "policy") for sql in self.policies(table.name)]
        stmts += [Statement(sql, table.name, "index") for sql in self.indexes(table)]
        if table.column("updated_at") is not None:
            stmts += [Statement(sql, table.name, "trigger") for sql in self.updated_at_trigger(table.name)]
        return stmts

    # ----- whole plans -----

    def setup_statements(self) -> List[Statement]:
        return [
            Statement(self.create_namespace(), None, "namespace"),
            Statement(self.updated_at_function(), None, "function"),
        ]

    def create_plan(self, schema: CRMSchema) -> ProvisioningPlan:
        plan = ProvisioningPlan(namespace=self.namespace)
        plan.extend(self.setup_statements())
        for table in topological_order(schema):
            plan.add(self.create_table(table), table.name, "table")
            plan.extend(self.table_extras(table))
            plan.tables.append(table.name)
        return plan
