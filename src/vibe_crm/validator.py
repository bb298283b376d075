# validator.py
"""
Schema Validator.

validate(schema) runs every check and aggregates the messages, so a caller
(or the generation loop) sees all violations at once:

- structural: the pydantic CRMSchema model (shapes, enums, bounds, semver)
- reserved words in table and column names
- unique table names / unique column names per table
- foreign-key targets (in-schema table + column, or a whitelisted external table)
- circular foreign-key dependencies
- mandatory audit columns
- index columns and default expressions

No I/O; the same input always yields the same result.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from vibe_crm.config import AUDIT_COLUMNS, EXTERNAL_TABLES
from vibe_crm.db.infra.sql_utils import is_reserved, is_safe_default
from vibe_crm.errors import ValidationFailure
from vibe_crm.structured_schemas import CRMSchema

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    passed: bool
    errors: List[str] = field(default_factory=list)
    schema: Optional[CRMSchema] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.passed:
            return {"passed": True}
        return {"passed": False, "errors": list(self.errors)}


# -------------------------
# Helpers
# -------------------------

def _as_document(schema: Any) -> Dict[str, Any]:
    if isinstance(schema, CRMSchema):
        return schema.to_document()
    if isinstance(schema, dict):
        return schema
    raise TypeError("Schema must be a dict or CRMSchema")


def _tables(doc: Dict[str, Any]) -> List[Dict[str, Any]]:
    tables = doc.get("tables")
    if not isinstance(tables, list):
        return []
    return [t for t in tables if isinstance(t, dict) and isinstance(t.get("name"), str)]


def _columns(table: Dict[str, Any]) -> List[Dict[str, Any]]:
    cols = table.get("columns")
    if not isinstance(cols, list):
        return []
    return [c for c in cols if isinstance(c, dict) and isinstance(c.get("name"), str)]


def _reference(column: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    ref = column.get("references")
    if isinstance(ref, dict) and isinstance(ref.get("table"), str):
        return ref
    return None


def _format_pydantic_errors(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return messages


def dependency_graph(doc: Dict[str, Any]) -> Dict[str, List[str]]:
    """
    table -> in-schema tables it references. Self-references and external
    tables are left out; they never constrain creation order.
    """
    names = {t["name"] for t in _tables(doc)}
    graph: Dict[str, List[str]] = {}
    for table in _tables(doc):
        deps: List[str] = []
        for col in _columns(table):
            ref = _reference(col)
            if ref is None:
                continue
            target = ref["table"]
            if target == table["name"] or target not in names:
                continue
            if target not in deps:
                deps.append(target)
        graph[table["name"]] = deps
    return graph


# -------------------------
# Sub-checks
# -------------------------

def check_reserved_words(doc: Dict[str, Any]) -> List[str]:
    errors = []
    for table in _tables(doc):
        if is_reserved(table["name"]):
            errors.append(f"Table name '{table['name']}' is a PostgreSQL reserved word")
        for col in _columns(table):
            if is_reserved(col["name"]):
                errors.append(
                    f"Column '{table['name']}.{col['name']}' uses a PostgreSQL reserved word '{col['name'].lower()}'"
                )
    return errors


def check_unique_names(doc: Dict[str, Any]) -> List[str]:
    errors = []
    seen_tables = set()
    for table in _tables(doc):
        if table["name"] in seen_tables:
            errors.append(f"Duplicate table name '{table['name']}'")
        seen_tables.add(table["name"])

        seen_cols = set()
        for col in _columns(table):
            if col["name"] in seen_cols:
                errors.append(f"Duplicate column '{col['name']}' in table '{table['name']}'")
            seen_cols.add(col["name"])
    return errors


def check_foreign_keys(doc: Dict[str, Any], external_tables: Iterable[str] = EXTERNAL_TABLES) -> List[str]:
    errors = []
    external = set(external_tables)
    columns_by_table = {
        t["name"]: {c["name"] for c in _columns(t)} for t in _tables(doc)
    }

    for table in _tables(doc):
        for col in _columns(table):
            ref = _reference(col)
            if ref is None:
                continue
            target = ref["table"]
            where = f"{table['name']}.{col['name']}"

            if target in external:
                continue
            if target not in columns_by_table:
                errors.append(f"{where} references non-existent table '{target}'")
                continue

            target_col = ref.get("column")
            # non-string names are reported by the structural check
            if isinstance(target_col, str) and target_col not in columns_by_table[target]:
                errors.append(f"{where} references non-existent column '{target}.{target_col}'")

            if target == table["name"] and col.get("nullable") is not True:
                errors.append(f"{where} is a self-reference and must be nullable")
    return errors


def detect_circular_dependencies(doc: Dict[str, Any]) -> List[str]:
    """
    DFS over the foreign-key graph with a visited set and an in-progress
    stack. Reports the first table closing a back-edge.
    """
    graph = dependency_graph(doc)
    visited: set = set()
    on_stack: set = set()

    def visit(node: str) -> Optional[str]:
        visited.add(node)
        on_stack.add(node)
        for dep in graph.get(node, []):
            if dep in on_stack:
                return dep
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        on_stack.discard(node)
        return None

    for name in graph:
        if name in visited:
            continue
        culprit = visit(name)
        if culprit:
            return [f"Circular dependency detected involving table '{culprit}'"]
    return []


def check_audit_columns(doc: Dict[str, Any]) -> List[str]:
    errors = []
    for table in _tables(doc):
        names = {c["name"] for c in _columns(table)}
        for audit in AUDIT_COLUMNS:
            if audit not in names:
                errors.append(f"{table['name']} missing '{audit}' audit column")
    return errors


def check_indexes(doc: Dict[str, Any]) -> List[str]:
    errors = []
    for table in _tables(doc):
        names = {c["name"] for c in _columns(table)}
        indexes = table.get("indexes") or []
        if not isinstance(indexes, list):
            continue
        for idx in indexes:
            if not isinstance(idx, dict):
                continue
            columns = idx.get("columns")
            if not isinstance(columns, list):
                continue
            for col in columns:
                if isinstance(col, str) and col not in names:
                    errors.append(
                        f"Index '{idx.get('name')}' on {table['name']} references unknown column '{col}'"
                    )
    return errors


def check_defaults(doc: Dict[str, Any]) -> List[str]:
    errors = []
    for table in _tables(doc):
        for col in _columns(table):
            if col.get("default") is None:
                continue
            if not is_safe_default(col["default"]):
                errors.append(
                    f"{table['name']}.{col['name']} has a disallowed default expression {col['default']!r}"
                )
    return errors


SEMANTIC_CHECKS = (
    check_reserved_words,
    check_unique_names,
    check_foreign_keys,
    detect_circular_dependencies,
    check_audit_columns,
    check_indexes,
    check_defaults,
)


# -------------------------
# Public API
# -------------------------

def validate(schema: Any) -> ValidationResult:
    try:
        doc = _as_document(schema)
    except TypeError as e:
        return ValidationResult(passed=False, errors=[str(e)])

    errors: List[str] = []
    parsed: Optional[CRMSchema] = None
    try:
        parsed = CRMSchema.model_validate(doc)
    except ValidationError as e:
        errors.extend(_format_pydantic_errors(e))

    for check in SEMANTIC_CHECKS:
        errors.extend(check(doc))

    if errors:
        logger.info("Schema validation failed with %d error(s)", len(errors))
        return ValidationResult(passed=False, errors=errors)
    return ValidationResult(passed=True, schema=parsed)


def validate_or_raise(schema: Any) -> CRMSchema:
    result = validate(schema)
    if not result.passed:
        raise ValidationFailure(result.errors)
    return result.schema
