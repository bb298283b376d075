# vibe_crm/provisioning/schema_diff.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from vibe_crm.structured_schemas import CRMSchema

# information_schema.columns.udt_name -> ColumnDef.type
UDT_TYPES = {
    "uuid": "UUID",
    "text": "TEXT",
    "varchar": "VARCHAR",
    "int4": "INTEGER",
    "int8": "BIGINT",
    "bool": "BOOLEAN",
    "timestamp": "TIMESTAMP",
    "timestamptz": "TIMESTAMPTZ",
    "date": "DATE",
    "numeric": "NUMERIC",
    "jsonb": "JSONB",
    "_text": "TEXT[]",
    "_int4": "INTEGER[]",
    "_uuid": "UUID[]",
}


# -------------------------
# Live schema introspection
# -------------------------
def get_live_schema(cursor, namespace: str) -> Dict[str, Dict[str, str]]:
    """
    Returns { table_name: { column_name: type, ... } } for every base table
    in ``namespace``, with types expressed in the CRM type vocabulary.
    """
    cursor.execute(
        """
        SELECT c.table_name, c.column_name, c.udt_name
        FROM information_schema.columns c
        JOIN information_schema.tables t
          ON t.table_schema = c.table_schema AND t.table_name = c.table_name
        WHERE c.table_schema = %s AND t.table_type = 'BASE TABLE'
        ORDER BY c.table_name, c.ordinal_position
        """,
        (namespace,),
    )
    schema: Dict[str, Dict[str, str]] = {}
    for table, column, udt in cursor.fetchall():
        schema.setdefault(table, {})[column] = UDT_TYPES.get(udt, str(udt).upper())
    return schema


def desired_columns(schema: CRMSchema) -> Dict[str, Dict[str, str]]:
    return {t.name: {c.name: c.type for c in t.columns} for t in schema.tables}


# -------------------------
# Diff
# -------------------------
@dataclass
class SchemaDiff:
    create_tables: List[str] = field(default_factory=list)
    drop_tables: List[str] = field(default_factory=list)
    add_columns: Dict[str, List[str]] = field(default_factory=dict)
    drop_columns: Dict[str, List[str]] = field(default_factory=dict)
    type_changes: Dict[str, List[Tuple[str, str, str]]] = field(default_factory=dict)
    table_renames: List[Dict[str, Any]] = field(default_factory=list)
    column_renames: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (
            self.create_tables
            or self.drop_tables
            or self.add_columns
            or self.drop_columns
            or self.type_changes
        )

    @property
    def is_destructive(self) -> bool:
        return bool(self.drop_tables or self.drop_columns or self.type_changes)

    def destructive_changes(self) -> List[str]:
        changes = [f"Drop table '{t}'" for t in self.drop_tables]
        for table, cols in self.drop_columns.items():
            changes.extend(f"Drop column '{table}.{c}'" for c in cols)
        for table, changed in self.type_changes.items():
            changes.extend(
                f"Change type of '{table}.{c}' from {old} to {new}" for c, old, new in changed
            )
        for cand in self.table_renames:
            changes.append(
                f"Note: '{cand['from']}' -> '{cand['to']}' looks like a rename "
                f"(confidence {cand['confidence']}); renames are applied as drop + create"
            )
        return changes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "create_tables": list(self.create_tables),
            "drop_tables": list(self.drop_tables),
            "add_columns": {t: list(c) for t, c in self.add_columns.items()},
            "drop_columns": {t: list(c) for t, c in self.drop_columns.items()},
            "type_changes": {
                t: [{"column": c, "from": old, "to": new} for c, old, new in changes]
                for t, changes in self.type_changes.items()
            },
            "table_renames": list(self.table_renames),
            "column_renames": {t: list(c) for t, c in self.column_renames.items()},
        }


def diff_schemas(live: Dict[str, Dict[str, str]], desired: Dict[str, Dict[str, str]]) -> SchemaDiff:
    """
    Compare the live namespace with the desired column map. Column order is
    preserved from ``desired`` so additions follow the declared layout.
    """
    diff = SchemaDiff()
    diff.create_tables = [t for t in desired if t not in live]
    diff.drop_tables = sorted(t for t in live if t not in desired)

    for table, columns in desired.items():
        if table not in live:
            continue
        existing = live[table]
        added = [c for c in columns if c not in existing]
        removed = sorted(c for c in existing if c not in columns)
        changed = [
            (c, existing[c], t)
            for c, t in columns.items()
            if c in existing and existing[c] != t
        ]
        if added:
            diff.add_columns[table] = added
        if removed:
            diff.drop_columns[table] = removed
        if changed:
            diff.type_changes[table] = changed

        renames = detect_column_renames(existing, columns)
        if renames:
            diff.column_renames[table] = renames

    diff.table_renames = detect_table_renames(live, desired)
    return diff


# -------------------------
# Rename-detection heuristics
# -------------------------
def detect_table_renames(
    live: Dict[str, Dict[str, str]],
    desired: Dict[str, Dict[str, str]],
    threshold: float = 0.6,
) -> List[Dict[str, Any]]:
    """
    Heuristic detection of table renames between the live and desired schema.

    - Compute Jaccard similarity over the set of column names between each
      removed/added pair. If similarity >= threshold, propose the pair as a
      rename candidate with a 'confidence' equal to the Jaccard score.

    Returns:
        List of dicts: { "from": old_table, "to": new_table, "confidence": 0.72, "common_columns": [...] }
    """
    old_tables = sorted(set(live) - set(desired))
    new_tables = sorted(set(desired) - set(live))
    candidates: List[Dict[str, Any]] = []

    for old in old_tables:
        old_cols = set(live[old])
        if not old_cols:
            continue
        for new in new_tables:
            new_cols = set(desired[new])
            if not new_cols:
                continue
            inter = old_cols & new_cols
            union = old_cols | new_cols
            jaccard = len(inter) / len(union) if union else 0.0
            if jaccard >= threshold:
                candidates.append({
                    "from": old,
                    "to": new,
                    "confidence": round(jaccard, 3),
                    "common_columns": sorted(inter),
                })

    candidates.sort(key=lambda x: x["confidence"], reverse=True)
    return candidates


def detect_column_renames(
    existing_columns: Dict[str, str],
    desired_columns: Dict[str, str],
    threshold: float = 0.6,
) -> List[Dict[str, Any]]:
    """
    Heuristic detection of column rename candidates within a single table.

    For each removed/added column pair, combine a type match (weight 0.7)
    with a simple name similarity (weight 0.3): charset overlap, boosted
    when one name contains the other.

    Returns:
        List of { "from": old_col, "to": new_col, "confidence": float }
    """
    removed = sorted(set(existing_columns) - set(desired_columns))
    added = sorted(set(desired_columns) - set(existing_columns))
    results: List[Dict[str, Any]] = []

    for old in removed:
        for new in added:
            type_match = 1.0 if existing_columns[old] == desired_columns[new] else 0.0

            old_chars = set(old)
            new_chars = set(new)
            char_overlap = len(old_chars & new_chars) / max(len(old_chars | new_chars), 1)
            substring_boost = 0.9 if (old in new or new in old) else 0.0
            name_score = max(char_overlap, substring_boost)

            confidence = 0.7 * type_match + 0.3 * name_score
            if confidence >= threshold:
                results.append({
                    "from": old,
                    "to": new,
                    "confidence": round(confidence, 3),
                    "type_from": existing_columns[old],
                    "type_to": desired_columns[new],
                })

    results.sort(key=lambda x: x["confidence"], reverse=True)
    return results
