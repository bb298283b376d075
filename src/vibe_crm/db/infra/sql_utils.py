# vibe_crm/db/infra/sql_utils.py
"""
SQL identifier helpers: allow-list validation, sanitizing and quoting.

DDL cannot be parameterized, so every identifier that ends up in generated
SQL text goes through validate_identifier() first:
 - validate_identifier(name)     -> raises UnsafeIdentifierError on anything outside ^[a-z][a-z0-9_]*$
 - sanitize_identifier(raw)      -> lower-cases and replaces disallowed characters, then validates
 - quote_ident(name)             -> validated, double-quoted identifier
 - quote_ident_list(iterable)    -> comma-joined quoted identifiers
 - qualified_name(schema, name)  -> "schema"."name"
 - render_default(expr)          -> allow-listed DEFAULT expression or UnsafeDefaultError
"""
from __future__ import annotations

import math
import re
from typing import Iterable

from vibe_crm.config import MAX_IDENTIFIER_LEN

IDENTIFIER_RE = re.compile(r"^[a-z][a-z0-9_]*$")

RESERVED_WORDS = frozenset({
    "user", "order", "table", "column", "index", "constraint", "grant",
    "select", "insert", "update", "delete", "where", "from", "join",
    "group", "having", "limit", "offset", "union", "intersect", "except",
    "alter", "drop", "create", "truncate", "replace",
})

_DEFAULT_KEYWORDS = {
    "gen_random_uuid()": "gen_random_uuid()",
    "now()": "now()",
    "current_timestamp": "CURRENT_TIMESTAMP",
    "current_date": "CURRENT_DATE",
    "true": "true",
    "false": "false",
    "null": "NULL",
}
_NUMERIC_DEFAULT_RE = re.compile(r"^-?\d+(\.\d+)?$")
_STRING_DEFAULT_RE = re.compile(
    r"^'(?:[^']|'')*'(?:::(?:jsonb|text|text\[\]|integer\[\]|uuid\[\]))?$",
    re.IGNORECASE,
)


class UnsafeIdentifierError(ValueError):
    pass


class UnsafeDefaultError(ValueError):
    pass


def is_reserved(name: str) -> bool:
    return name.lower() in RESERVED_WORDS


def validate_identifier(name: str) -> None:
    """
    Strict allow-list check for identifiers interpolated into DDL.
    Raises UnsafeIdentifierError (a ValueError) on invalid input.
    """
    if not isinstance(name, str):
        raise UnsafeIdentifierError("Identifier must be a string")
    if not name:
        raise UnsafeIdentifierError("Identifier must not be empty")
    if len(name) > MAX_IDENTIFIER_LEN:
        raise UnsafeIdentifierError(
            f"Identifier '{name[:20]}...' exceeds {MAX_IDENTIFIER_LEN} characters"
        )
    if not IDENTIFIER_RE.match(name):
        raise UnsafeIdentifierError(f"Identifier {name!r} contains disallowed characters")
    if is_reserved(name):
        raise UnsafeIdentifierError(f"Identifier '{name}' is a PostgreSQL reserved word")


def sanitize_identifier(raw: str) -> str:
    """
    Lower-case ``raw`` and replace every character outside [a-z0-9_] with an
    underscore (e.g. hyphens in project ids). The result is still validated.
    """
    if not isinstance(raw, str):
        raise UnsafeIdentifierError("Identifier must be a string")
    name = re.sub(r"[^a-z0-9_]", "_", raw.strip().lower())
    validate_identifier(name)
    return name


def quote_ident(name: str) -> str:
    """
    Quote a validated identifier.

      quote_ident('contacts') -> '"contacts"'
    """
    validate_identifier(name)
    return '"' + name + '"'


def quote_ident_list(names: Iterable[str]) -> str:
    return ", ".join(quote_ident(n) for n in names)


def qualified_name(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def is_safe_default(expr: str) -> bool:
    try:
        render_default(expr)
    except UnsafeDefaultError:
        return False
    return True


def render_default(expr) -> str:
    """
    Return the SQL text for an allow-listed column DEFAULT.

    Accepted: gen_random_uuid(), now(), CURRENT_TIMESTAMP, CURRENT_DATE,
    true/false/NULL, numeric literals, and single-quoted string literals
    (with optional ::jsonb or array casts). Python bools and numbers are
    rendered directly.
    """
    if isinstance(expr, bool):
        return "true" if expr else "false"
    if isinstance(expr, int):
        return str(expr)
    if isinstance(expr, float):
        if not math.isfinite(expr):
            raise UnsafeDefaultError(f"Unsupported default value {expr!r}")
        return repr(expr)
    if not isinstance(expr, str):
        raise UnsafeDefaultError(f"Unsupported default value {expr!r}")

    text = expr.strip()
    keyword = _DEFAULT_KEYWORDS.get(text.lower())
    if keyword is not None:
        return keyword
    if _NUMERIC_DEFAULT_RE.match(text):
        return text
    if _STRING_DEFAULT_RE.match(text):
        return text
    raise UnsafeDefaultError(f"Default expression {expr!r} is not allowed")
