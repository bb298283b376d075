# utils.py
import logging
import re
from datetime import datetime, UTC
from string import Template
from typing import Any, Dict, Iterable, Tuple

from vibe_crm.config import PROMPT_TOTAL_CAP, PROMPT_VALUE_CAP

logger = logging.getLogger(__name__)

_SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


class SafeTemplate(Template):
    """
    string.Template variant that uses {var} instead of $var
    and safely ignores missing keys.
    """
    delimiter = "{"
    pattern = r"""
    \{(?:
        (?P<escaped>\{) |        # {{ -> {
        (?P<named>[_a-z][_a-z0-9]*)\} |  # {var}
        (?P<braced>[_a-z][_a-z0-9]*)\} |
        (?P<invalid>)
    )
    """
    flags = 0


def safe_format(
    template: str,
    mapping: Dict[str, Any],
    *,
    max_value_len: int = PROMPT_VALUE_CAP,
    max_prompt_len: int = PROMPT_TOTAL_CAP,
) -> str:
    """
    Safely formats prompts:
    - No eval / attribute access
    - Missing keys become empty strings
    - Values are truncated
    - Prompt length is capped
    """

    clean: Dict[str, str] = {}

    for k, v in mapping.items():
        s = "" if v is None else str(v)
        if len(s) > max_value_len:
            logger.warning(
                "safe_format: value for key '%s' truncated (%d → %d chars)",
                k,
                len(s),
                max_value_len,
            )
            s = s[:max_value_len]
        clean[k] = s

    rendered = SafeTemplate(template).safe_substitute(clean)

    if len(rendered) > max_prompt_len:
        logger.warning(
            "safe_format: prompt truncated (%d → %d chars)",
            len(rendered),
            max_prompt_len,
        )
        rendered = rendered[:max_prompt_len]

    return rendered


# -------------------------
# Semantic versions
# -------------------------

def parse_version(version: str) -> Tuple[int, int, int]:
    m = _SEMVER_RE.match(version or "")
    if not m:
        raise ValueError(f"Invalid semantic version: {version!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def format_version(parts: Tuple[int, int, int]) -> str:
    return "%d.%d.%d" % parts


def bump_version(version: str, part: str) -> str:
    major, minor, patch = parse_version(version)
    if part == "major":
        return format_version((major + 1, 0, 0))
    if part == "minor":
        return format_version((major, minor + 1, 0))
    if part == "patch":
        return format_version((major, minor, patch + 1))
    raise ValueError(f"Unknown version part: {part!r}")


def max_version(versions: Iterable[str]) -> str | None:
    parsed = [parse_version(v) for v in versions]
    if not parsed:
        return None
    return format_version(max(parsed))


def next_free_patch(target: str, taken: Iterable[str]) -> str:
    """
    Increment the patch of ``target`` until the result is not in ``taken``.

      next_free_patch("1.0.0", {"1.0.0", "1.2.0"})           -> "1.0.1"
      next_free_patch("1.0.0", {"1.0.0", "1.0.1", "1.2.0"})  -> "1.0.2"
    """
    taken = set(taken)
    candidate = bump_version(target, "patch")
    while candidate in taken:
        candidate = bump_version(candidate, "patch")
    return candidate


# -------------------------
# Timestamps
# -------------------------

def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime) -> str:
    """
    Fixed-width UTC ISO-8601, so stored timestamps sort chronologically
    as plain strings.
    """
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def start_of_day(dt: datetime) -> datetime:
    dt = dt.astimezone(UTC)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)
