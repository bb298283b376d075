# vibe_crm/cli_utils.py
"""
CLI message helpers for consistent, compact messages.

Provides:
 - print_user_message(summary, action=None, details=None, verbose=False, quiet=False)
 - print_json(payload)

Pattern:
 - One-line summary always printed (unless --quiet).
 - Optional one-line actionable command (prefixed) shown next.
 - Optional details block printed only when verbose=True.
"""
from __future__ import annotations

import json
from typing import Any, Optional


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def print_user_message(
    summary: str,
    action: Optional[str] = None,
    details: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
) -> None:
    """
    Print a consistent CLI message.

    - summary: short human-facing one-line summary.
    - action: short actionable command or next step (printed on its own).
    - details: multi-line detail printed only with verbose=True.
    """
    if quiet:
        return

    first_line = summary.strip().splitlines()[0] if summary else ""
    print(first_line)

    if action:
        print()
        print("Actionable:")
        for ln in action.strip().splitlines():
            print("  " + ln.rstrip())

    if verbose and details:
        print()
        print("Details:")
        print(_indent(details.strip(), prefix="  "))


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))
