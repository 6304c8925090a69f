"""
Structural PHI redaction for live API responses.

The discovery agent only ever sees the output of redact_phi(): field names,
nesting, array lengths, __typename and pagination metadata. Every other
scalar is replaced.
"""

from __future__ import annotations

import re
from typing import Any

MAX_DEPTH = 20

SAFE_KEYS = frozenset(
    {
        "hasNextPage",
        "hasPreviousPage",
        "totalCount",
        "totalEntries",
        "total",
        "pageInfo",
        "cursor",
        "startCursor",
        "endCursor",
    }
)

ID_KEY_RE = re.compile(r"^(id|.*Id|.*_id)$", re.IGNORECASE)


def redact_phi(value: Any, depth: int = 0) -> Any:
    """Recursively redact a decoded JSON response tree."""
    if depth > MAX_DEPTH:
        return "[max depth]"

    if value is None or isinstance(value, bool):
        return value

    if isinstance(value, (int, float)):
        return 0

    if isinstance(value, str):
        return f"[string len={len(value)}]"

    if isinstance(value, (list, tuple)):
        return {
            "__redacted_array": True,
            "length": len(value),
            "sample": [redact_phi(item, depth + 1) for item in value[:2]],
        }

    if isinstance(value, dict):
        result: dict[str, Any] = {}
        for key, item in value.items():
            if key == "__typename":
                result[key] = item
            elif key in SAFE_KEYS:
                result[key] = redact_phi(item, depth + 1) if isinstance(item, (dict, list)) else item
            elif ID_KEY_RE.match(key):
                result[key] = "[id]"
            else:
                result[key] = redact_phi(item, depth + 1)
        return result

    return "[unknown]"


def redact_graphql_errors(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Keep only error messages; paths and extensions can carry data."""
    return [{"message": str(e.get("message", ""))} for e in errors]
