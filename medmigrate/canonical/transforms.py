"""
Transform Engine

A closed registry of pure string/date/enum functions. These are the only
operations an AI-authored MappingSpec can cause to run against source
values.

Functional Requirements:
- TRF-001: Static allowlist of eleven transform names
- TRF-002: Null input yields the context default, else empty string
- TRF-003: Date normalization to YYYY-MM-DD, lossless passthrough on failure
- TRF-004: E.164-style phone normalization
- TRF-005: Keyed MAC for hashed identifiers
"""

from __future__ import annotations

import hashlib
import hmac
import re
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from medmigrate.core.config import get_settings
from medmigrate.core.errors import TransformError

# -----------------------------------------------------------------------------
# Allowlist
# -----------------------------------------------------------------------------

ALLOWED_TRANSFORMS: frozenset[str] = frozenset(
    {
        "normalizeDate",
        "normalizePhone",
        "normalizeEmail",
        "trim",
        "toUpper",
        "toLower",
        "mapEnum",
        "splitName",
        "concat",
        "defaultValue",
        "hashToken",
    }
)


def is_allowed_transform(name: Any) -> bool:
    """True iff name is exactly one of the allowlisted transform names."""
    return isinstance(name, str) and name in ALLOWED_TRANSFORMS


class TransformContext(BaseModel):
    """Per-field parameters for a transform."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enum_map: dict[str, str] | None = Field(default=None, alias="enumMap")
    default_value: str | None = Field(default=None, alias="defaultValue")
    separator: str | None = Field(default=None)
    concat_fields: list[str] | None = Field(default=None, alias="concatFields")
    name_component: str | None = Field(default=None, alias="nameComponent")


# -----------------------------------------------------------------------------
# Transform Functions
# -----------------------------------------------------------------------------

_SLASH_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$")
_ISO_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def normalize_date(value: str) -> str:
    """Normalize ISO-8601 or MM/DD/YYYY-family input to YYYY-MM-DD."""
    text = value.strip()
    if not text:
        return ""

    if _ISO_PREFIX_RE.match(text):
        candidate = text.replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(candidate).date().isoformat()
        except ValueError:
            try:
                return datetime.strptime(text[:10], "%Y-%m-%d").date().isoformat()
            except ValueError:
                return value

    match = _SLASH_DATE_RE.match(text)
    if match:
        month, day, year = match.groups()
        if len(year) == 2:
            year = f"20{year}"
        try:
            return datetime(int(year), int(month), int(day)).date().isoformat()
        except ValueError:
            return value

    return value


def normalize_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if not digits:
        return ""
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def normalize_email(value: str) -> str:
    return value.strip().lower()


def split_name(value: str, component: str | None) -> str:
    parts = value.split()
    if not parts:
        return ""
    if component == "last":
        return " ".join(parts[1:]) if len(parts) > 1 else ""
    return parts[0]


def map_enum(value: str, enum_map: dict[str, str] | None) -> str:
    if not enum_map:
        return value
    return enum_map.get(value, value)


def hash_token(value: str) -> str:
    """HMAC-SHA256 of value keyed by the configured masking secret, 16 hex chars."""
    secret = get_settings().migration_masking_secret.encode("utf-8")
    return hmac.new(secret, value.encode("utf-8"), hashlib.sha256).hexdigest()[:16]


def _concat(value: str, context: TransformContext) -> str:
    # List input (concatFields values) is joined with the separator in execute_transform
    return value


_TRANSFORMS: dict[str, Callable[[str, TransformContext], str]] = {
    "normalizeDate": lambda v, ctx: normalize_date(v),
    "normalizePhone": lambda v, ctx: normalize_phone(v),
    "normalizeEmail": lambda v, ctx: normalize_email(v),
    "trim": lambda v, ctx: v.strip(),
    "toUpper": lambda v, ctx: v.upper(),
    "toLower": lambda v, ctx: v.lower(),
    "mapEnum": lambda v, ctx: map_enum(v, ctx.enum_map),
    "splitName": lambda v, ctx: split_name(v, ctx.name_component),
    "concat": _concat,
    "defaultValue": lambda v, ctx: v if v != "" else (ctx.default_value or ""),
    "hashToken": lambda v, ctx: hash_token(v),
}


def execute_transform(
    name: str,
    value: Any,
    context: TransformContext | dict[str, Any] | None = None,
) -> str:
    """
    Apply an allowlisted transform to a single source value.

    Raises:
        TransformError: if name is not allowlisted
    """
    if not is_allowed_transform(name):
        raise TransformError(f'Transform "{name}" is not in the allowlist')

    if context is None:
        ctx = TransformContext()
    elif isinstance(context, TransformContext):
        ctx = context
    else:
        ctx = TransformContext.model_validate(context)

    if value is None:
        return ctx.default_value if ctx.default_value is not None else ""

    if isinstance(value, (list, tuple)):
        separator = ctx.separator if ctx.separator is not None else " "
        text = separator.join(str(v) for v in value if v is not None and v != "")
    else:
        text = str(value)

    return _TRANSFORMS[name](text, ctx)
