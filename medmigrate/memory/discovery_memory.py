"""
Discovery memory: what schema discovery got wrong for a vendor, and which
GraphQL conventions recur across vendors.

Per vendor (discovery-memory.json, 90 days): errors deduplicated by message
with a hit counter (max 50, most-hit kept) and schema quirks (max 20).
Shared (_shared/discovery-patterns.json, 180 days): cross-vendor patterns
whose confidence grows with each confirming vendor (max 30, most confident
kept).
"""

from __future__ import annotations

import re
from datetime import timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.core.config import get_settings
from medmigrate.memory.repository import (
    SHARED_KEY,
    CachePolicy,
    CacheRepository,
    FileCacheRepository,
)

logger = structlog.get_logger(__name__)

DISCOVERY_MEMORY_FILE = "discovery-memory.json"
DISCOVERY_PATTERNS_FILE = "discovery-patterns.json"
VENDOR_MEMORY_POLICY = CachePolicy(max_age=timedelta(days=90), max_entries=50)
SHARED_PATTERNS_POLICY = CachePolicy(max_age=timedelta(days=180), max_entries=30)
MAX_QUIRKS = 20
MAX_QUERY_SNIPPET = 200

_CANNOT_QUERY_RE = re.compile(r'Cannot query field "?(\w+)"? on type "?(\w+)"?')
_UNKNOWN_ARGUMENT_RE = re.compile(r'Unknown argument "?(\w+)"? on field "?(\w+)\.(\w+)"?')


class QuirkCategory(str, Enum):
    ARGUMENTS = "arguments"
    TYPE_SHAPE = "type_shape"
    NAMING = "naming"
    PAGINATION = "pagination"
    OTHER = "other"


class PatternCategory(str, Enum):
    PAGINATION = "pagination"
    DATE_FILTERING = "date_filtering"
    NESTING = "nesting"
    NAMING = "naming"
    OTHER = "other"


class CapturedDiscoveryError(BaseModel):
    """A GraphQL error seen during one discovery run, before persistence."""

    model_config = ConfigDict(populate_by_name=True)

    error_message: str = Field(..., alias="errorMessage")
    query: str = ""
    type_name: str | None = Field(default=None, alias="typeName")
    field_name: str | None = Field(default=None, alias="fieldName")


class DiscoveryErrorEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error_message: str = Field(..., alias="errorMessage")
    correction: str | None = None
    type_name: str | None = Field(default=None, alias="typeName")
    field_name: str | None = Field(default=None, alias="fieldName")
    query_snippet: str | None = Field(default=None, alias="querySnippet")
    hit_count: int = Field(default=1, alias="hitCount")
    first_seen: str = Field(..., alias="firstSeen")
    last_seen: str = Field(..., alias="lastSeen")


class SchemaQuirk(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note: str
    category: QuirkCategory = QuirkCategory.OTHER
    entity_types: list[str] = Field(default_factory=list, alias="entityTypes")
    added_at: str = Field(default="", alias="addedAt")


class CrossVendorPattern(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pattern: str
    category: PatternCategory
    confirmed_by_vendors: list[str] = Field(default_factory=list, alias="confirmedByVendors")
    confidence: float = 0.5
    added_at: str = Field(..., alias="addedAt")
    last_confirmed: str = Field(..., alias="lastConfirmed")


class VendorDiscoveryMemory(BaseModel):
    errors: list[DiscoveryErrorEntry] = Field(default_factory=list)
    quirks: list[SchemaQuirk] = Field(default_factory=list)


def parse_graphql_error(message: str) -> tuple[str | None, str | None]:
    """
    Extract (type_name, field_name) from common GraphQL error phrasings.

    "Cannot query field X on type Y" gives (Y, X); "Unknown argument X on
    field Y.Z" gives (Y, X). Anything else gives (None, None).
    """
    match = _CANNOT_QUERY_RE.search(message)
    if match:
        return match.group(2), match.group(1)
    match = _UNKNOWN_ARGUMENT_RE.search(message)
    if match:
        return match.group(2), match.group(1)
    return None, None


# Heuristics over verified query text
_PATTERN_DETECTORS: tuple[tuple[str, PatternCategory, Any], ...] = (
    (
        "Relay cursor pagination: pageInfo { hasNextPage, endCursor } with 'after' argument",
        PatternCategory.PAGINATION,
        lambda q: re.search(r"pageInfo\s*\{", q) and "hasNextPage" in q,
    ),
    (
        "Limit/offset pagination: limit and offset arguments",
        PatternCategory.PAGINATION,
        lambda q: re.search(r"\blimit\b", q, re.I) and re.search(r"\boffset\b", q, re.I),
    ),
    (
        "Date range filters commonly use 'from'/'to' arguments",
        PatternCategory.DATE_FILTERING,
        lambda q: re.search(r"\bfrom\s*:", q) and re.search(r"\bto\s*:", q),
    ),
    (
        "Connection types use edges { node { ... } } pattern",
        PatternCategory.NESTING,
        lambda q: re.search(r"edges\s*\{", q) and re.search(r"node\s*\{", q),
    ),
)


class DiscoveryMemory:
    """Per-vendor error/quirk memory plus shared cross-vendor patterns."""

    def __init__(
        self,
        vendor_repo: CacheRepository | None = None,
        shared_repo: CacheRepository | None = None,
    ):
        base_dir = get_settings().migration_cache_dir
        self.vendor_repo = vendor_repo or FileCacheRepository(
            base_dir, DISCOVERY_MEMORY_FILE, VENDOR_MEMORY_POLICY
        )
        self.shared_repo = shared_repo or FileCacheRepository(
            base_dir, DISCOVERY_PATTERNS_FILE, SHARED_PATTERNS_POLICY
        )

    def _now(self) -> str:
        return self.vendor_repo.clock().isoformat()

    # -------------------------------------------------------------------------
    # Per-vendor memory
    # -------------------------------------------------------------------------

    def read_vendor(self, vendor: str) -> VendorDiscoveryMemory | None:
        document = self.vendor_repo.read(vendor)
        if document is None:
            return None
        return VendorDiscoveryMemory.model_validate(document)

    def _load_vendor(self, vendor: str) -> VendorDiscoveryMemory:
        document = self.vendor_repo.read(vendor, include_stale=True)
        return VendorDiscoveryMemory.model_validate(document or {})

    def _save_vendor(self, vendor: str, memory: VendorDiscoveryMemory) -> None:
        self.vendor_repo.write(vendor, memory.model_dump(by_alias=True, mode="json"))

    def add_errors(
        self,
        vendor: str,
        errors: list[CapturedDiscoveryError],
        corrections: dict[str, str] | None = None,
    ) -> VendorDiscoveryMemory:
        """Upsert captured errors, deduplicated by message."""
        memory = self._load_vendor(vendor)
        corrections = corrections or {}
        now = self._now()

        by_message = {e.error_message: e for e in memory.errors}
        for error in errors:
            correction = corrections.get(error.error_message)
            entry = by_message.get(error.error_message)
            if entry is not None:
                entry.hit_count += 1
                entry.last_seen = now
                if correction:
                    entry.correction = correction
                continue

            entry = DiscoveryErrorEntry(
                errorMessage=error.error_message,
                correction=correction,
                typeName=error.type_name,
                fieldName=error.field_name,
                querySnippet=error.query[:MAX_QUERY_SNIPPET] if error.query else None,
                hitCount=1,
                firstSeen=now,
                lastSeen=now,
            )
            memory.errors.append(entry)
            by_message[error.error_message] = entry

        memory.errors.sort(key=lambda e: (e.hit_count, e.last_seen), reverse=True)
        memory.errors = self.vendor_repo.policy.trim(memory.errors)

        self._save_vendor(vendor, memory)
        logger.info("discovery_errors_recorded", vendor=vendor, captured=len(errors), stored=len(memory.errors))
        return memory

    def add_error(
        self,
        vendor: str,
        error: CapturedDiscoveryError,
        correction: str | None = None,
    ) -> VendorDiscoveryMemory:
        corrections = {error.error_message: correction} if correction else None
        return self.add_errors(vendor, [error], corrections)

    def add_quirk(
        self,
        vendor: str,
        note: str,
        category: QuirkCategory = QuirkCategory.OTHER,
        entity_types: list[str] | None = None,
    ) -> VendorDiscoveryMemory:
        memory = self._load_vendor(vendor)
        if any(q.note == note for q in memory.quirks):
            return memory

        memory.quirks.append(
            SchemaQuirk(
                note=note,
                category=category,
                entityTypes=entity_types or [],
                addedAt=self._now(),
            )
        )
        memory.quirks = memory.quirks[-MAX_QUIRKS:]
        self._save_vendor(vendor, memory)
        return memory

    # -------------------------------------------------------------------------
    # Cross-vendor patterns
    # -------------------------------------------------------------------------

    def read_patterns(self) -> list[CrossVendorPattern]:
        document = self.shared_repo.read(SHARED_KEY)
        if document is None:
            return []
        return [CrossVendorPattern.model_validate(p) for p in document.get("patterns", [])]

    def add_pattern(self, vendor: str, pattern: str, category: PatternCategory) -> CrossVendorPattern:
        document = self.shared_repo.read(SHARED_KEY, include_stale=True) or {}
        patterns = [CrossVendorPattern.model_validate(p) for p in document.get("patterns", [])]
        now = self.shared_repo.clock().isoformat()

        existing = next((p for p in patterns if p.pattern == pattern), None)
        if existing is not None:
            if vendor not in existing.confirmed_by_vendors:
                existing.confirmed_by_vendors.append(vendor)
            existing.confidence = min(1.0, 0.5 + len(existing.confirmed_by_vendors) * 0.15)
            existing.last_confirmed = now
            result = existing
        else:
            result = CrossVendorPattern(
                pattern=pattern,
                category=category,
                confirmedByVendors=[vendor],
                confidence=0.5,
                addedAt=now,
                lastConfirmed=now,
            )
            patterns.append(result)

        patterns.sort(key=lambda p: p.confidence, reverse=True)
        patterns = self.shared_repo.policy.trim(patterns)

        self.shared_repo.write(
            SHARED_KEY, {"patterns": [p.model_dump(by_alias=True, mode="json") for p in patterns]}
        )
        return result

    def extract_cross_vendor_patterns(self, vendor: str, queries: dict[str, str]) -> list[str]:
        """Record conventions seen in a vendor's verified queries."""
        found = []
        for pattern, category, detect in _PATTERN_DETECTORS:
            if any(detect(q) for q in queries.values()):
                self.add_pattern(vendor, pattern, category)
                found.append(pattern)
        if found:
            logger.info("cross_vendor_patterns_extracted", vendor=vendor, count=len(found))
        return found

    # -------------------------------------------------------------------------
    # Prompt output
    # -------------------------------------------------------------------------

    def read_for_agent(self, vendor: str) -> str | None:
        memory = self.read_vendor(vendor)
        patterns = self.read_patterns()

        has_vendor_data = memory is not None and bool(memory.errors or memory.quirks)
        if not has_vendor_data and not patterns:
            return None

        parts: list[str] = []
        if has_vendor_data:
            parts.append(f'## Known Issues for "{vendor}" (from previous discovery runs)\n')

            if memory.errors:
                parts.append("### Field/Type Errors (avoid repeating these):")
                for err in sorted(memory.errors, key=lambda e: e.hit_count, reverse=True):
                    correction = f' -> Use "{err.correction}" instead' if err.correction else ""
                    type_part = f"{err.type_name}." if err.type_name else ""
                    field_part = err.field_name or err.error_message
                    parts.append(
                        f"- {type_part}{field_part} does NOT exist{correction} (seen {err.hit_count}x)"
                    )
                parts.append("")

            if memory.quirks:
                parts.append("### Schema Quirks:")
                for quirk in memory.quirks:
                    parts.append(f"- [{quirk.category.value}] {quirk.note}")
                parts.append("")

        if patterns:
            parts.append("## Common GraphQL Patterns (cross-vendor):\n")
            for p in sorted(patterns, key=lambda p: p.confidence, reverse=True):
                parts.append(f"- [{p.category.value}] {p.pattern}")
            parts.append("")

        return "\n".join(parts)
