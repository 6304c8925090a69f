"""
Schema and query-pattern cache for the discovery agent.

Stores introspected GraphQL types (schema-cache.json) and verified queries
(query-patterns.json) per vendor, both with a 7-day staleness window.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.core.config import get_settings
from medmigrate.memory.repository import CachePolicy, CacheRepository, FileCacheRepository

logger = structlog.get_logger(__name__)

SCHEMA_CACHE_FILE = "schema-cache.json"
QUERY_PATTERNS_FILE = "query-patterns.json"
SCHEMA_CACHE_POLICY = CachePolicy(max_age=timedelta(days=7))


class CachedField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str
    kind: str
    is_list: bool = Field(default=False, alias="isList")
    is_non_null: bool = Field(default=False, alias="isNonNull")


class CachedTypeInfo(BaseModel):
    """An introspected GraphQL type."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    kind: str
    fields: list[CachedField] | None = None
    enum_values: list[str] | None = Field(default=None, alias="enumValues")
    possible_types: list[str] | None = Field(default=None, alias="possibleTypes")
    cached_at: str = Field(..., alias="cachedAt")


class CachedQueryPattern(BaseModel):
    """A query built for one entity type."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(..., alias="entityType")
    query: str
    variables: dict[str, Any] | None = None
    verified: bool = False
    cached_at: str = Field(..., alias="cachedAt")


def _dump(models: dict[str, BaseModel]) -> dict[str, Any]:
    return {k: v.model_dump(by_alias=True, exclude_none=True) for k, v in models.items()}


class SchemaCache:
    """Per-vendor cache of discovered types and query patterns."""

    def __init__(
        self,
        schema_repo: CacheRepository | None = None,
        pattern_repo: CacheRepository | None = None,
    ):
        base_dir = get_settings().migration_cache_dir
        self.schema_repo = schema_repo or FileCacheRepository(
            base_dir, SCHEMA_CACHE_FILE, SCHEMA_CACHE_POLICY
        )
        self.pattern_repo = pattern_repo or FileCacheRepository(
            base_dir, QUERY_PATTERNS_FILE, SCHEMA_CACHE_POLICY
        )

    def read_schema(self, vendor: str) -> dict[str, CachedTypeInfo] | None:
        document = self.schema_repo.read(vendor)
        if document is None:
            return None
        return {
            name: CachedTypeInfo.model_validate(info)
            for name, info in document.get("types", {}).items()
        }

    def write_schema(self, vendor: str, types: dict[str, CachedTypeInfo]) -> None:
        self.schema_repo.write(vendor, {"types": _dump(types)})
        logger.info("schema_cache_written", vendor=vendor, types=len(types))

    def read_query_patterns(self, vendor: str) -> dict[str, CachedQueryPattern] | None:
        document = self.pattern_repo.read(vendor)
        if document is None:
            return None
        return {
            key: CachedQueryPattern.model_validate(pattern)
            for key, pattern in document.get("patterns", {}).items()
        }

    def write_query_patterns(self, vendor: str, patterns: dict[str, CachedQueryPattern]) -> None:
        self.pattern_repo.write(vendor, {"patterns": _dump(patterns)})
        logger.info("query_patterns_written", vendor=vendor, patterns=len(patterns))

    def invalidate(self, vendor: str) -> None:
        self.schema_repo.delete(vendor)
        self.pattern_repo.delete(vendor)
        logger.info("schema_cache_invalidated", vendor=vendor)

    def read_for_agent(self, vendor: str) -> str:
        """Summarize both caches as text for the discovery agent."""
        schema_doc = self.schema_repo.read(vendor)
        pattern_doc = self.pattern_repo.read(vendor)
        if schema_doc is None and pattern_doc is None:
            return "No cached schema or query patterns found."

        parts: list[str] = []
        if schema_doc is not None:
            types = self.read_schema(vendor) or {}
            parts.append(f"Schema cache: {len(types)} types cached (updated {schema_doc['updatedAt']})")
            for name, info in types.items():
                field_list = ", ".join(
                    f"{f.name}: {f.type}{'[]' if f.is_list else ''}{'!' if f.is_non_null else ''}"
                    for f in info.fields or []
                )
                parts.append(f"  {info.kind} {name}: {{ {field_list} }}")

        if pattern_doc is not None:
            patterns = self.read_query_patterns(vendor) or {}
            parts.append(
                f"\nQuery patterns: {len(patterns)} cached (updated {pattern_doc['updatedAt']})"
            )
            for key, pattern in patterns.items():
                parts.append(f"  {key} (verified={str(pattern.verified).lower()}): {pattern.query[:200]}...")

        return "\n".join(parts)
