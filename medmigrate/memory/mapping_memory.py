"""
Mapping memory: successful mapping specs per vendor, fed back into future
mapping prompts. 30-day staleness, five entries, newest first.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.core.config import get_settings
from medmigrate.memory.repository import CachePolicy, CacheRepository, FileCacheRepository

logger = structlog.get_logger(__name__)

MAPPING_MEMORY_FILE = "mapping-memory.json"
MAPPING_MEMORY_POLICY = CachePolicy(max_age=timedelta(days=30), max_entries=5)


class CorrectionRecord(BaseModel):
    """One AI correction attempt, by error counts only."""

    model_config = ConfigDict(populate_by_name=True)

    attempt: int
    errors_by_code: dict[str, int] = Field(default_factory=dict, alias="errorsByCode")
    fixed: bool = False


class MappingMemoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    vendor: str
    created_at: str = Field(..., alias="createdAt")
    entity_mappings: list[dict[str, Any]] = Field(default_factory=list, alias="entityMappings")
    correction_history: list[CorrectionRecord] = Field(
        default_factory=list, alias="correctionHistory"
    )


def _strip_spec(spec: MappingSpec) -> list[dict[str, Any]]:
    """Keep the mapping shape; confidence and approval flags are run-specific."""
    return [
        {
            "sourceEntity": em.source_entity,
            "targetEntity": em.target_entity.value,
            "fieldMappings": [
                {
                    "sourceField": fm.source_field,
                    "targetField": fm.target_field,
                    "transform": fm.transform,
                    **({"transformContext": fm.transform_context} if fm.transform_context else {}),
                }
                for fm in em.field_mappings
            ],
            "enumMaps": dict(em.enum_maps),
        }
        for em in spec.entity_mappings
    ]


class MappingMemory:
    """Cross-run memory of successful mappings."""

    def __init__(self, repo: CacheRepository | None = None):
        self.repo = repo or FileCacheRepository(
            get_settings().migration_cache_dir, MAPPING_MEMORY_FILE, MAPPING_MEMORY_POLICY
        )

    def read(self, vendor: str) -> list[MappingMemoryEntry]:
        document = self.repo.read(vendor)
        if document is None:
            return []
        return [MappingMemoryEntry.model_validate(e) for e in document.get("entries", [])]

    def record_success(
        self,
        vendor: str,
        run_id: str,
        spec: MappingSpec,
        correction_history: list[CorrectionRecord] | None = None,
    ) -> MappingMemoryEntry:
        existing = self.repo.read(vendor, include_stale=True) or {}
        entry = MappingMemoryEntry(
            runId=run_id,
            vendor=vendor,
            createdAt=self.repo.clock().isoformat(),
            entityMappings=_strip_spec(spec),
            correctionHistory=correction_history or [],
        )
        entries = [entry.model_dump(by_alias=True)] + list(existing.get("entries", []))
        entries = self.repo.policy.trim(entries)

        self.repo.write(vendor, {"entries": entries})
        logger.info("mapping_memory_written", vendor=vendor, run_id=run_id, entries=len(entries))
        return entry

    def read_for_agent(self, vendor: str) -> str | None:
        """Summarize previous mappings for prompt injection; None when empty."""
        entries = self.read(vendor)
        if not entries:
            return None

        parts = [f'Found {len(entries)} previous successful mapping(s) for "{vendor}":\n']
        for entry in entries:
            parts.append(f"--- Run {entry.run_id} ({entry.created_at}) ---")
            for em in entry.entity_mappings:
                parts.append(f"  {em['sourceEntity']} -> {em['targetEntity']}:")
                for fm in em.get("fieldMappings", []):
                    transform = f" [{fm['transform']}]" if fm.get("transform") else ""
                    parts.append(f"    {fm['sourceField']} -> {fm['targetField']}{transform}")
                for field, enum_map in (em.get("enumMaps") or {}).items():
                    parts.append(f"    enumMap({field}): {json.dumps(enum_map)}")

            if entry.correction_history:
                parts.append(f"  Corrections needed: {len(entry.correction_history)}")
                for c in entry.correction_history:
                    parts.append(
                        f"    Attempt {c.attempt}: {json.dumps(c.errors_by_code)} -> fixed={str(c.fixed).lower()}"
                    )
            parts.append("")

        return "\n".join(parts)
