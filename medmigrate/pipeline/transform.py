"""
Transform phase: apply an approved MappingSpec over the full artifact set.

Records stream out of the adapter one at a time; each gets a sha256
checksum of its canonical JSON (sorted keys) so Load can skip unchanged
records.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterator

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import BaseSourceAdapter
from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.canonical.schema import EntityType
from medmigrate.core.metrics import track_records
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)


class TransformedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: EntityType = Field(..., alias="entityType")
    canonical_id: str = Field(..., alias="canonicalId")
    source_record_id: str = Field(..., alias="sourceRecordId")
    record: dict[str, Any]
    checksum: str


class TransformResult(BaseModel):
    records: list[TransformedItem] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)


def compute_checksum(record: dict[str, Any]) -> str:
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def iter_transform(
    adapter: BaseSourceAdapter,
    artifacts: list[ArtifactRef],
    store: BaseArtifactStore,
    spec: MappingSpec,
) -> Iterator[TransformedItem]:
    for transformed in adapter.transform(artifacts, store, spec):
        record = transformed.record
        yield TransformedItem(
            entityType=transformed.entity_type,
            canonicalId=record["canonicalId"],
            sourceRecordId=record["sourceRecordId"],
            record=record,
            checksum=compute_checksum(record),
        )


def execute_transform(
    adapter: BaseSourceAdapter,
    artifacts: list[ArtifactRef],
    store: BaseArtifactStore,
    spec: MappingSpec,
    limit_per_entity: int | None = None,
) -> TransformResult:
    """Collect transformed records, optionally keeping only the first N per entity type."""
    result = TransformResult()

    for item in iter_transform(adapter, artifacts, store, spec):
        entity = item.entity_type.value
        if limit_per_entity is not None and result.counts.get(entity, 0) >= limit_per_entity:
            continue
        result.records.append(item)
        result.counts[entity] = result.counts.get(entity, 0) + 1

    if limit_per_entity is None:
        for entity, count in result.counts.items():
            track_records(entity, count, "transformed")

    logger.info(
        "transform_complete",
        spec_version=spec.version,
        records=len(result.records),
        counts=result.counts,
        sampled=limit_per_entity is not None,
    )
    return result
