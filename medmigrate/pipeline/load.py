"""
Load and promote phases.

Load upserts every transformed record into staging and the ledger by
natural key, so re-running it for a run is a no-op on unchanged records.
Promote walks staged records in dependency order, resolving foreign keys
through an in-memory canonicalId -> destination id map.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.schema import FOREIGN_KEY_TARGETS, PROMOTION_ORDER, EntityType
from medmigrate.core.logging import log_error
from medmigrate.core.metrics import track_records
from medmigrate.pipeline.destination import (
    DestinationStore,
    RecordLedgerEntry,
    StagingRecord,
    UpsertOutcome,
    detect_duplicate,
)
from medmigrate.pipeline.transform import TransformedItem

logger = structlog.get_logger(__name__)

PROMOTE_FAILED = "PROMOTE_FAILED"


class RecordError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    canonical_id: str = Field(..., alias="canonicalId")
    entity_type: str = Field(..., alias="entityType")
    error: str


class LoadResult(BaseModel):
    staged: int = 0
    unchanged: int = 0
    errors: list[RecordError] = Field(default_factory=list)


class PromoteResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    promoted: int = 0
    linked: int = Field(default=0, description="Patients linked to an existing destination patient")
    skipped: int = 0
    errors: list[RecordError] = Field(default_factory=list)


def execute_load(run_id: str, records: list[TransformedItem], destination: DestinationStore) -> LoadResult:
    result = LoadResult()

    for item in records:
        entity = item.entity_type.value
        staging_outcome = destination.upsert_staging(
            StagingRecord(
                runId=run_id,
                entityType=entity,
                canonicalId=item.canonical_id,
                payload=item.record,
                checksum=item.checksum,
            )
        )
        ledger_outcome = destination.upsert_ledger(
            RecordLedgerEntry(
                runId=run_id,
                entityType=entity,
                sourceRecordId=item.source_record_id,
                canonicalId=item.canonical_id,
                checksum=item.checksum,
            )
        )
        if staging_outcome == UpsertOutcome.UNCHANGED and ledger_outcome == UpsertOutcome.UNCHANGED:
            result.unchanged += 1
        else:
            result.staged += 1

    logger.info("load_complete", run_id=run_id, staged=result.staged, unchanged=result.unchanged)
    return result


# -----------------------------------------------------------------------------
# Promote
# -----------------------------------------------------------------------------

Promoter = Callable[[DestinationStore, StagingRecord, dict[str, str]], str]


def _create(destination: DestinationStore, staging: StagingRecord, references: dict[str, str]) -> str:
    return destination.create_entity(staging.entity_type, staging.payload, references)


PROMOTERS: dict[EntityType, Promoter] = {entity_type: _create for entity_type in PROMOTION_ORDER}


def _resolve_references(payload: dict[str, Any], id_map: dict[str, str]) -> tuple[dict[str, str], str | None]:
    """Map foreign keys to destination ids; return the first unresolved field, if any."""
    references = {}
    for field in FOREIGN_KEY_TARGETS:
        ref = payload.get(field)
        if not ref:
            continue
        destination_id = id_map.get(ref)
        if destination_id is None:
            return references, field
        references[field] = destination_id
    return references, None


def execute_promote(
    run_id: str,
    destination: DestinationStore,
    detect_duplicates: bool = True,
) -> PromoteResult:
    result = PromoteResult()
    id_map = destination.promoted_ids(run_id)

    staged = destination.staged_records(run_id)
    by_entity: dict[str, list[StagingRecord]] = {}
    for record in staged:
        by_entity.setdefault(record.entity_type, []).append(record)

    for entity_type in PROMOTION_ORDER:
        for staging in by_entity.get(entity_type.value, []):
            references, unresolved = _resolve_references(staging.payload, id_map)
            if unresolved is not None:
                result.skipped += 1
                logger.info(
                    "promote_skipped_unresolved",
                    run_id=run_id,
                    entity_type=entity_type.value,
                    canonical_id=staging.canonical_id,
                    field=unresolved,
                )
                continue

            try:
                if entity_type == EntityType.PATIENT and detect_duplicates:
                    duplicate = detect_duplicate(destination, staging.payload)
                    if duplicate.is_duplicate:
                        id_map[staging.canonical_id] = duplicate.existing_patient_id
                        destination.mark_promoted(
                            run_id, entity_type.value, staging.canonical_id, duplicate.existing_patient_id
                        )
                        result.linked += 1
                        logger.info(
                            "patient_linked_to_existing",
                            run_id=run_id,
                            canonical_id=staging.canonical_id,
                            match_type=duplicate.match_type.value,
                        )
                        continue

                destination_id = PROMOTERS[entity_type](destination, staging, references)
            except Exception as e:
                # Per-record failure; the ledger keeps it visible for remediation
                destination.mark_failed(run_id, entity_type.value, staging.canonical_id, PROMOTE_FAILED)
                result.errors.append(
                    RecordError(canonicalId=staging.canonical_id, entityType=entity_type.value, error=str(e))
                )
                log_error(
                    logger,
                    e,
                    "promote_failed",
                    run_id=run_id,
                    entity_type=entity_type.value,
                    canonical_id=staging.canonical_id,
                )
                continue

            id_map[staging.canonical_id] = destination_id
            destination.mark_promoted(run_id, entity_type.value, staging.canonical_id, destination_id)
            result.promoted += 1
            track_records(entity_type.value, 1, "promoted")

    logger.info(
        "promote_complete",
        run_id=run_id,
        promoted=result.promoted,
        linked=result.linked,
        skipped=result.skipped,
        failed=len(result.errors),
    )
    return result
