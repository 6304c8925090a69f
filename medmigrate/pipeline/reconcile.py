"""
Reconcile phase: per-entity source counts against ledger counts, and the
final migration report.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import SourceProfile
from medmigrate.agents.llm_clients import LLMClientChain
from medmigrate.agents.prompts import RECONCILIATION_PROMPT
from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.pipeline.destination import DestinationStore

logger = structlog.get_logger(__name__)

_PLURAL_RE = re.compile(r"s$")


class ReconcileStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class ReconciliationEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(..., alias="entityType")
    source_count: int = Field(default=0, alias="sourceCount")
    staged_count: int = Field(default=0, alias="stagedCount")
    promoted_count: int = Field(default=0, alias="promotedCount")
    failed_count: int = Field(default=0, alias="failedCount")
    match_rate: int = Field(default=0, alias="matchRate", description="staged / source, percent")


class MigrationReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    completed_at: str = Field(..., alias="completedAt")
    reconciliation: list[ReconciliationEntry] = Field(default_factory=list)
    total_source_records: int = Field(default=0, alias="totalSourceRecords")
    total_staged_records: int = Field(default=0, alias="totalStagedRecords")
    total_promoted_records: int = Field(default=0, alias="totalPromotedRecords")
    total_failed_records: int = Field(default=0, alias="totalFailedRecords")
    overall_completeness: int = Field(default=0, alias="overallCompleteness")
    unresolved_exceptions: int = Field(default=0, alias="unresolvedExceptions")
    status: ReconcileStatus
    ai_summary: dict[str, Any] | None = Field(default=None, alias="aiSummary")


def _entry(entity_type: str, source_count: int, counts: dict[str, int]) -> ReconciliationEntry:
    staged = counts.get("staged", 0) + counts.get("promoted", 0)
    return ReconciliationEntry(
        entityType=entity_type,
        sourceCount=source_count,
        stagedCount=staged,
        promotedCount=counts.get("promoted", 0),
        failedCount=counts.get("failed", 0),
        matchRate=round(staged / source_count * 100) if source_count > 0 else 0,
    )


def determine_status(total_source: int, total_promoted: int, total_failed: int) -> ReconcileStatus:
    if total_source > 0 and total_promoted == 0:
        return ReconcileStatus.FAILED
    if total_failed == 0 and total_promoted >= total_source:
        return ReconcileStatus.COMPLETE
    return ReconcileStatus.PARTIAL


def execute_reconcile(
    run_id: str,
    profile: SourceProfile,
    destination: DestinationStore,
    spec: MappingSpec | None = None,
) -> MigrationReport:
    ledger_counts = destination.ledger_counts(run_id)

    # Source entity names are matched to canonical types by stripping a trailing "s"
    source_to_canonical: dict[str, str] = {}
    if spec is not None:
        for mapping in spec.entity_mappings:
            source_to_canonical[_PLURAL_RE.sub("", mapping.source_entity)] = mapping.target_entity.value

    reconciliation: list[ReconciliationEntry] = []
    reconciled: set[str] = set()

    for entity in profile.entities:
        source_type = _PLURAL_RE.sub("", entity.type)
        canonical_type = source_to_canonical.get(source_type, source_type)
        reconciled.add(canonical_type)
        reconciliation.append(_entry(canonical_type, entity.record_count, ledger_counts.get(canonical_type, {})))

    for ledger_type, counts in ledger_counts.items():
        if ledger_type not in reconciled:
            reconciliation.append(_entry(ledger_type, 0, counts))

    total_source = sum(e.source_count for e in reconciliation)
    total_promoted = sum(e.promoted_count for e in reconciliation)
    total_failed = sum(e.failed_count for e in reconciliation)

    report = MigrationReport(
        runId=run_id,
        completedAt=datetime.now(timezone.utc).isoformat(),
        reconciliation=reconciliation,
        totalSourceRecords=total_source,
        totalStagedRecords=sum(e.staged_count for e in reconciliation),
        totalPromotedRecords=total_promoted,
        totalFailedRecords=total_failed,
        overallCompleteness=round(total_promoted / total_source * 100) if total_source > 0 else 0,
        unresolvedExceptions=total_failed,
        status=determine_status(total_source, total_promoted, total_failed),
    )

    logger.info(
        "reconcile_complete",
        run_id=run_id,
        status=report.status.value,
        completeness=report.overall_completeness,
        failed=total_failed,
    )
    return report


def summarize_report(report: MigrationReport, chain: LLMClientChain) -> dict[str, Any] | None:
    """Ask an AI client for a review of the aggregate counts; None without one."""
    aggregates = report.model_dump(by_alias=True, mode="json", exclude={"ai_summary", "run_id"})
    summary = chain.complete(RECONCILIATION_PROMPT, json.dumps(aggregates, indent=2))
    if summary is not None:
        logger.info("reconcile_summary_generated", run_id=report.run_id)
    return summary
