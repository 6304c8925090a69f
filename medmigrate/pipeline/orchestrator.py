"""
Migration Orchestrator

Coordinates the pipeline phases for a run:

    ingest -> profile -> draft_mapping -> [approve_mapping] ->
    transform -> validate (-> AI correction -> transform ...) ->
    load -> promote -> reconcile

Functional Requirements:
- ORC-001: Every phase reports a PhaseOutcome; no exception escapes a phase
- ORC-002: Human approval gate between drafting and transforming
- ORC-003: Bounded AI correction loop between transform and validate
- ORC-004: Successful runs feed mapping memory with their correction history
- ORC-005: Run lifecycle events, optionally published to Redis
"""

from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import BaseSourceAdapter, SourceProfile
from medmigrate.adapters.generic_csv import create_adapter
from medmigrate.agents.discovery_agent import GraphQLCredentials, SchemaDiscoveryAgent, SeedQuery
from medmigrate.agents.llm_clients import LLMClientChain
from medmigrate.agents.mapping_agent import MappingAgent
from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.core.config import HARD_MAX_CORRECTION_ATTEMPTS, get_settings
from medmigrate.core.errors import MigrationError, PhaseError, RunNotFoundError
from medmigrate.core.logging import clear_run_context, log_error, set_run_context
from medmigrate.core.metrics import (
    track_correction,
    track_phase,
    track_phase_failure,
    track_run_end,
    track_run_start,
)
from medmigrate.memory.mapping_memory import CorrectionRecord, MappingMemory
from medmigrate.memory.schema_cache import CachedQueryPattern
from medmigrate.pipeline.destination import DestinationStore
from medmigrate.pipeline.draft_mapping import (
    DryValidationResult,
    execute_draft_mapping,
    execute_mapping_correction,
)
from medmigrate.pipeline.ingest import UploadedFile, execute_ingest
from medmigrate.pipeline.load import LoadResult, PromoteResult, execute_load, execute_promote
from medmigrate.pipeline.profile import execute_profile
from medmigrate.pipeline.reconcile import (
    MigrationReport,
    ReconcileStatus,
    execute_reconcile,
    summarize_report,
)
from medmigrate.pipeline.transform import TransformedItem, execute_transform
from medmigrate.pipeline.validate import ValidateResult, build_mapping_feedback, execute_validate
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)

RUN_EVENTS_TOPIC = "migration.run"


class MigrationPhase(str, Enum):
    INGEST = "ingest"
    PROFILE = "profile"
    DRAFT_MAPPING = "draft_mapping"
    APPROVE_MAPPING = "approve_mapping"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    LOAD = "load"
    PROMOTE = "promote"
    RECONCILE = "reconcile"


class RunStatus(str, Enum):
    CREATED = "created"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseOutcome(BaseModel):
    """Structured result of one phase execution."""

    model_config = ConfigDict(populate_by_name=True)

    phase: MigrationPhase
    passed: bool
    reason: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = Field(default=0, alias="durationMs")


class RunEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    phase: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    at: str


class MigrationRun(BaseModel):
    """State of one migration run."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    run_id: str = Field(..., alias="runId")
    vendor: str
    status: RunStatus = RunStatus.CREATED
    current_phase: MigrationPhase | None = Field(default=None, alias="currentPhase")
    created_at: str = Field(..., alias="createdAt")

    # Inputs, never serialized
    uploaded_files: list[UploadedFile] = Field(default_factory=list, exclude=True)
    credentials: Any = Field(default=None, exclude=True)
    entity_types: list[str] = Field(default_factory=list, alias="entityTypes")
    seed_queries: list[SeedQuery] = Field(default_factory=list, exclude=True)
    existing_services: list[dict[str, str]] | None = Field(default=None, exclude=True)

    queries: dict[str, CachedQueryPattern] = Field(default_factory=dict)
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    profile: SourceProfile | None = None
    spec_versions: list[MappingSpec] = Field(default_factory=list, alias="specVersions")
    provider: str | None = None
    dry_validation: DryValidationResult | None = Field(default=None, alias="dryValidation")
    approved_version: int | None = Field(default=None, alias="approvedVersion")
    approved_by: str | None = Field(default=None, alias="approvedBy")
    correction_history: list[CorrectionRecord] = Field(default_factory=list, alias="correctionHistory")
    transformed: list[TransformedItem] = Field(default_factory=list, exclude=True)
    validation: ValidateResult | None = None
    load_result: LoadResult | None = Field(default=None, alias="loadResult")
    promote_result: PromoteResult | None = Field(default=None, alias="promoteResult")
    report: MigrationReport | None = None
    outcomes: list[PhaseOutcome] = Field(default_factory=list)
    events: list[RunEvent] = Field(default_factory=list)

    @property
    def current_spec(self) -> MappingSpec | None:
        return self.spec_versions[-1] if self.spec_versions else None

    def summary(self) -> dict[str, Any]:
        """JSON view for the API; drops transformed records and raw inputs."""
        data = self.model_dump(by_alias=True, mode="json", exclude={"spec_versions", "validation"})
        spec = self.current_spec
        data["mappingSpec"] = spec.to_json() if spec else None
        data["specVersionCount"] = len(self.spec_versions)
        if self.validation is not None:
            data["validation"] = {
                "passed": self.validation.passed,
                "report": self.validation.report.model_dump(
                    by_alias=True, mode="json", exclude={"errors", "warnings"}
                ),
                "referentialErrorCount": len(self.validation.referential_errors),
                "samplingPacket": self.validation.sampling_packet.model_dump(by_alias=True),
            }
        return data


PhaseFn = Callable[[MigrationRun], dict[str, Any]]


class MigrationOrchestrator:
    """
    Runs migration phases against injected collaborators.

    Runs live in memory for the lifetime of the orchestrator; the
    destination store holds the durable staging and ledger state.
    """

    def __init__(
        self,
        store: BaseArtifactStore,
        destination: DestinationStore,
        adapter: BaseSourceAdapter | None = None,
        mapping_agent: MappingAgent | None = None,
        mapping_memory: MappingMemory | None = None,
        discovery_agent: SchemaDiscoveryAgent | None = None,
        summary_chain: LLMClientChain | None = None,
        max_correction_attempts: int | None = None,
        detect_duplicates: bool = True,
    ):
        self.store = store
        self.destination = destination
        self.adapter = adapter
        self.mapping_memory = mapping_memory or MappingMemory()
        self.mapping_agent = mapping_agent or MappingAgent(mapping_memory=self.mapping_memory)
        self.discovery_agent = discovery_agent
        self.summary_chain = summary_chain
        self.detect_duplicates = detect_duplicates

        if max_correction_attempts is None:
            max_correction_attempts = get_settings().migration_max_correction_attempts
        self.max_correction_attempts = max(0, min(max_correction_attempts, HARD_MAX_CORRECTION_ATTEMPTS))

        self.runs: dict[str, MigrationRun] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Run registry
    # -------------------------------------------------------------------------

    def create_run(
        self,
        vendor: str,
        uploaded_files: list[UploadedFile] | None = None,
        credentials: Any = None,
        entity_types: list[str] | None = None,
        seed_queries: list[SeedQuery] | None = None,
        queries: dict[str, CachedQueryPattern] | None = None,
        existing_services: list[dict[str, str]] | None = None,
        run_id: str | None = None,
    ) -> MigrationRun:
        run = MigrationRun(
            runId=run_id or uuid.uuid4().hex,
            vendor=vendor,
            createdAt=_now(),
            uploaded_files=uploaded_files or [],
            credentials=credentials,
            entityTypes=entity_types or [],
            seed_queries=seed_queries or [],
            queries=queries or {},
            existing_services=existing_services,
        )
        with self._lock:
            self.runs[run.run_id] = run
        logger.info("run_created", run_id=run.run_id, vendor=vendor)
        return run

    def get_run(self, run_id: str) -> MigrationRun:
        with self._lock:
            run = self.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Migration run {run_id} not found")
        return run

    def _adapter_for(self, run: MigrationRun) -> BaseSourceAdapter:
        return self.adapter or create_adapter(run.vendor)

    # -------------------------------------------------------------------------
    # Phase execution
    # -------------------------------------------------------------------------

    def _event(self, run: MigrationRun, phase: MigrationPhase, action: str, **details: Any) -> None:
        run.events.append(RunEvent(runId=run.run_id, phase=phase.value, action=action, details=details, at=_now()))

    def _run_phase(self, run: MigrationRun, phase: MigrationPhase, fn: PhaseFn) -> PhaseOutcome:
        run.current_phase = phase
        self._event(run, phase, "PHASE_STARTED")
        start_time = time.time()

        try:
            with track_phase(phase.value):
                details = fn(run) or {}
            outcome = PhaseOutcome(phase=phase, passed=True, details=details)
        except PhaseError as e:
            outcome = PhaseOutcome(phase=phase, passed=False, reason=e.reason, details=e.details)
        except MigrationError as e:
            outcome = PhaseOutcome(phase=phase, passed=False, reason=str(e))
        except Exception as e:
            log_error(logger, e, "phase_crashed", run_id=run.run_id, phase=phase.value)
            outcome = PhaseOutcome(
                phase=phase,
                passed=False,
                reason=f"Unexpected {type(e).__name__} during {phase.value}",
            )

        outcome.duration_ms = int((time.time() - start_time) * 1000)
        run.outcomes.append(outcome)

        if outcome.passed:
            self._event(run, phase, "PHASE_COMPLETED", **outcome.details)
            logger.info("phase_completed", phase=phase.value, duration_ms=outcome.duration_ms)
        else:
            track_phase_failure(phase.value)
            self._event(run, phase, "PHASE_FAILED", reason=outcome.reason)
            logger.warning("phase_failed", phase=phase.value, reason=outcome.reason)
        return outcome

    def _fail(self, run: MigrationRun) -> None:
        run.status = RunStatus.FAILED
        logger.warning("run_failed", phase=run.current_phase.value if run.current_phase else None)

    def _phase_ingest(self, run: MigrationRun) -> dict[str, Any]:
        credentials = None
        if run.credentials is not None:
            credentials = GraphQLCredentials.from_stored(run.credentials)

        if credentials is not None and not run.queries and self.discovery_agent is not None:
            discovery = self.discovery_agent.discover_and_build_queries(
                run.vendor, credentials, run.entity_types, run.seed_queries
            )
            run.queries = discovery.queries

        result = execute_ingest(
            run.run_id,
            self.store,
            uploaded_files=run.uploaded_files,
            executor=self.discovery_agent.executor if self.discovery_agent else None,
            credentials=credentials,
            queries=run.queries,
        )
        run.artifacts = result.artifacts
        return {"strategy": result.strategy.value, "entityCounts": result.entity_counts}

    def _phase_profile(self, run: MigrationRun) -> dict[str, Any]:
        result = execute_profile(self._adapter_for(run), run.artifacts, self.store)
        run.profile = result.profile
        return {
            "entities": result.entity_count,
            "totalRecords": result.total_records,
            "phiFields": result.phi_field_count,
        }

    def _phase_draft_mapping(self, run: MigrationRun) -> dict[str, Any]:
        result = execute_draft_mapping(
            self.mapping_agent,
            run.profile,
            run.vendor,
            run.existing_services,
            adapter=self._adapter_for(run),
            artifacts=run.artifacts,
            store=self.store,
        )
        run.spec_versions.append(result.mapping_spec)
        run.provider = result.provider
        run.dry_validation = result.dry_validation
        return {
            "version": result.version,
            "provider": result.provider,
            "lowConfidence": result.mapping_spec.low_confidence_count(),
            "dryValidationPassed": result.dry_validation.passed if result.dry_validation else None,
        }

    def _phase_transform(self, run: MigrationRun) -> dict[str, Any]:
        spec = run.current_spec
        if spec is None or run.approved_version != spec.version:
            raise PhaseError("transform", "Cannot transform without an approved mapping")

        result = execute_transform(self._adapter_for(run), run.artifacts, self.store, spec)
        if not result.records:
            raise PhaseError("transform", "Mapping produced no records", {"specVersion": spec.version})
        run.transformed = result.records
        return {"specVersion": spec.version, "counts": result.counts}

    def _phase_validate(self, run: MigrationRun) -> dict[str, Any]:
        result = execute_validate(run.transformed)
        run.validation = result
        details = {
            "totalRecords": result.report.total_records,
            "invalidRecords": result.report.invalid_records,
            "referentialErrors": len(result.referential_errors),
            "errorsByCode": result.report.errors_by_code,
        }
        if not result.passed:
            raise PhaseError(
                "validate",
                f"Validation failed: {result.report.invalid_records} invalid records, "
                f"{len(result.referential_errors)} referential errors",
                details,
            )
        return details

    def _phase_load(self, run: MigrationRun) -> dict[str, Any]:
        run.load_result = execute_load(run.run_id, run.transformed, self.destination)
        run.transformed = []
        return {"staged": run.load_result.staged, "unchanged": run.load_result.unchanged}

    def _phase_promote(self, run: MigrationRun) -> dict[str, Any]:
        run.promote_result = execute_promote(run.run_id, self.destination, self.detect_duplicates)
        return {
            "promoted": run.promote_result.promoted,
            "linked": run.promote_result.linked,
            "skipped": run.promote_result.skipped,
            "failed": len(run.promote_result.errors),
        }

    def _phase_reconcile(self, run: MigrationRun) -> dict[str, Any]:
        report = execute_reconcile(run.run_id, run.profile, self.destination, run.current_spec)
        if self.summary_chain is not None:
            report.ai_summary = summarize_report(report, self.summary_chain)
        run.report = report
        return {"status": report.status.value, "completeness": report.overall_completeness}

    # -------------------------------------------------------------------------
    # Correction loop
    # -------------------------------------------------------------------------

    def _correct(self, run: MigrationRun, attempt: int) -> bool:
        validation = run.validation
        feedback = build_mapping_feedback(validation, attempt)

        errors_by_code = dict(validation.report.errors_by_code)
        if validation.referential_errors:
            errors_by_code["V005"] = errors_by_code.get("V005", 0) + len(validation.referential_errors)
        run.correction_history.append(CorrectionRecord(attempt=attempt, errorsByCode=errors_by_code))

        corrected = execute_mapping_correction(
            run.current_spec, feedback, run.profile, agent=self.mapping_agent
        )
        if corrected is None:
            track_correction("unavailable")
            self._event(run, MigrationPhase.VALIDATE, "CORRECTION_UNAVAILABLE", attempt=attempt)
            return False

        track_correction("applied")
        run.spec_versions.append(corrected)
        run.approved_version = corrected.version
        run.approved_by = "ai-correction"
        self._event(run, MigrationPhase.VALIDATE, "MAPPING_CORRECTED", attempt=attempt, version=corrected.version)
        return True

    def _transform_and_validate(self, run: MigrationRun) -> bool:
        attempt = 0
        while True:
            if not self._run_phase(run, MigrationPhase.TRANSFORM, self._phase_transform).passed:
                return False

            if self._run_phase(run, MigrationPhase.VALIDATE, self._phase_validate).passed:
                if run.correction_history:
                    run.correction_history[-1].fixed = True
                    track_correction("fixed")
                return True

            if attempt >= self.max_correction_attempts:
                logger.warning("correction_attempts_exhausted", attempts=attempt)
                return False
            attempt += 1
            if not self._correct(run, attempt):
                return False

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def run_to_approval(self, run_id: str) -> list[PhaseOutcome]:
        """Ingest, profile and draft; stop at the approval gate."""
        run = self.get_run(run_id)
        set_run_context(run.run_id, run.vendor)
        track_run_start()
        try:
            for phase, fn in (
                (MigrationPhase.INGEST, self._phase_ingest),
                (MigrationPhase.PROFILE, self._phase_profile),
                (MigrationPhase.DRAFT_MAPPING, self._phase_draft_mapping),
            ):
                if not self._run_phase(run, phase, fn).passed:
                    self._fail(run)
                    break
            else:
                run.status = RunStatus.AWAITING_APPROVAL
        finally:
            track_run_end()
            clear_run_context()
        return run.outcomes

    def approve_mapping(
        self,
        run_id: str,
        approved_by: str,
        spec: MappingSpec | None = None,
    ) -> MigrationRun:
        """
        Human approval gate.

        An edited spec, when given, is stored as the next version and is the
        one approved.
        """
        run = self.get_run(run_id)
        current = run.current_spec
        if current is None:
            raise PhaseError(MigrationPhase.APPROVE_MAPPING.value, "No mapping spec to approve")

        if spec is not None:
            current = spec.with_version(current.version + 1)
            run.spec_versions.append(current)

        run.approved_version = current.version
        run.approved_by = approved_by
        run.status = RunStatus.APPROVED
        run.current_phase = MigrationPhase.APPROVE_MAPPING
        self._event(
            run,
            MigrationPhase.APPROVE_MAPPING,
            "MAPPING_APPROVED",
            approvedBy=approved_by,
            version=current.version,
        )
        logger.info("mapping_approved", run_id=run_id, version=current.version)
        return run

    def run_from_approval(self, run_id: str) -> MigrationReport | None:
        """Transform through reconcile. Returns the report, or None when a phase failed."""
        run = self.get_run(run_id)
        if run.approved_version is None:
            run.outcomes.append(
                PhaseOutcome(
                    phase=MigrationPhase.APPROVE_MAPPING,
                    passed=False,
                    reason="Pipeline paused at approve_mapping; approve the mapping to continue",
                )
            )
            return None

        set_run_context(run.run_id, run.vendor)
        track_run_start()
        try:
            if not self._transform_and_validate(run):
                self._fail(run)
                return None

            for phase, fn in (
                (MigrationPhase.LOAD, self._phase_load),
                (MigrationPhase.PROMOTE, self._phase_promote),
                (MigrationPhase.RECONCILE, self._phase_reconcile),
            ):
                if not self._run_phase(run, phase, fn).passed:
                    self._fail(run)
                    return None

            if run.report.status == ReconcileStatus.FAILED:
                self._fail(run)
            else:
                run.status = RunStatus.COMPLETED
                self._remember(run)
            return run.report
        finally:
            track_run_end()
            clear_run_context()

    def run_full(self, run_id: str) -> MigrationReport | None:
        """All phases with automatic approval."""
        self.run_to_approval(run_id)
        if self.get_run(run_id).status != RunStatus.AWAITING_APPROVAL:
            return None
        self.approve_mapping(run_id, "system-auto-approve")
        return self.run_from_approval(run_id)

    def _remember(self, run: MigrationRun) -> None:
        try:
            self.mapping_memory.record_success(
                run.vendor, run.run_id, run.current_spec, run.correction_history
            )
        except OSError as e:
            logger.warning("mapping_memory_write_failed", error_type=type(e).__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------------------------------------------------------
# Event Publishing
# -----------------------------------------------------------------------------


async def publish_run_events(
    run: MigrationRun,
    redis_url: str | None = None,
) -> None:
    """
    Publish a run's lifecycle events to the event bus.

    Args:
        run: The migration run
        redis_url: Redis connection URL
    """
    if redis_url is None:
        redis_url = get_settings().redis_url or "redis://localhost:6379/0"

    try:
        import redis.asyncio as redis_async

        client = redis_async.from_url(redis_url)
        for event in run.events:
            await client.publish(RUN_EVENTS_TOPIC, event.model_dump_json(by_alias=True))
        await client.aclose()

        logger.info(
            "event_published",
            topic=RUN_EVENTS_TOPIC,
            run_id=run.run_id,
            event_count=len(run.events),
        )
    except Exception as e:
        logger.warning(
            "event_publish_failed",
            topic=RUN_EVENTS_TOPIC,
            error=str(e),
        )


# -----------------------------------------------------------------------------
# CLI Entry Point
# -----------------------------------------------------------------------------


def main() -> None:
    """Command-line interface for running a migration over export files."""
    import argparse
    import asyncio
    import json
    import sys
    from pathlib import Path

    from medmigrate.canonical.mapping_spec import load_mapping_spec
    from medmigrate.core.logging import setup_logging
    from medmigrate.pipeline.destination import InMemoryDestination
    from medmigrate.storage.artifact_store import LocalArtifactStore

    parser = argparse.ArgumentParser(
        description="medmigrate - migrate CSV/JSON exports into the canonical clinical schema"
    )
    parser.add_argument("inputs", nargs="+", help="CSV or JSON export files")
    parser.add_argument("--vendor", required=True, help="Source vendor key")
    parser.add_argument(
        "--provider",
        choices=["auto", "anthropic", "openai", "heuristic"],
        default="auto",
        help="AI provider for mapping drafts (default: auto)",
    )
    parser.add_argument(
        "--spec",
        help="Approved MappingSpec JSON; approves it in place of the drafted spec",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve the drafted spec without review",
    )
    parser.add_argument("-o", "--output", help="Output file path (default: stdout)")
    parser.add_argument("--publish", action="store_true", help="Publish run events to Redis")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs")

    args = parser.parse_args()
    setup_logging(json_output=args.json_logs)

    try:
        approved_spec = load_mapping_spec(args.spec) if args.spec else None
        files = [UploadedFile(key=Path(p).name, data=Path(p).read_bytes()) for p in args.inputs]
    except (OSError, MigrationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    orchestrator = MigrationOrchestrator(
        store=LocalArtifactStore(),
        destination=InMemoryDestination(),
        mapping_agent=MappingAgent(llm_provider=args.provider, mapping_memory=MappingMemory()),
    )
    run = orchestrator.create_run(args.vendor, uploaded_files=files)
    orchestrator.run_to_approval(run.run_id)

    if run.status == RunStatus.AWAITING_APPROVAL and (approved_spec or args.auto_approve):
        orchestrator.approve_mapping(
            run.run_id, "cli" if approved_spec else "system-auto-approve", approved_spec
        )
        orchestrator.run_from_approval(run.run_id)

    if args.publish:
        asyncio.run(publish_run_events(run))

    output_json = json.dumps(run.summary(), indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output_json)
        print(f"Run {run.run_id}: {run.status.value} -> {args.output}")
    else:
        print(output_json)

    if run.status == RunStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
