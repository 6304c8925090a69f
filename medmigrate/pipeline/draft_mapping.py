"""
Draft-mapping phase: SafeContext -> client chain -> validated MappingSpec,
optionally followed by a dry validation over a small sample. Dry
validation never writes staging data.
"""

from __future__ import annotations

from collections import Counter

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import BaseSourceAdapter, SourceProfile
from medmigrate.agents.mapping_agent import MappingAgent
from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.core.errors import MigrationError
from medmigrate.pipeline.transform import execute_transform
from medmigrate.pipeline.validate import MappingFeedback, build_sampling_packet, execute_validate
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)

DRY_VALIDATION_SAMPLE = 10


class PredictedErrors(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    invalid_records: int = Field(default=0, alias="invalidRecords")
    errors_by_code: dict[str, int] = Field(default_factory=dict, alias="errorsByCode")
    errors_by_entity: dict[str, int] = Field(default_factory=dict, alias="errorsByEntity")


class PredictedReferentialIssues(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int = 0
    by_entity: dict[str, int] = Field(default_factory=dict, alias="byEntity")


class DryValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sample_size: int = Field(default=0, alias="sampleSize")
    predicted_errors: PredictedErrors = Field(default_factory=PredictedErrors, alias="predictedErrors")
    predicted_referential_issues: PredictedReferentialIssues = Field(
        default_factory=PredictedReferentialIssues, alias="predictedReferentialIssues"
    )
    field_presence_stats: dict[str, dict[str, int]] = Field(
        default_factory=dict, alias="fieldPresenceStats"
    )
    passed: bool = False


class DraftMappingResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mapping_spec: MappingSpec = Field(..., alias="mappingSpec")
    version: int
    provider: str
    dry_validation: DryValidationResult | None = Field(default=None, alias="dryValidation")


def run_dry_validation(
    spec: MappingSpec,
    adapter: BaseSourceAdapter,
    artifacts: list[ArtifactRef],
    store: BaseArtifactStore,
    sample_limit: int = DRY_VALIDATION_SAMPLE,
) -> DryValidationResult:
    """Transform and validate the first sample_limit records per entity type."""
    try:
        sample = execute_transform(adapter, artifacts, store, spec, limit_per_entity=sample_limit)
    except (MigrationError, ValueError) as e:
        # Prediction only; the real transform phase reports the failure
        logger.warning("dry_validation_failed", error_type=type(e).__name__)
        return DryValidationResult()

    result = execute_validate(sample.records)
    referential_by_entity = Counter(issue.entity_type for issue in result.referential_errors)

    dry = DryValidationResult(
        sampleSize=len(sample.records),
        predictedErrors=PredictedErrors(
            invalidRecords=result.report.invalid_records,
            errorsByCode=result.report.errors_by_code,
            errorsByEntity=result.report.errors_by_entity,
        ),
        predictedReferentialIssues=PredictedReferentialIssues(
            count=len(result.referential_errors),
            byEntity=dict(referential_by_entity),
        ),
        fieldPresenceStats=build_sampling_packet(sample.records).required_field_presence,
        passed=result.passed,
    )
    logger.info("dry_validation_complete", sample_size=dry.sample_size, passed=dry.passed)
    return dry


def execute_draft_mapping(
    agent: MappingAgent,
    profile: SourceProfile,
    vendor: str,
    existing_services: list[dict[str, str]] | None = None,
    adapter: BaseSourceAdapter | None = None,
    artifacts: list[ArtifactRef] | None = None,
    store: BaseArtifactStore | None = None,
) -> DraftMappingResult:
    draft = agent.draft(profile, vendor, existing_services)

    dry_validation = None
    if adapter is not None and artifacts and store is not None:
        dry_validation = run_dry_validation(draft.spec, adapter, artifacts, store)

    return DraftMappingResult(
        mappingSpec=draft.spec,
        version=draft.spec.version,
        provider=draft.provider,
        dryValidation=dry_validation,
    )


def execute_mapping_correction(
    spec: MappingSpec,
    feedback: MappingFeedback,
    profile: SourceProfile,
    agent: MappingAgent | None = None,
) -> MappingSpec | None:
    """Corrected spec as a new version, or None when AI correction is unavailable."""
    agent = agent or MappingAgent()
    logger.info(
        "mapping_correction_requested",
        attempt=feedback.attempt,
        invalid_records=feedback.invalid_records,
        referential_errors=feedback.referential_error_count,
    )
    return agent.correct(spec, feedback, profile)
