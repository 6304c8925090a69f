"""
Validate phase: deterministic batch and referential validation, the
non-PHI sampling packet, and the MappingFeedback handed to AI correction.

Nothing built here carries record values or identifiers; only codes,
canonical field names and counts.
"""

from __future__ import annotations

from collections import Counter

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.validators import (
    ValidationIssue,
    ValidationReport,
    validate_batch,
    validate_referential_integrity,
)
from medmigrate.core.metrics import track_validation_errors
from medmigrate.pipeline.transform import TransformedItem

logger = structlog.get_logger(__name__)

SAMPLE_SIZE = 100


class SamplingPacket(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(default=0, alias="totalRecords")
    sampled_count: int = Field(default=0, alias="sampledCount")
    entity_distribution: dict[str, int] = Field(default_factory=dict, alias="entityDistribution")
    required_field_presence: dict[str, dict[str, int]] = Field(
        default_factory=dict, alias="requiredFieldPresence"
    )


class ValidateResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report: ValidationReport
    referential_errors: list[ValidationIssue] = Field(default_factory=list, alias="referentialErrors")
    sampling_packet: SamplingPacket = Field(..., alias="samplingPacket")
    passed: bool


class FeedbackDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    entity_type: str = Field(..., alias="entityType")
    field: str | None = None
    count: int


class ReferentialDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(..., alias="entityType")
    field: str | None = None
    count: int


class MappingFeedback(BaseModel):
    """Aggregate validation outcome for AI correction."""

    model_config = ConfigDict(populate_by_name=True)

    attempt: int
    total_records: int = Field(..., alias="totalRecords")
    invalid_records: int = Field(..., alias="invalidRecords")
    referential_error_count: int = Field(..., alias="referentialErrorCount")
    error_details: list[FeedbackDetail] = Field(default_factory=list, alias="errorDetails")
    referential_details: list[ReferentialDetail] = Field(
        default_factory=list, alias="referentialDetails"
    )


def _is_present(value: object) -> bool:
    return value is not None and value != ""


def build_sampling_packet(records: list[TransformedItem]) -> SamplingPacket:
    distribution: dict[str, int] = {}
    presence: dict[str, dict[str, int]] = {}

    for item in records:
        entity = item.entity_type.value
        distribution[entity] = distribution.get(entity, 0) + 1
        fields = presence.setdefault(entity, {})
        for key, value in item.record.items():
            if _is_present(value):
                fields[key] = fields.get(key, 0) + 1

    return SamplingPacket(
        totalRecords=len(records),
        sampledCount=min(len(records), SAMPLE_SIZE),
        entityDistribution=distribution,
        requiredFieldPresence=presence,
    )


def execute_validate(records: list[TransformedItem]) -> ValidateResult:
    pairs = [(item.entity_type, item.record) for item in records]
    report = validate_batch(pairs)
    referential_errors = validate_referential_integrity(pairs)

    passed = report.invalid_records == 0 and not referential_errors
    result = ValidateResult(
        report=report,
        referentialErrors=referential_errors,
        samplingPacket=build_sampling_packet(records),
        passed=passed,
    )

    track_validation_errors(report.errors_by_code)
    logger.info(
        "validate_complete",
        records=report.total_records,
        invalid=report.invalid_records,
        warnings=report.warning_records,
        referential_errors=len(referential_errors),
        errors_by_code=report.errors_by_code,
        passed=passed,
    )
    return result


def build_mapping_feedback(result: ValidateResult, attempt: int) -> MappingFeedback:
    """Group errors by (code, entity, field); most frequent first."""
    error_counts = Counter(
        (issue.code, issue.entity_type, issue.field) for issue in result.report.errors
    )
    referential_counts = Counter(
        (issue.entity_type, issue.field) for issue in result.referential_errors
    )

    return MappingFeedback(
        attempt=attempt,
        totalRecords=result.report.total_records,
        invalidRecords=result.report.invalid_records,
        referentialErrorCount=len(result.referential_errors),
        errorDetails=[
            FeedbackDetail(code=code, entityType=entity, field=field, count=count)
            for (code, entity, field), count in error_counts.most_common()
        ],
        referentialDetails=[
            ReferentialDetail(entityType=entity, field=field, count=count)
            for (entity, field), count in referential_counts.most_common()
        ],
    )
