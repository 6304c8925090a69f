"""
Canonical Validators

Deterministic, per-entity validation of canonical records plus batch
aggregation and a referential-integrity pass over a complete batch.
Issue messages name fields and codes only, never field values.

Functional Requirements:
- VAL-001: Per-record validation with hard-stop errors and advisory warnings
- VAL-002: Batch report with counts by code and by entity
- VAL-003: Duplicate canonicalId detection within a batch
- VAL-004: Referential integrity of foreign keys after the batch is complete
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.schema import CanonicalRecord, EntityType, parse_entity_type

# -----------------------------------------------------------------------------
# Codes and Models
# -----------------------------------------------------------------------------

ISO_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:?\d{2})?)?$"
)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ValidationCode(str, Enum):
    """Validation error codes."""

    UNKNOWN_ENTITY = "V000"
    MISSING_REQUIRED = "V001"
    INVALID_DATE = "V002"
    INVALID_EMAIL = "V003"
    INVALID_PHONE = "V004"
    ORPHANED_REFERENCE = "V005"
    MISSING_PATIENT_LINK = "V006"
    MISSING_PROVIDER = "V007"
    EMPTY_SECTIONS = "V008"
    INVALID_AMOUNT = "V009"
    MISSING_LINE_ITEMS = "V010"
    DUPLICATE_CANONICAL_ID = "V011"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    """A single validation error or warning."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., description="Validation code, e.g. V001")
    name: str = Field(..., description="Code name, e.g. MISSING_REQUIRED")
    entity_type: str = Field(..., alias="entityType")
    canonical_id: str | None = Field(default=None, alias="canonicalId")
    field: str | None = Field(default=None, description="Canonical field name")
    message: str = Field(..., description="Human-readable message without values")
    severity: Severity = Field(default=Severity.ERROR)


class RecordValidation(BaseModel):
    """Result of validating one record."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


class ValidationReport(BaseModel):
    """Aggregate validation results for a batch."""

    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(default=0, alias="totalRecords")
    valid_records: int = Field(default=0, alias="validRecords")
    invalid_records: int = Field(default=0, alias="invalidRecords")
    warning_records: int = Field(default=0, alias="warningRecords")
    errors_by_code: dict[str, int] = Field(default_factory=dict, alias="errorsByCode")
    errors_by_entity: dict[str, int] = Field(default_factory=dict, alias="errorsByEntity")
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def _is_iso_date(value: Any) -> bool:
    return isinstance(value, str) and bool(ISO_DATE_RE.match(value))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == value  # NaN check
    if isinstance(value, str) and value.strip():
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


class _Checker:
    """Collects issues for one record."""

    def __init__(self, entity_type: EntityType, record: CanonicalRecord):
        self.entity_type = entity_type
        self.record = record
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def add(
        self,
        code: ValidationCode,
        field: str | None,
        message: str,
        severity: Severity = Severity.ERROR,
    ) -> None:
        issue = ValidationIssue(
            code=code.value,
            name=code.name,
            entityType=self.entity_type.value,
            canonicalId=self.record.get("canonicalId"),
            field=field,
            message=message,
            severity=severity,
        )
        (self.errors if severity == Severity.ERROR else self.warnings).append(issue)

    def require(self, field: str) -> None:
        if _is_empty(self.record.get(field)):
            self.add(ValidationCode.MISSING_REQUIRED, field, f"{field} is required")

    def require_patient_link(self) -> None:
        if _is_empty(self.record.get("canonicalPatientId")):
            self.add(
                ValidationCode.MISSING_PATIENT_LINK,
                "canonicalPatientId",
                f"{self.entity_type.value} must be linked to a patient",
            )

    def require_provider(self) -> None:
        if _is_empty(self.record.get("providerName")):
            self.add(
                ValidationCode.MISSING_PROVIDER,
                "providerName",
                "providerName is required",
            )

    def check_date(self, field: str, severity: Severity) -> None:
        value = self.record.get(field)
        if not _is_empty(value) and not _is_iso_date(value):
            self.add(
                ValidationCode.INVALID_DATE,
                field,
                f"{field} is not an ISO-8601 date",
                severity,
            )

    def result(self) -> RecordValidation:
        return RecordValidation(
            valid=not self.errors,
            errors=self.errors,
            warnings=self.warnings,
        )


# -----------------------------------------------------------------------------
# Per-Entity Validators
# -----------------------------------------------------------------------------


def _validate_patient(c: _Checker) -> None:
    c.require("firstName")
    c.require("lastName")

    email = c.record.get("email")
    if not _is_empty(email) and not (isinstance(email, str) and EMAIL_RE.match(email)):
        c.add(ValidationCode.INVALID_EMAIL, "email", "email is not well-formed", Severity.WARNING)

    phone = c.record.get("phone")
    if not _is_empty(phone) and len(re.sub(r"\D", "", str(phone))) < 7:
        c.add(ValidationCode.INVALID_PHONE, "phone", "phone has too few digits", Severity.WARNING)

    c.check_date("dateOfBirth", Severity.WARNING)


def _validate_appointment(c: _Checker) -> None:
    c.require_patient_link()
    c.require_provider()
    if _is_empty(c.record.get("startTime")):
        c.require("startTime")
    else:
        c.check_date("startTime", Severity.ERROR)
    c.check_date("endTime", Severity.WARNING)


def _validate_chart(c: _Checker) -> None:
    c.require_patient_link()
    c.require_provider()
    sections = c.record.get("sections")
    if not isinstance(sections, list) or len(sections) == 0:
        c.add(ValidationCode.EMPTY_SECTIONS, "sections", "chart has no sections", Severity.WARNING)


def _validate_encounter(c: _Checker) -> None:
    c.require_patient_link()
    c.require_provider()
    if _is_empty(c.record.get("date")):
        c.require("date")
    else:
        c.check_date("date", Severity.ERROR)


def _validate_consent(c: _Checker) -> None:
    c.require_patient_link()
    c.require("templateName")


def _validate_file_entity(c: _Checker) -> None:
    c.require_patient_link()
    c.require("filename")
    c.require("artifactKey")


def _validate_invoice(c: _Checker) -> None:
    c.require_patient_link()
    total = c.record.get("total")
    if not _is_number(total) or float(total) < 0:
        c.add(ValidationCode.INVALID_AMOUNT, "total", "total must be a non-negative number")

    line_items = c.record.get("lineItems")
    if not isinstance(line_items, list) or len(line_items) == 0:
        c.add(
            ValidationCode.MISSING_LINE_ITEMS,
            "lineItems",
            "invoice has no line items",
            Severity.WARNING,
        )


ENTITY_VALIDATORS: dict[EntityType, Callable[[_Checker], None]] = {
    EntityType.PATIENT: _validate_patient,
    EntityType.APPOINTMENT: _validate_appointment,
    EntityType.CHART: _validate_chart,
    EntityType.ENCOUNTER: _validate_encounter,
    EntityType.CONSENT: _validate_consent,
    EntityType.PHOTO: _validate_file_entity,
    EntityType.DOCUMENT: _validate_file_entity,
    EntityType.INVOICE: _validate_invoice,
}


def validate_record(entity_type: EntityType | str, record: CanonicalRecord) -> RecordValidation:
    """Validate a single canonical record."""
    resolved = entity_type if isinstance(entity_type, EntityType) else parse_entity_type(entity_type)
    if resolved is None:
        issue = ValidationIssue(
            code=ValidationCode.UNKNOWN_ENTITY.value,
            name=ValidationCode.UNKNOWN_ENTITY.name,
            entityType=str(entity_type),
            canonicalId=record.get("canonicalId"),
            field=None,
            message="unknown entity type",
        )
        return RecordValidation(valid=False, errors=[issue])

    checker = _Checker(resolved, record)
    ENTITY_VALIDATORS[resolved](checker)
    return checker.result()


# -----------------------------------------------------------------------------
# Batch and Referential Validation
# -----------------------------------------------------------------------------


def validate_batch(records: Iterable[tuple[str, CanonicalRecord]]) -> ValidationReport:
    """
    Validate a batch of (entity_type, record) pairs.

    A record counts as invalid when it has at least one error, and as a
    warning record when it is valid but carries warnings.
    """
    report = ValidationReport()
    seen_ids: set[tuple[str, str]] = set()

    for entity_type, record in records:
        entity_key = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
        result = validate_record(entity_type, record)
        errors = list(result.errors)

        canonical_id = record.get("canonicalId")
        if canonical_id:
            key = (entity_key, str(canonical_id))
            if key in seen_ids:
                errors.append(
                    ValidationIssue(
                        code=ValidationCode.DUPLICATE_CANONICAL_ID.value,
                        name=ValidationCode.DUPLICATE_CANONICAL_ID.name,
                        entityType=entity_key,
                        canonicalId=str(canonical_id),
                        field="canonicalId",
                        message="canonicalId appears more than once in the batch",
                    )
                )
            seen_ids.add(key)

        report.total_records += 1
        if errors:
            report.invalid_records += 1
        else:
            report.valid_records += 1
            if result.warnings:
                report.warning_records += 1

        for issue in errors:
            report.errors_by_code[issue.code] = report.errors_by_code.get(issue.code, 0) + 1
            report.errors_by_entity[entity_key] = report.errors_by_entity.get(entity_key, 0) + 1
        report.errors.extend(errors)
        report.warnings.extend(result.warnings)

    return report


def validate_referential_integrity(
    records: Iterable[tuple[str, CanonicalRecord]],
) -> list[ValidationIssue]:
    """
    Check foreign keys against the canonical ids present in the batch.

    Must run after the whole batch is known, since any record may be the
    target of any other.
    """
    materialized = [
        (et.value if isinstance(et, EntityType) else str(et), rec) for et, rec in records
    ]
    patient_ids = {
        rec.get("canonicalId") for et, rec in materialized if et == EntityType.PATIENT.value
    }
    appointment_ids = {
        rec.get("canonicalId") for et, rec in materialized if et == EntityType.APPOINTMENT.value
    }

    issues: list[ValidationIssue] = []

    def orphan(entity_type: str, record: CanonicalRecord, field: str, target: str) -> None:
        issues.append(
            ValidationIssue(
                code=ValidationCode.ORPHANED_REFERENCE.value,
                name=ValidationCode.ORPHANED_REFERENCE.name,
                entityType=entity_type,
                canonicalId=record.get("canonicalId"),
                field=field,
                message=f"{field} does not resolve to a {target} in this batch",
            )
        )

    for entity_type, record in materialized:
        patient_ref = record.get("canonicalPatientId")
        if (
            entity_type != EntityType.PATIENT.value
            and not _is_empty(patient_ref)
            and patient_ref not in patient_ids
        ):
            orphan(entity_type, record, "canonicalPatientId", "patient")

        appointment_ref = record.get("canonicalAppointmentId")
        if not _is_empty(appointment_ref) and appointment_ref not in appointment_ids:
            orphan(entity_type, record, "canonicalAppointmentId", "appointment")

    return issues
