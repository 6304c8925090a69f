"""
Canonical Clinical Schema

Fixed entity definitions for the migration target. Canonical records are
plain JSON objects with camelCase keys; this module owns the field tables
and the machine-readable schema description that is the only schema
information ever sent to an AI backend.

Functional Requirements:
- CAN-001: Closed set of eight canonical entity types
- CAN-002: Per-entity field tables with type and required flag
- CAN-003: Relationship table for foreign keys by canonicalId
- CAN-004: Deterministic, content-derived canonical identifiers
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

CANONICAL_SCHEMA_VERSION = 1

# A canonical record is a JSON object keyed by canonical field names
CanonicalRecord = dict[str, Any]


class EntityType(str, Enum):
    """Canonical entity types."""

    PATIENT = "patient"
    APPOINTMENT = "appointment"
    CHART = "chart"
    ENCOUNTER = "encounter"
    CONSENT = "consent"
    PHOTO = "photo"
    DOCUMENT = "document"
    INVOICE = "invoice"


ENTITY_TYPE_VALUES = frozenset(e.value for e in EntityType)

# Dependency order used by promotion: parents before children
PROMOTION_ORDER: tuple[EntityType, ...] = (
    EntityType.PATIENT,
    EntityType.APPOINTMENT,
    EntityType.ENCOUNTER,
    EntityType.CHART,
    EntityType.CONSENT,
    EntityType.PHOTO,
    EntityType.DOCUMENT,
    EntityType.INVOICE,
)


# -----------------------------------------------------------------------------
# Schema Description Models
# -----------------------------------------------------------------------------


class CanonicalField(BaseModel):
    """A field on a canonical entity."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="camelCase field name")
    type: str = Field(..., description="string, date, datetime, number, object, object[], string[]")
    required: bool = Field(default=False, description="Whether the field is required")


class CanonicalRelationship(BaseModel):
    """A foreign key from one canonical entity to another."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    field: str = Field(..., description="Foreign key field name")
    target_entity: EntityType = Field(..., alias="targetEntity")
    required: bool = Field(default=False)


class CanonicalEntityDescription(BaseModel):
    """Description of one canonical entity."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity_type: EntityType = Field(..., alias="entityType")
    fields: tuple[CanonicalField, ...] = Field(default_factory=tuple)
    relationships: tuple[CanonicalRelationship, ...] = Field(default_factory=tuple)

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]


def _f(name: str, type_: str, required: bool = False) -> CanonicalField:
    return CanonicalField(name=name, type=type_, required=required)


def _rel(field: str, target: EntityType, required: bool) -> CanonicalRelationship:
    return CanonicalRelationship(field=field, targetEntity=target, required=required)


_IDENTITY = (_f("canonicalId", "string", True), _f("sourceRecordId", "string", True))
_PATIENT_LINK = _f("canonicalPatientId", "string", True)
_APPOINTMENT_LINK = _f("canonicalAppointmentId", "string")
_PATIENT_REL = _rel("canonicalPatientId", EntityType.PATIENT, True)
_APPOINTMENT_REL = _rel("canonicalAppointmentId", EntityType.APPOINTMENT, False)


CANONICAL_ENTITIES: dict[EntityType, CanonicalEntityDescription] = {
    EntityType.PATIENT: CanonicalEntityDescription(
        entityType=EntityType.PATIENT,
        fields=_IDENTITY + (
            _f("firstName", "string", True),
            _f("lastName", "string", True),
            _f("email", "string"),
            _f("phone", "string"),
            _f("dateOfBirth", "date"),
            _f("gender", "string"),
            _f("address", "object"),
            _f("allergies", "string"),
            _f("medicalNotes", "string"),
            _f("tags", "string[]"),
        ),
    ),
    EntityType.APPOINTMENT: CanonicalEntityDescription(
        entityType=EntityType.APPOINTMENT,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _f("providerName", "string", True),
            _f("serviceName", "string"),
            _f("startTime", "datetime", True),
            _f("endTime", "datetime"),
            _f("status", "string", True),
            _f("notes", "string"),
        ),
        relationships=(_PATIENT_REL,),
    ),
    EntityType.CHART: CanonicalEntityDescription(
        entityType=EntityType.CHART,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _APPOINTMENT_LINK,
            _f("providerName", "string", True),
            _f("chiefComplaint", "string"),
            _f("sections", "object[]", True),
            _f("signedAt", "datetime"),
        ),
        relationships=(_PATIENT_REL, _APPOINTMENT_REL),
    ),
    EntityType.ENCOUNTER: CanonicalEntityDescription(
        entityType=EntityType.ENCOUNTER,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _APPOINTMENT_LINK,
            _f("providerName", "string", True),
            _f("date", "date", True),
            _f("notes", "string"),
            _f("status", "string", True),
        ),
        relationships=(_PATIENT_REL, _APPOINTMENT_REL),
    ),
    EntityType.CONSENT: CanonicalEntityDescription(
        entityType=EntityType.CONSENT,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _f("templateName", "string", True),
            _f("signedAt", "datetime"),
            _f("signedByName", "string"),
            _f("content", "string"),
            _f("status", "string", True),
        ),
        relationships=(_PATIENT_REL,),
    ),
    EntityType.PHOTO: CanonicalEntityDescription(
        entityType=EntityType.PHOTO,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _APPOINTMENT_LINK,
            _f("filename", "string", True),
            _f("mimeType", "string"),
            _f("category", "string"),
            _f("caption", "string"),
            _f("takenAt", "datetime"),
            _f("artifactKey", "string", True),
        ),
        relationships=(_PATIENT_REL, _APPOINTMENT_REL),
    ),
    EntityType.DOCUMENT: CanonicalEntityDescription(
        entityType=EntityType.DOCUMENT,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _f("filename", "string", True),
            _f("mimeType", "string"),
            _f("category", "string"),
            _f("artifactKey", "string", True),
        ),
        relationships=(_PATIENT_REL,),
    ),
    EntityType.INVOICE: CanonicalEntityDescription(
        entityType=EntityType.INVOICE,
        fields=_IDENTITY + (
            _PATIENT_LINK,
            _f("invoiceNumber", "string"),
            _f("status", "string", True),
            _f("total", "number", True),
            _f("subtotal", "number"),
            _f("taxAmount", "number"),
            _f("notes", "string"),
            _f("paidAt", "datetime"),
            _f("lineItems", "object[]", True),
        ),
        relationships=(_PATIENT_REL,),
    ),
}

# Nested shapes, described for the AI alongside the entity fields
NESTED_SHAPES: dict[str, list[str]] = {
    "patient.address": ["line1", "line2", "city", "state", "zip", "country"],
    "chart.sections": ["title", "content", "type"],
    "invoice.lineItems": ["description", "quantity", "unitPrice", "total", "serviceSourceId"],
}

# Foreign-key fields and the entity each one resolves to
FOREIGN_KEY_TARGETS: dict[str, EntityType] = {
    "canonicalPatientId": EntityType.PATIENT,
    "canonicalAppointmentId": EntityType.APPOINTMENT,
}


def describe_canonical_schema() -> list[dict[str, Any]]:
    """Return the JSON schema description sent to the AI layer."""
    return [
        {
            "entityType": desc.entity_type.value,
            "fields": [f.model_dump() for f in desc.fields],
            "relationships": [r.model_dump(by_alias=True, mode="json") for r in desc.relationships],
        }
        for desc in CANONICAL_ENTITIES.values()
    ]


CANONICAL_SCHEMA_DESCRIPTION: list[dict[str, Any]] = describe_canonical_schema()


def parse_entity_type(value: str) -> EntityType | None:
    """Return the EntityType for a string, or None when it is not canonical."""
    try:
        return EntityType(value)
    except ValueError:
        return None


def generate_canonical_id(source_vendor: str, source_entity: str, source_record_id: str) -> str:
    """
    Derive the canonical identifier for a source record.

    The same (vendor, entity, record id) triple always yields the same id,
    so repeated transforms are idempotent without a database lookup.
    """
    digest = hashlib.sha256(
        f"{source_vendor}:{source_entity}:{source_record_id}".encode("utf-8")
    ).hexdigest()
    return digest[:24]
