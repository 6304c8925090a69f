"""
Generic CSV/JSON Adapter

Profiles and transforms CSV and JSON export files. Profiling keeps counts
and rates only; literal values never leave the functions that read them.

Functional Requirements:
- ADP-001: Entity type guessed from the artifact key
- ADP-002: Syntax-based type inference over a bounded sample
- ADP-003: PHI classification by field name and content type
- ADP-004: Key candidates and relationship hints
- ADP-005: Streaming, restartable transform with deterministic canonical IDs
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
import re
from collections.abc import Iterator
from typing import Any

import structlog

from medmigrate.adapters.base import (
    BaseSourceAdapter,
    InferredType,
    RelationshipHint,
    SourceEntityProfile,
    SourceFieldProfile,
    SourceProfile,
    TransformedRecord,
)
from medmigrate.canonical.mapping_spec import EntityMapping, MappingSpec
from medmigrate.canonical.schema import FOREIGN_KEY_TARGETS, generate_canonical_id
from medmigrate.canonical.transforms import TransformContext, execute_transform
from medmigrate.storage.artifact_store import META_SUFFIX, ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)

# -----------------------------------------------------------------------------
# Heuristics
# -----------------------------------------------------------------------------

PHI_FIELD_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(first|last|middle|full)?_?name$",
        r"^(f|l|m)name$",
        r"email",
        r"phone",
        r"\b(dob|date_?of_?birth|birth_?date|birthday)\b",
        r"\bssn\b",
        r"social_?security",
        r"address",
        r"\bcity\b",
        r"\bstate\b",
        r"\bzip",
        r"\bpostal",
        r"\b(mrn|medical_?record)\b",
        r"\binsurance",
        r"\bpolicy",
        r"\ballerg",
        r"\bmedication",
        r"\bdiagnos",
    )
]

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2})?|^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[\d\s()-]{7,15}$")
NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
BOOLEAN_VALUES = {"true", "false", "yes", "no", "0", "1"}

FK_FIELD_RE = re.compile(r"(_id|Id|_key)$", re.IGNORECASE)

TYPE_SAMPLE_SIZE = 100
TYPE_MATCH_THRESHOLD = 0.8
ENUM_MAX_UNIQUE = 20
ENUM_MIN_SAMPLES = 5

ENTITY_KEY_ALIASES = {
    "patients": "patients",
    "patient": "patients",
    "clients": "patients",
    "client": "patients",
    "appointments": "appointments",
    "appointment": "appointments",
    "bookings": "appointments",
    "charts": "charts",
    "chart": "charts",
    "clinical_notes": "charts",
    "invoices": "invoices",
    "invoice": "invoices",
    "orders": "invoices",
    "photos": "photos",
    "photo": "photos",
    "images": "photos",
    "documents": "documents",
    "document": "documents",
    "files": "documents",
    "consents": "consents",
    "consent": "consents",
    "encounters": "encounters",
    "encounter": "encounters",
}


def is_phi_field(field_name: str) -> bool:
    return any(p.search(field_name) for p in PHI_FIELD_PATTERNS)


def _is_phone(value: str) -> bool:
    return bool(PHONE_RE.match(value)) and len(re.sub(r"\D", "", value)) >= 7


_TYPE_CHECKS = (
    (InferredType.EMAIL, lambda v: bool(EMAIL_RE.match(v))),
    (InferredType.DATE, lambda v: bool(DATE_RE.match(v))),
    (InferredType.PHONE, _is_phone),
    (InferredType.NUMBER, lambda v: bool(NUMBER_RE.match(v))),
    (InferredType.BOOLEAN, lambda v: v.lower() in BOOLEAN_VALUES),
)


def infer_type(values: list[str]) -> InferredType:
    """Infer a field type from the syntax of its first non-empty values."""
    sample = [v for v in values if v != ""][:TYPE_SAMPLE_SIZE]
    if not sample:
        return InferredType.UNKNOWN

    for inferred, test in _TYPE_CHECKS:
        match_rate = sum(1 for v in sample if test(v)) / len(sample)
        if match_rate >= TYPE_MATCH_THRESHOLD:
            return inferred

    if len(set(sample)) <= ENUM_MAX_UNIQUE and len(sample) >= ENUM_MIN_SAMPLES:
        return InferredType.ENUM

    return InferredType.STRING


def guess_entity_type(key: str) -> str:
    """Guess the source entity name from an artifact key."""
    lower = re.sub(r"\.(csv|json)$", "", key.lower())
    return ENTITY_KEY_ALIASES.get(lower, lower)


def _relationship_target(field_name: str) -> str:
    stem = FK_FIELD_RE.sub("", field_name).lower()
    return "patients" if stem in ("patient", "client") else f"{stem}s"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


# -----------------------------------------------------------------------------
# Readers
# -----------------------------------------------------------------------------


def _iter_csv(content: str) -> Iterator[dict[str, str]]:
    reader = csv.DictReader(io.StringIO(content))
    for row in reader:
        # Rows with only empty cells are skipped; short rows read missing cells as ""
        if not any((v or "").strip() for k, v in row.items() if k is not None):
            continue
        yield {k.strip(): (v or "").strip() for k, v in row.items() if k is not None}


def _csv_headers(content: str) -> list[str]:
    reader = csv.reader(io.StringIO(content))
    for row in reader:
        if any(cell.strip() for cell in row):
            return [cell.strip() for cell in row]
    return []


def _iter_json(content: str) -> Iterator[dict[str, Any]]:
    parsed = json.loads(content)
    records = parsed if isinstance(parsed, list) else [parsed]
    for record in records:
        if isinstance(record, dict):
            yield record


def _is_json(key: str) -> bool:
    return key.lower().endswith(".json")


class GenericCSVAdapter(BaseSourceAdapter):
    """Adapter for CSV and JSON export files."""

    def __init__(self, vendor_key: str = "csv"):
        self.vendor_key = vendor_key

    def _read_records(self, artifact: ArtifactRef, store: BaseArtifactStore) -> Iterator[dict[str, Any]]:
        content = store.get(artifact).decode("utf-8-sig")
        if _is_json(artifact.key):
            return _iter_json(content)
        return _iter_csv(content)

    # -------------------------------------------------------------------------
    # Profile
    # -------------------------------------------------------------------------

    def profile(self, artifacts: list[ArtifactRef], store: BaseArtifactStore) -> SourceProfile:
        profile = SourceProfile()

        for artifact in artifacts:
            if artifact.key.endswith(META_SUFFIX):
                continue

            entity_profile = self._profile_artifact(artifact, store)
            profile.entities.append(entity_profile)
            profile.phi_classification[entity_profile.type] = {
                f.name: f.is_phi for f in entity_profile.fields
            }

        logger.info(
            "source_profiled",
            vendor=self.vendor_key,
            entities=len(profile.entities),
            records=profile.total_records(),
        )
        return profile

    def _profile_artifact(self, artifact: ArtifactRef, store: BaseArtifactStore) -> SourceEntityProfile:
        content_headers: list[str] = []
        if not _is_json(artifact.key):
            content_headers = _csv_headers(store.get(artifact).decode("utf-8-sig"))

        columns: dict[str, list[str]] = {name: [] for name in content_headers}
        record_count = 0
        for record in self._read_records(artifact, store):
            for name in record:
                if name not in columns:
                    # Field first seen part-way through: earlier records lacked it
                    columns[name] = [""] * record_count
            for name, values in columns.items():
                values.append(_as_text(record.get(name)))
            record_count += 1

        entity = SourceEntityProfile(
            type=guess_entity_type(artifact.key),
            source=artifact.key,
            recordCount=record_count,
        )

        for name, values in columns.items():
            non_empty = [v for v in values if v != ""]
            unique_count = len(set(non_empty))
            null_rate = 1 - len(non_empty) / max(len(values), 1)
            unique_rate = unique_count / max(len(non_empty), 1)
            inferred = infer_type(values)

            entity.fields.append(
                SourceFieldProfile(
                    name=name,
                    inferredType=inferred,
                    nullRate=round(null_rate, 2),
                    uniqueRate=round(unique_rate, 2),
                    sampleDistribution=f"{len(non_empty)}/{len(values)} non-null, {unique_count} unique",
                    isPHI=is_phi_field(name) or inferred in (InferredType.EMAIL, InferredType.PHONE),
                )
            )

            if unique_rate > 0.95 and null_rate < 0.05:
                entity.key_candidates.append(name)

            if FK_FIELD_RE.search(name) and name.lower() != "id":
                entity.relationship_hints.append(
                    RelationshipHint(
                        field=name,
                        targetEntity=_relationship_target(name),
                        targetField="id",
                        confidence=0.7,
                    )
                )

        return entity

    # -------------------------------------------------------------------------
    # Transform
    # -------------------------------------------------------------------------

    def transform(
        self,
        artifacts: list[ArtifactRef],
        store: BaseArtifactStore,
        spec: MappingSpec,
    ) -> Iterator[TransformedRecord]:
        reference_entities = {
            fk_field: next(
                (em.source_entity for em in spec.entity_mappings if em.target_entity == target),
                None,
            )
            for fk_field, target in FOREIGN_KEY_TARGETS.items()
        }

        for artifact in artifacts:
            if artifact.key.endswith(META_SUFFIX):
                continue

            entity_key = guess_entity_type(artifact.key)
            mapping = next(
                (
                    em
                    for em in spec.entity_mappings
                    if em.source_entity in (entity_key, artifact.key)
                ),
                None,
            )
            if mapping is None:
                logger.debug("artifact_unmapped", key=artifact.key, entity=entity_key)
                continue

            for source_record in self._read_records(artifact, store):
                yield TransformedRecord(
                    entityType=mapping.target_entity,
                    sourceEntity=mapping.source_entity,
                    record=self._transform_record(
                        source_record, mapping, spec.source_vendor, reference_entities
                    ),
                )

    def _source_record_id(self, record: dict[str, Any], mapping: EntityMapping) -> str:
        id_mapping = next(
            (fm for fm in mapping.field_mappings if fm.target_field == "sourceRecordId"),
            None,
        )
        if id_mapping is not None:
            value = _as_text(record.get(id_mapping.source_field))
            if value:
                return value

        for fallback in ("id", "sourceId"):
            value = _as_text(record.get(fallback))
            if value:
                return value

        # No identifier column: derive one from the row content
        content = json.dumps(record, sort_keys=True, default=str)
        return "row-" + hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]

    def _transform_record(
        self,
        source: dict[str, Any],
        mapping: EntityMapping,
        vendor: str,
        reference_entities: dict[str, str | None],
    ) -> dict[str, Any]:
        source_record_id = self._source_record_id(source, mapping)
        canonical: dict[str, Any] = {
            "canonicalId": generate_canonical_id(vendor, mapping.source_entity, source_record_id),
            "sourceRecordId": source_record_id,
        }

        for fm in mapping.field_mappings:
            if fm.target_field in ("sourceRecordId", "canonicalId"):
                continue

            value = source.get(fm.source_field)
            if fm.transform:
                context = dict(fm.transform_context or {})
                enum_map = mapping.enum_maps.get(fm.source_field)
                if enum_map and "enumMap" not in context:
                    context["enumMap"] = enum_map
                ctx = TransformContext.model_validate(context)
                if fm.transform == "concat" and ctx.concat_fields:
                    value = [_as_text(source.get(f)) for f in ctx.concat_fields]
                value = execute_transform(fm.transform, value, ctx)

            if fm.target_field in FOREIGN_KEY_TARGETS:
                value = self._resolve_reference(
                    vendor, reference_entities.get(fm.target_field), fm.target_field, value
                )

            _assign(canonical, fm.target_field, value)

        return canonical

    def _resolve_reference(
        self,
        vendor: str,
        source_entity: str | None,
        field: str,
        value: Any,
    ) -> str:
        raw = _as_text(value)
        if not raw:
            return ""
        if source_entity is None:
            source_entity = f"{FOREIGN_KEY_TARGETS[field].value}s"
        return generate_canonical_id(vendor, source_entity, raw)


def _assign(record: dict[str, Any], target_field: str, value: Any) -> None:
    """Set a possibly dotted target field, e.g. address.city."""
    parts = target_field.split(".")
    node = record
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def create_adapter(vendor: str = "csv") -> BaseSourceAdapter:
    """Return the adapter for a vendor. Every vendor currently reads CSV/JSON exports."""
    return GenericCSVAdapter(vendor_key=vendor or "csv")
