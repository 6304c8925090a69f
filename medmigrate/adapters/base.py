"""
Source Adapter Interface

Adapters work on stored artifacts, never on live data. profile() produces a
statistics-only summary of the source; transform() streams canonical records.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.mapping_spec import MappingSpec
from medmigrate.canonical.schema import CanonicalRecord, EntityType
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore


class InferredType(str, Enum):
    STRING = "string"
    DATE = "date"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    ENUM = "enum"
    BOOLEAN = "boolean"
    UNKNOWN = "unknown"


class _ProfileModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SourceFieldProfile(_ProfileModel):
    """Non-PHI statistics for one source field."""

    name: str
    inferred_type: InferredType = Field(..., alias="inferredType")
    null_rate: float = Field(..., ge=0.0, le=1.0, alias="nullRate")
    unique_rate: float = Field(..., ge=0.0, le=1.0, alias="uniqueRate")
    sample_distribution: str | None = Field(
        default=None,
        alias="sampleDistribution",
        description='Counts only, e.g. "120/123 non-null, 45 unique"',
    )
    is_phi: bool = Field(default=False, alias="isPHI")


class RelationshipHint(_ProfileModel):
    """A foreign-key-shaped field and the entity it probably references."""

    field: str
    target_entity: str = Field(..., alias="targetEntity")
    target_field: str = Field(default="id", alias="targetField")
    confidence: float = Field(..., ge=0.0, le=1.0)


class SourceEntityProfile(_ProfileModel):
    """Profile of one source entity (one artifact)."""

    type: str = Field(..., description='Guessed entity name, e.g. "patients"')
    source: str = Field(..., description="Artifact key the entity was read from")
    record_count: int = Field(default=0, alias="recordCount")
    fields: list[SourceFieldProfile] = Field(default_factory=list)
    key_candidates: list[str] = Field(default_factory=list, alias="keyCandidates")
    relationship_hints: list[RelationshipHint] = Field(
        default_factory=list, alias="relationshipHints"
    )


class SourceProfile(_ProfileModel):
    """Profile of a whole ingested source."""

    entities: list[SourceEntityProfile] = Field(default_factory=list)
    phi_classification: dict[str, dict[str, bool]] = Field(
        default_factory=dict, alias="phiClassification"
    )

    def total_records(self) -> int:
        return sum(e.record_count for e in self.entities)


class TransformedRecord(BaseModel):
    """One canonical record emitted by an adapter."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: EntityType = Field(..., alias="entityType")
    source_entity: str = Field(..., alias="sourceEntity")
    record: CanonicalRecord


class BaseSourceAdapter:
    """Base class for source adapters."""

    vendor_key: str = "generic"

    def profile(self, artifacts: list[ArtifactRef], store: BaseArtifactStore) -> SourceProfile:
        """Infer schema and statistics from stored artifacts."""
        raise NotImplementedError

    def transform(
        self,
        artifacts: list[ArtifactRef],
        store: BaseArtifactStore,
        spec: MappingSpec,
    ) -> Iterator[TransformedRecord]:
        """Lazily apply a mapping spec, one record at a time."""
        raise NotImplementedError
