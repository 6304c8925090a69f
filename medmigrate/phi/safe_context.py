"""
SafeContext Builder

The only payload that crosses to an AI backend: field names, inferred types,
rates and the canonical schema description. Profiles are expected to be
value-free already; this module re-checks them before anything is sent.

Functional Requirements:
- PHI-001: Distribution strings must look like statistical summaries
- PHI-002: Field and entity names shaped like literal values are replaced
- PHI-003: Keyed masking helpers for strings, dates, free text and identifiers
"""

from __future__ import annotations

import hashlib
import hmac
import re
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import (
    RelationshipHint,
    SourceEntityProfile,
    SourceFieldProfile,
    SourceProfile,
)
from medmigrate.canonical.schema import CANONICAL_SCHEMA_DESCRIPTION
from medmigrate.core.config import get_settings

logger = structlog.get_logger(__name__)

DISTRIBUTION_RE = re.compile(r"\d+/\d+ non-null, ~?\d+ unique")
_DISTRIBUTION_COUNTS_RE = re.compile(r"(\d+)\s*(?:/\s*(\d+))?\s*non-null.*?(\d+)\s*unique")
DISTRIBUTION_PLACEHOLDER = "[distribution available]"

_VALUE_SHAPED = (
    re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$"),
    re.compile(r"^[+(]?\d[\d\s().-]{6,}$"),
)


# -----------------------------------------------------------------------------
# Masking
# -----------------------------------------------------------------------------


def mask_string(value: str) -> str:
    return f"[string len={len(value)}]"


def mask_date(value: str) -> str:
    return "[date]"


def mask_free_text(value: str) -> str:
    return f"[text redacted len={len(value)}]"


def mask_identifier(value: str) -> str:
    """Keyed HMAC-SHA256 of an identifier, 16 hex chars."""
    secret = get_settings().migration_masking_secret.encode("utf-8")
    return hmac.new(secret, value.encode("utf-8"), hashlib.sha256).hexdigest()[:16]


def looks_like_value(name: str) -> bool:
    """True when a name is shaped like an email, date or phone number."""
    return any(p.search(name) for p in _VALUE_SHAPED)


def sanitize_distribution(distribution: str) -> str:
    """Keep statistical summaries; rebuild or replace anything else."""
    if DISTRIBUTION_RE.fullmatch(distribution.strip()):
        return distribution.strip()
    match = _DISTRIBUTION_COUNTS_RE.search(distribution)
    if match:
        non_null, total, unique = match.groups()
        return f"{non_null}/{total or '?'} non-null, {unique} unique"
    return DISTRIBUTION_PLACEHOLDER


# -----------------------------------------------------------------------------
# SafeContext
# -----------------------------------------------------------------------------


class SafeContext(BaseModel):
    """PHI-free context for AI mapping calls."""

    model_config = ConfigDict(populate_by_name=True)

    source_profile: SourceProfile = Field(..., alias="sourceProfile")
    target_schema: list[dict[str, Any]] = Field(..., alias="targetSchema")
    existing_services: list[dict[str, str]] | None = Field(default=None, alias="existingServices")

    def to_prompt_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SafeContextBuilder:
    """Builds a SafeContext from a source profile."""

    def build_from_profile(
        self,
        profile: SourceProfile,
        existing_services: list[dict[str, str]] | None = None,
    ) -> SafeContext:
        sanitized = self._sanitize_profile(profile)

        services = None
        if existing_services is not None:
            services = [
                {
                    "id": mask_identifier(str(s.get("id", ""))),
                    "name": mask_identifier(str(s.get("name", ""))),
                }
                for s in existing_services
            ]

        return SafeContext(
            sourceProfile=sanitized,
            targetSchema=CANONICAL_SCHEMA_DESCRIPTION,
            existingServices=services,
        )

    def _sanitize_profile(self, profile: SourceProfile) -> SourceProfile:
        entities = []
        phi_classification: dict[str, dict[str, bool]] = {}
        replaced = 0

        for e_index, entity in enumerate(profile.entities):
            entity_type = entity.type
            source = entity.source
            if looks_like_value(entity_type):
                entity_type = f"[entity {e_index}]"
                replaced += 1
            if looks_like_value(source):
                source = f"[source {e_index}]"
                replaced += 1

            renamed: dict[str, str] = {}
            fields = []
            for f_index, field in enumerate(entity.fields):
                name = field.name
                if looks_like_value(name):
                    name = f"[field {f_index}]"
                    replaced += 1
                renamed[field.name] = name
                fields.append(
                    SourceFieldProfile(
                        name=name,
                        inferredType=field.inferred_type,
                        nullRate=field.null_rate,
                        uniqueRate=field.unique_rate,
                        sampleDistribution=(
                            sanitize_distribution(field.sample_distribution)
                            if field.sample_distribution
                            else None
                        ),
                        isPHI=field.is_phi,
                    )
                )

            entities.append(
                SourceEntityProfile(
                    type=entity_type,
                    source=source,
                    recordCount=entity.record_count,
                    fields=fields,
                    keyCandidates=[renamed[k] for k in entity.key_candidates if k in renamed],
                    relationshipHints=[
                        RelationshipHint(
                            field=renamed[h.field],
                            targetEntity=h.target_entity,
                            targetField=h.target_field,
                            confidence=h.confidence,
                        )
                        for h in entity.relationship_hints
                        if h.field in renamed and not looks_like_value(h.target_entity)
                    ],
                )
            )
            phi_classification[entity_type] = {f.name: f.is_phi for f in fields}

        if replaced:
            logger.warning("safe_context_names_replaced", count=replaced)

        return SourceProfile(entities=entities, phiClassification=phi_classification)
