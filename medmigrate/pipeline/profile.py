"""Profile phase: schema and statistics inference over ingested artifacts."""

from __future__ import annotations

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.adapters.base import BaseSourceAdapter, SourceProfile
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)


class ProfileResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    profile: SourceProfile
    entity_count: int = Field(default=0, alias="entityCount")
    total_records: int = Field(default=0, alias="totalRecords")
    phi_field_count: int = Field(default=0, alias="phiFieldCount")


def execute_profile(
    adapter: BaseSourceAdapter,
    artifacts: list[ArtifactRef],
    store: BaseArtifactStore,
) -> ProfileResult:
    profile = adapter.profile(artifacts, store)
    result = ProfileResult(
        profile=profile,
        entityCount=len(profile.entities),
        totalRecords=profile.total_records(),
        phiFieldCount=sum(1 for e in profile.entities for f in e.fields if f.is_phi),
    )
    logger.info(
        "profile_complete",
        entities=result.entity_count,
        records=result.total_records,
        phi_fields=result.phi_field_count,
    )
    return result
