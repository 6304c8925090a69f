"""
Ingest phase: get source data into the artifact store.

Two strategies write the same kind of artifacts. "upload" stores files as
given; "api" runs verified GraphQL queries (from schema discovery), follows
relay cursor pagination and writes one {entity}.json array per entity type.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.core.errors import PhaseError
from medmigrate.memory.schema_cache import CachedQueryPattern
from medmigrate.storage.artifact_store import ArtifactRef, BaseArtifactStore

logger = structlog.get_logger(__name__)

MAX_PAGES = 1000


class IngestStrategy(str, Enum):
    UPLOAD = "upload"
    API = "api"


class UploadedFile(BaseModel):
    key: str
    data: bytes


class IngestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategy: IngestStrategy
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    entity_counts: dict[str, int] = Field(default_factory=dict, alias="entityCounts")


def resolve_strategy(has_uploaded_files: bool, has_credentials: bool) -> IngestStrategy:
    """Uploaded files win; credentials alone mean the API strategy."""
    if has_uploaded_files:
        return IngestStrategy.UPLOAD
    if has_credentials:
        return IngestStrategy.API
    return IngestStrategy.UPLOAD


def count_records(key: str, data: bytes) -> int:
    content = data.decode("utf-8-sig")
    if key.lower().endswith(".json"):
        parsed = json.loads(content)
        return len(parsed) if isinstance(parsed, list) else 1
    lines = [line for line in content.splitlines() if line.strip()]
    return max(0, len(lines) - 1)


def execute_ingest(
    run_id: str,
    store: BaseArtifactStore,
    uploaded_files: list[UploadedFile] | None = None,
    executor: Any = None,
    credentials: Any = None,
    queries: dict[str, CachedQueryPattern] | None = None,
    strategy: IngestStrategy | None = None,
) -> IngestResult:
    strategy = strategy or resolve_strategy(bool(uploaded_files), credentials is not None)

    if strategy == IngestStrategy.UPLOAD:
        return _ingest_uploads(run_id, store, uploaded_files or [])
    return _ingest_api(run_id, store, executor, credentials, queries or {})


def _ingest_uploads(run_id: str, store: BaseArtifactStore, files: list[UploadedFile]) -> IngestResult:
    if not files:
        raise PhaseError("ingest", "Upload strategy requires uploaded files")

    result = IngestResult(strategy=IngestStrategy.UPLOAD)
    for file in files:
        result.artifacts.append(store.put(run_id, file.key, file.data))
        try:
            result.entity_counts[file.key] = count_records(file.key, file.data)
        except ValueError as e:
            raise PhaseError(
                "ingest", f"Artifact {file.key} could not be parsed", {"errorType": type(e).__name__}
            ) from e

    logger.info("ingest_complete", run_id=run_id, strategy="upload", artifacts=len(result.artifacts))
    return result


def extract_page(data: dict[str, Any] | None) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
    """
    Pull (nodes, pageInfo) out of a GraphQL response's data.

    Understands a bare list, relay connections (edges { node }) and
    nodes-style connections under the first root field.
    """
    if not data:
        return [], None
    root = next(iter(data.values()))
    if isinstance(root, list):
        return root, None
    if not isinstance(root, dict):
        return [], None

    if "edges" in root:
        nodes = [edge.get("node") for edge in root.get("edges") or [] if edge.get("node") is not None]
    else:
        nodes = list(root.get("nodes") or [])
    return nodes, root.get("pageInfo")


def fetch_all(executor: Any, credentials: Any, pattern: CachedQueryPattern) -> list[dict[str, Any]]:
    """Run one query across all pages, passing endCursor as "after"."""
    variables = dict(pattern.variables or {})
    records: list[dict[str, Any]] = []

    for _ in range(MAX_PAGES):
        response = executor.execute(credentials, pattern.query, variables or None)
        if response.get("errors"):
            raise PhaseError(
                "ingest",
                f"Query for {pattern.entity_type} returned errors",
                {"errorCount": len(response["errors"])},
            )

        nodes, page_info = extract_page(response.get("data"))
        records.extend(nodes)

        if not page_info or not page_info.get("hasNextPage") or not page_info.get("endCursor"):
            break
        variables["after"] = page_info["endCursor"]
    else:
        logger.warning("ingest_page_limit_reached", entity_type=pattern.entity_type, pages=MAX_PAGES)

    return records


def _ingest_api(
    run_id: str,
    store: BaseArtifactStore,
    executor: Any,
    credentials: Any,
    queries: dict[str, CachedQueryPattern],
) -> IngestResult:
    if executor is None or credentials is None:
        raise PhaseError("ingest", "API strategy requires credentials and a GraphQL executor")
    if not queries:
        raise PhaseError("ingest", "API strategy requires discovered queries")

    result = IngestResult(strategy=IngestStrategy.API)
    for entity_type, pattern in queries.items():
        if not pattern.verified:
            logger.warning("ingest_unverified_query", run_id=run_id, entity_type=entity_type)

        records = fetch_all(executor, credentials, pattern)
        if not records:
            continue

        key = f"{entity_type}.json"
        result.artifacts.append(store.put(run_id, key, json.dumps(records, indent=2).encode("utf-8")))
        result.entity_counts[entity_type] = len(records)

    logger.info(
        "ingest_complete",
        run_id=run_id,
        strategy="api",
        artifacts=len(result.artifacts),
        records=sum(result.entity_counts.values()),
    )
    return result
