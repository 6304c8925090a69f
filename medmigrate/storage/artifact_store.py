"""
Artifact Store

Every ingestion strategy writes raw source files through this interface;
adapters read them back by reference. Content hashes are checked on read.

Functional Requirements:
- ART-001: put/get/list/delete keyed by run ID
- ART-002: SHA-256 content hash verified on every get
- ART-003: Filesystem-safe keys and metadata sidecars for the local store
"""

from __future__ import annotations

import hashlib
import json
import re
import shutil
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.core.config import get_settings
from medmigrate.core.errors import ArtifactIntegrityError, ArtifactNotFoundError

logger = structlog.get_logger(__name__)

META_SUFFIX = ".meta.json"
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class ArtifactRef(BaseModel):
    """Reference to one stored artifact."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    run_id: str = Field(..., alias="runId")
    key: str = Field(..., description="Artifact key, usually the source filename")
    hash: str = Field(..., description="SHA-256 of the content")
    size_bytes: int = Field(..., alias="sizeBytes")
    stored_at: str = Field(..., alias="storedAt", description="Path or URI of the stored bytes")

    @property
    def is_metadata(self) -> bool:
        return self.key.endswith(META_SUFFIX)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sanitize_key(key: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", key)


class BaseArtifactStore:
    """Base class for artifact stores."""

    def put(
        self,
        run_id: str,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> ArtifactRef:
        raise NotImplementedError

    def get(self, ref: ArtifactRef) -> bytes:
        raise NotImplementedError

    def list(self, run_id: str) -> list[ArtifactRef]:
        raise NotImplementedError

    def delete(self, run_id: str) -> None:
        raise NotImplementedError

    def _verify(self, ref: ArtifactRef, data: bytes) -> bytes:
        actual = _sha256(data)
        if actual != ref.hash:
            logger.error(
                "artifact_hash_mismatch",
                run_id=ref.run_id,
                key=ref.key,
                expected=ref.hash[:12],
                actual=actual[:12],
            )
            raise ArtifactIntegrityError(f"Artifact {ref.key} failed integrity check")
        return data


# -----------------------------------------------------------------------------
# Local Filesystem Store
# -----------------------------------------------------------------------------


class LocalArtifactStore(BaseArtifactStore):
    """Stores artifacts under {base_dir}/{run_id}/{sanitized key}."""

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir or get_settings().migration_storage_dir)

    def _run_dir(self, run_id: str) -> Path:
        return self.base_dir / sanitize_key(run_id)

    def put(
        self,
        run_id: str,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> ArtifactRef:
        run_dir = self._run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)

        path = run_dir / sanitize_key(key)
        path.write_bytes(data)

        if metadata:
            Path(f"{path}{META_SUFFIX}").write_text(json.dumps(metadata), encoding="utf-8")

        ref = ArtifactRef(
            runId=run_id,
            key=key,
            hash=_sha256(data),
            sizeBytes=len(data),
            storedAt=str(path),
        )
        logger.debug("artifact_stored", run_id=run_id, key=key, size_bytes=len(data))
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        path = Path(ref.stored_at)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact {ref.key} not found for run {ref.run_id}")
        return self._verify(ref, path.read_bytes())

    def list(self, run_id: str) -> list[ArtifactRef]:
        run_dir = self._run_dir(run_id)
        if not run_dir.is_dir():
            return []

        refs = []
        for path in sorted(run_dir.iterdir()):
            if path.name.endswith(META_SUFFIX) or not path.is_file():
                continue
            data = path.read_bytes()
            refs.append(
                ArtifactRef(
                    runId=run_id,
                    key=path.name,
                    hash=_sha256(data),
                    sizeBytes=len(data),
                    storedAt=str(path),
                )
            )
        return refs

    def delete(self, run_id: str) -> None:
        shutil.rmtree(self._run_dir(run_id), ignore_errors=True)
        logger.info("artifacts_deleted", run_id=run_id)


# -----------------------------------------------------------------------------
# In-Memory Store
# -----------------------------------------------------------------------------


class InMemoryArtifactStore(BaseArtifactStore):
    """Artifact store backed by a dict, for tests and API-only runs."""

    def __init__(self):
        self._runs: dict[str, dict[str, tuple[bytes, dict[str, str] | None]]] = {}

    def put(
        self,
        run_id: str,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> ArtifactRef:
        self._runs.setdefault(run_id, {})[key] = (bytes(data), metadata)
        return ArtifactRef(
            runId=run_id,
            key=key,
            hash=_sha256(data),
            sizeBytes=len(data),
            storedAt=f"memory://{run_id}/{key}",
        )

    def get(self, ref: ArtifactRef) -> bytes:
        entry = self._runs.get(ref.run_id, {}).get(ref.key)
        if entry is None:
            raise ArtifactNotFoundError(f"Artifact {ref.key} not found for run {ref.run_id}")
        return self._verify(ref, entry[0])

    def list(self, run_id: str) -> list[ArtifactRef]:
        return [
            ArtifactRef(
                runId=run_id,
                key=key,
                hash=_sha256(data),
                sizeBytes=len(data),
                storedAt=f"memory://{run_id}/{key}",
            )
            for key, (data, _meta) in sorted(self._runs.get(run_id, {}).items())
        ]

    def metadata(self, run_id: str, key: str) -> dict[str, str] | None:
        entry = self._runs.get(run_id, {}).get(key)
        return entry[1] if entry else None

    def delete(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
