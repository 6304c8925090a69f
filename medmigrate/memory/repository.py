"""
Cache Repository

Vendor-scoped JSON documents with an injected staleness and capacity policy.
Every document carries a top-level updatedAt timestamp, stamped on write.
Reads are whole-document; concurrent writers for one vendor are not locked.
"""

from __future__ import annotations

import copy
import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict

logger = structlog.get_logger(__name__)

# Vendor-agnostic documents live under this key, unslugged
SHARED_KEY = "_shared"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def vendor_slug(vendor_key: str) -> str:
    if vendor_key == SHARED_KEY:
        return SHARED_KEY
    return re.sub(r"[^a-z0-9]", "-", vendor_key.lower())


class CachePolicy(BaseModel):
    """Staleness window and entry cap for one cache."""

    model_config = ConfigDict(frozen=True)

    max_age: timedelta | None = None
    max_entries: int | None = None

    def is_stale(self, updated_at: str | None, now: datetime) -> bool:
        if self.max_age is None:
            return False
        if not updated_at:
            return True
        try:
            stamp = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
        except ValueError:
            return True
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return now - stamp > self.max_age

    def trim(self, items: list[Any]) -> list[Any]:
        """Keep the first max_entries items; callers order by priority first."""
        if self.max_entries is None:
            return items
        return items[: self.max_entries]


class CacheRepository:
    """Base class for vendor-keyed cache documents."""

    def __init__(self, policy: CachePolicy | None = None, clock: Clock | None = None):
        self.policy = policy or CachePolicy()
        self.clock = clock or utc_now

    def read(self, vendor_key: str, include_stale: bool = False) -> dict[str, Any] | None:
        """Return the document, or None when absent or stale."""
        document = self._load(vendor_key)
        if document is None:
            return None
        if not include_stale and self.policy.is_stale(document.get("updatedAt"), self.clock()):
            logger.info("cache_stale", vendor=vendor_key, cache=self.name)
            return None
        return document

    def write(self, vendor_key: str, data: dict[str, Any]) -> dict[str, Any]:
        """Stamp updatedAt and persist the document."""
        document = dict(data)
        document["updatedAt"] = self.clock().isoformat()
        self._store(vendor_key, document)
        return document

    def delete(self, vendor_key: str) -> None:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return type(self).__name__

    def _load(self, vendor_key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _store(self, vendor_key: str, document: dict[str, Any]) -> None:
        raise NotImplementedError


class FileCacheRepository(CacheRepository):
    """Stores each vendor's document at {base_dir}/{vendor-slug}/{filename}."""

    def __init__(
        self,
        base_dir: str | Path,
        filename: str,
        policy: CachePolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(policy, clock)
        self.base_dir = Path(base_dir)
        self.filename = filename

    @property
    def name(self) -> str:
        return self.filename

    def path_for(self, vendor_key: str) -> Path:
        return self.base_dir / vendor_slug(vendor_key) / self.filename

    def _load(self, vendor_key: str) -> dict[str, Any] | None:
        path = self.path_for(vendor_key)
        if not path.is_file():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("cache_unreadable", path=str(path), error=str(e))
            return None
        return document if isinstance(document, dict) else None

    def _store(self, vendor_key: str, document: dict[str, Any]) -> None:
        path = self.path_for(vendor_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")

    def delete(self, vendor_key: str) -> None:
        path = self.path_for(vendor_key)
        if path.exists():
            path.unlink()


class InMemoryCacheRepository(CacheRepository):
    """Dict-backed repository for tests and ephemeral runs."""

    def __init__(self, policy: CachePolicy | None = None, clock: Clock | None = None):
        super().__init__(policy, clock)
        self._documents: dict[str, dict[str, Any]] = {}

    def _load(self, vendor_key: str) -> dict[str, Any] | None:
        document = self._documents.get(vendor_slug(vendor_key))
        return copy.deepcopy(document) if document is not None else None

    def _store(self, vendor_key: str, document: dict[str, Any]) -> None:
        self._documents[vendor_slug(vendor_key)] = copy.deepcopy(document)

    def delete(self, vendor_key: str) -> None:
        self._documents.pop(vendor_slug(vendor_key), None)
