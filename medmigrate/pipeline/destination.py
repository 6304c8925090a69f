"""
Destination persistence: staging records, the per-source-record ledger and
the domain entities promoted from staging.

The destination system owns these tables; the pipeline only talks to them
through DestinationStore. InMemoryDestination backs tests, the CLI and the
API server.
"""

from __future__ import annotations

import copy
import threading
import uuid
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from medmigrate.canonical.transforms import normalize_phone

logger = structlog.get_logger(__name__)


class StagingStatus(str, Enum):
    STAGED = "staged"
    PROMOTED = "promoted"


class LedgerStatus(str, Enum):
    STAGED = "staged"
    PROMOTED = "promoted"
    FAILED = "failed"


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class StagingRecord(BaseModel):
    """Canonical payload keyed by (runId, entityType, canonicalId)."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    entity_type: str = Field(..., alias="entityType")
    canonical_id: str = Field(..., alias="canonicalId")
    payload: dict[str, Any]
    checksum: str
    status: StagingStatus = StagingStatus.STAGED
    destination_id: str | None = Field(default=None, alias="destinationId")


class RecordLedgerEntry(BaseModel):
    """Lifecycle of one source record, keyed by (runId, entityType, sourceRecordId)."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    entity_type: str = Field(..., alias="entityType")
    source_record_id: str = Field(..., alias="sourceRecordId")
    canonical_id: str = Field(..., alias="canonicalId")
    status: LedgerStatus = LedgerStatus.STAGED
    checksum: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")


class DestinationStore:
    """Base class for destination persistence."""

    def upsert_staging(self, record: StagingRecord) -> UpsertOutcome:
        raise NotImplementedError

    def upsert_ledger(self, entry: RecordLedgerEntry) -> UpsertOutcome:
        raise NotImplementedError

    def staged_records(self, run_id: str) -> list[StagingRecord]:
        """Records still waiting for promotion, in staging order."""
        raise NotImplementedError

    def promoted_ids(self, run_id: str) -> dict[str, str]:
        """canonicalId -> destination id for records already promoted in a run."""
        raise NotImplementedError

    def mark_promoted(self, run_id: str, entity_type: str, canonical_id: str, destination_id: str) -> None:
        raise NotImplementedError

    def mark_failed(self, run_id: str, entity_type: str, canonical_id: str, error_code: str) -> None:
        raise NotImplementedError

    def ledger_counts(self, run_id: str) -> dict[str, dict[str, int]]:
        """entityType -> status -> count."""
        raise NotImplementedError

    def create_entity(self, entity_type: str, payload: dict[str, Any], references: dict[str, str]) -> str:
        """Create a domain entity; references map foreign-key fields to destination ids."""
        raise NotImplementedError

    def find_patients(self) -> list[dict[str, Any]]:
        """Existing destination patients, each with an "id" key."""
        raise NotImplementedError


class InMemoryDestination(DestinationStore):
    """Thread-safe in-process destination."""

    def __init__(self):
        self._lock = threading.Lock()
        self._staging: dict[tuple[str, str, str], StagingRecord] = {}
        self._ledger: dict[tuple[str, str, str], RecordLedgerEntry] = {}
        self.entities: dict[str, dict[str, dict[str, Any]]] = {}

    def upsert_staging(self, record: StagingRecord) -> UpsertOutcome:
        key = (record.run_id, record.entity_type, record.canonical_id)
        with self._lock:
            existing = self._staging.get(key)
            if existing is None:
                self._staging[key] = record
                return UpsertOutcome.CREATED
            if existing.checksum == record.checksum:
                return UpsertOutcome.UNCHANGED
            self._staging[key] = record
            return UpsertOutcome.UPDATED

    def upsert_ledger(self, entry: RecordLedgerEntry) -> UpsertOutcome:
        key = (entry.run_id, entry.entity_type, entry.source_record_id)
        with self._lock:
            existing = self._ledger.get(key)
            if existing is None:
                self._ledger[key] = entry
                return UpsertOutcome.CREATED
            if existing.checksum == entry.checksum and existing.canonical_id == entry.canonical_id:
                return UpsertOutcome.UNCHANGED
            self._ledger[key] = entry
            return UpsertOutcome.UPDATED

    def staged_records(self, run_id: str) -> list[StagingRecord]:
        with self._lock:
            return [
                r
                for (rid, _, _), r in self._staging.items()
                if rid == run_id and r.status == StagingStatus.STAGED
            ]

    def promoted_ids(self, run_id: str) -> dict[str, str]:
        with self._lock:
            return {
                r.canonical_id: r.destination_id
                for (rid, _, _), r in self._staging.items()
                if rid == run_id and r.status == StagingStatus.PROMOTED and r.destination_id
            }

    def _ledger_entries(self, run_id: str, entity_type: str, canonical_id: str) -> list[RecordLedgerEntry]:
        return [
            e
            for (rid, et, _), e in self._ledger.items()
            if rid == run_id and et == entity_type and e.canonical_id == canonical_id
        ]

    def mark_promoted(self, run_id: str, entity_type: str, canonical_id: str, destination_id: str) -> None:
        with self._lock:
            staging = self._staging.get((run_id, entity_type, canonical_id))
            if staging is not None:
                staging.status = StagingStatus.PROMOTED
                staging.destination_id = destination_id
            for entry in self._ledger_entries(run_id, entity_type, canonical_id):
                entry.status = LedgerStatus.PROMOTED
                entry.error_code = None

    def mark_failed(self, run_id: str, entity_type: str, canonical_id: str, error_code: str) -> None:
        with self._lock:
            for entry in self._ledger_entries(run_id, entity_type, canonical_id):
                entry.status = LedgerStatus.FAILED
                entry.error_code = error_code

    def ledger_counts(self, run_id: str) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        with self._lock:
            for (rid, entity_type, _), entry in self._ledger.items():
                if rid != run_id:
                    continue
                by_status = counts.setdefault(entity_type, {})
                by_status[entry.status.value] = by_status.get(entry.status.value, 0) + 1
        return counts

    def ledger(self, run_id: str) -> list[RecordLedgerEntry]:
        with self._lock:
            return [e for (rid, _, _), e in self._ledger.items() if rid == run_id]

    def create_entity(self, entity_type: str, payload: dict[str, Any], references: dict[str, str]) -> str:
        destination_id = uuid.uuid4().hex
        entity = copy.deepcopy(payload)
        entity.update(references)
        entity["id"] = destination_id
        with self._lock:
            self.entities.setdefault(entity_type, {})[destination_id] = entity
        return destination_id

    def find_patients(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(p) for p in self.entities.get("patient", {}).values()]


# -----------------------------------------------------------------------------
# Duplicate Detection
# -----------------------------------------------------------------------------


class MatchType(str, Enum):
    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    FUZZY_NAME_DOB = "fuzzy_name_dob"


class DuplicateResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_duplicate: bool = Field(..., alias="isDuplicate")
    existing_patient_id: str | None = Field(default=None, alias="existingPatientId")
    match_type: MatchType | None = Field(default=None, alias="matchType")
    reasoning: str


def _lower(value: Any) -> str:
    return str(value).strip().lower() if value else ""


def detect_duplicate(destination: DestinationStore, patient: dict[str, Any]) -> DuplicateResult:
    """
    Match a canonical patient against existing destination patients.

    Exact email first, then exact E.164 phone, then same date of birth with
    the same last name and a first name that matches or shares its first
    three letters. Reasoning strings name the rule, never the values.
    """
    existing = destination.find_patients()

    email = _lower(patient.get("email"))
    if email:
        match = next((p for p in existing if _lower(p.get("email")) == email), None)
        if match:
            return DuplicateResult(
                isDuplicate=True,
                existingPatientId=match["id"],
                matchType=MatchType.EXACT_EMAIL,
                reasoning="Matched to existing patient by email",
            )

    phone = normalize_phone(str(patient.get("phone") or ""))
    if phone:
        match = next(
            (p for p in existing if p.get("phone") and normalize_phone(str(p["phone"])) == phone),
            None,
        )
        if match:
            return DuplicateResult(
                isDuplicate=True,
                existingPatientId=match["id"],
                matchType=MatchType.EXACT_PHONE,
                reasoning="Matched to existing patient by phone number",
            )

    dob = patient.get("dateOfBirth")
    first = _lower(patient.get("firstName"))
    last = _lower(patient.get("lastName"))
    if dob and first and last:
        for p in existing:
            if p.get("dateOfBirth") != dob or _lower(p.get("lastName")) != last:
                continue
            existing_first = _lower(p.get("firstName"))
            if existing_first == first or existing_first.startswith(first[:3]):
                return DuplicateResult(
                    isDuplicate=True,
                    existingPatientId=p["id"],
                    matchType=MatchType.FUZZY_NAME_DOB,
                    reasoning="Matched to existing patient by similar name and same date of birth",
                )

    return DuplicateResult(isDuplicate=False, reasoning="No matching patient found")
