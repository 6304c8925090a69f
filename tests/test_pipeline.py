"""
Tests for the pipeline phases and the orchestrator that sequences them.
"""

import asyncio
import json

import pytest

from medmigrate.adapters.base import SourceEntityProfile, SourceProfile
from medmigrate.adapters.generic_csv import GenericCSVAdapter
from medmigrate.agents.discovery_agent import GraphQLCredentials, GraphQLExecutor, SchemaDiscoveryAgent
from medmigrate.agents.llm_clients import BaseLLMClient, HeuristicMappingClient, LLMClientChain
from medmigrate.agents.mapping_agent import MappingAgent
from medmigrate.canonical.mapping_spec import parse_mapping_spec
from medmigrate.canonical.schema import EntityType
from medmigrate.core.config import reload_settings
from medmigrate.core.crypto import encrypt_credentials
from medmigrate.core.errors import PhaseError, RunNotFoundError
from medmigrate.memory.discovery_memory import DiscoveryMemory
from medmigrate.memory.repository import InMemoryCacheRepository
from medmigrate.memory.schema_cache import CachedQueryPattern, SchemaCache
from medmigrate.pipeline.destination import InMemoryDestination, LedgerStatus, MatchType, detect_duplicate
from medmigrate.pipeline.draft_mapping import execute_draft_mapping, execute_mapping_correction
from medmigrate.pipeline.ingest import (
    IngestStrategy,
    UploadedFile,
    count_records,
    execute_ingest,
    extract_page,
    resolve_strategy,
)
from medmigrate.pipeline.load import PROMOTE_FAILED, execute_load, execute_promote
from medmigrate.pipeline.orchestrator import (
    MigrationOrchestrator,
    MigrationPhase,
    RunStatus,
    publish_run_events,
)
from medmigrate.pipeline.profile import execute_profile
from medmigrate.pipeline.reconcile import (
    ReconcileStatus,
    determine_status,
    execute_reconcile,
    summarize_report,
)
from medmigrate.pipeline.transform import TransformedItem, compute_checksum, execute_transform
from medmigrate.pipeline.validate import build_mapping_feedback, execute_validate

MISSING_NAME_CSV = (
    "id,first_name,last_name\n"
    "1,,Smith\n"
    "2,Bob,Jones\n"
).encode("utf-8")


# =============================================================================
# Helpers
# =============================================================================

def patient_spec_payload(first_name_source="first_name"):
    return {
        "version": 1,
        "sourceVendor": "acme",
        "entityMappings": [
            {
                "sourceEntity": "patients",
                "targetEntity": "patient",
                "fieldMappings": [
                    {
                        "sourceField": first_name_source,
                        "targetField": "firstName",
                        "transform": "trim",
                        "confidence": 0.9,
                        "requiresApproval": False,
                    },
                    {
                        "sourceField": "last_name",
                        "targetField": "lastName",
                        "transform": "trim",
                        "confidence": 0.9,
                        "requiresApproval": False,
                    },
                    {
                        "sourceField": "email",
                        "targetField": "email",
                        "transform": "normalizeEmail",
                        "confidence": 0.95,
                        "requiresApproval": False,
                    },
                ],
            }
        ],
    }


class CorrectingClient(BaseLLMClient):
    """Proposes a fixed spec and answers every correction with another."""

    name = "scripted"

    def __init__(self, proposal, correction):
        self.proposal = proposal
        self.correction = correction
        self.correction_prompts = []

    def is_available(self):
        return True

    def complete(self, system, user, max_tokens=None):
        return self.proposal

    def correct_mapping_spec(self, user):
        self.correction_prompts.append(user)
        return self.correction


class PagedExecutor(GraphQLExecutor):
    """Serves a relay connection of patients across two pages."""

    def __init__(self):
        self.variables = []

    def execute(self, credentials, query, variables=None):
        self.variables.append(variables)
        if not variables or "after" not in variables:
            return {
                "data": {
                    "clients": {
                        "edges": [
                            {"node": {"id": "c-1", "firstName": "Alice", "lastName": "Smith"}},
                            {"node": {"id": "c-2", "firstName": "Bob", "lastName": "Jones"}},
                        ],
                        "pageInfo": {"hasNextPage": True, "endCursor": "cursor-2"},
                    }
                }
            }
        return {
            "data": {
                "clients": {
                    "edges": [{"node": {"id": "c-3", "firstName": "Carol", "lastName": "White"}}],
                    "pageInfo": {"hasNextPage": False, "endCursor": None},
                }
            }
        }


def verified_queries():
    return {
        "patient": CachedQueryPattern(
            entityType="patient",
            query="query($after: String) { clients(after: $after) { edges { node { id } } } }",
            verified=True,
            cachedAt="2026-01-01T00:00:00+00:00",
        )
    }


def _item(entity_type, record):
    return TransformedItem(
        entityType=entity_type,
        canonicalId=record["canonicalId"],
        sourceRecordId=record["sourceRecordId"],
        record=record,
        checksum=compute_checksum(record),
    )


def _patient(canonical_id="p1", source_id="1", email="alice@x.com"):
    return _item(
        EntityType.PATIENT,
        {
            "canonicalId": canonical_id,
            "sourceRecordId": source_id,
            "firstName": "Alice",
            "lastName": "Smith",
            "email": email,
        },
    )


def _appointment(patient_id="p1"):
    return _item(
        EntityType.APPOINTMENT,
        {
            "canonicalId": "a1",
            "sourceRecordId": "a1",
            "canonicalPatientId": patient_id,
            "providerName": "Dr. Lee",
            "startTime": "2024-03-01",
        },
    )


def _profile(**counts):
    return SourceProfile(
        entities=[
            SourceEntityProfile(type=name, source=f"{name}.csv", recordCount=count, fields=[])
            for name, count in counts.items()
        ]
    )


@pytest.fixture
def prepared(store, heuristic_agent, patients_csv, appointments_csv):
    """Artifacts, adapter and a heuristic spec for the two-entity export."""
    refs = [
        store.put("run-1", "patients.csv", patients_csv),
        store.put("run-1", "appointments.csv", appointments_csv),
    ]
    adapter = GenericCSVAdapter("acme")
    profile = adapter.profile(refs, store)
    spec = heuristic_agent.draft(profile, "acme").spec
    return adapter, refs, profile, spec


# =============================================================================
# Ingest Tests
# =============================================================================

class TestIngest:
    """Tests for the upload and API ingest strategies."""

    def test_strategy_resolution(self):
        assert resolve_strategy(True, True) == IngestStrategy.UPLOAD
        assert resolve_strategy(False, True) == IngestStrategy.API
        assert resolve_strategy(False, False) == IngestStrategy.UPLOAD

    def test_count_records(self, patients_csv):
        assert count_records("patients.csv", patients_csv) == 3
        assert count_records("patients.json", b'[{"id": 1}, {"id": 2}]') == 2
        assert count_records("patient.json", b'{"id": 1}') == 1

    def test_upload_stores_artifacts(self, store, patients_csv):
        result = execute_ingest("run-1", store, uploaded_files=[UploadedFile(key="patients.csv", data=patients_csv)])

        assert result.strategy == IngestStrategy.UPLOAD
        assert result.entity_counts == {"patients.csv": 3}
        assert store.get(result.artifacts[0]) == patients_csv

    def test_upload_without_files(self, store):
        with pytest.raises(PhaseError):
            execute_ingest("run-1", store, uploaded_files=[])

    def test_unparseable_json_upload(self, store):
        with pytest.raises(PhaseError, match="could not be parsed"):
            execute_ingest("run-1", store, uploaded_files=[UploadedFile(key="patients.json", data=b"{not json")])

    def test_api_follows_cursor(self, store):
        executor = PagedExecutor()
        result = execute_ingest(
            "run-1",
            store,
            executor=executor,
            credentials=GraphQLCredentials(endpoint="https://api.example.com/graphql"),
            queries=verified_queries(),
        )

        assert result.strategy == IngestStrategy.API
        assert result.entity_counts == {"patient": 3}
        assert executor.variables == [None, {"after": "cursor-2"}]
        assert result.artifacts[0].key == "patient.json"
        records = json.loads(store.get(result.artifacts[0]))
        assert [r["id"] for r in records] == ["c-1", "c-2", "c-3"]

    def test_api_errors_fail_phase(self, store):
        class ErrorExecutor(GraphQLExecutor):
            def execute(self, credentials, query, variables=None):
                return {"errors": [{"message": "Cannot query field"}]}

        with pytest.raises(PhaseError, match="returned errors"):
            execute_ingest(
                "run-1",
                store,
                executor=ErrorExecutor(),
                credentials=GraphQLCredentials(endpoint="https://api.example.com/graphql"),
                queries=verified_queries(),
            )

    def test_api_requires_queries(self, store):
        with pytest.raises(PhaseError):
            execute_ingest(
                "run-1",
                store,
                executor=PagedExecutor(),
                credentials=GraphQLCredentials(endpoint="https://api.example.com/graphql"),
                strategy=IngestStrategy.API,
            )

    def test_extract_page_shapes(self):
        assert extract_page({"clients": [{"id": 1}]}) == ([{"id": 1}], None)
        nodes, page_info = extract_page(
            {"clients": {"nodes": [{"id": 1}], "pageInfo": {"hasNextPage": False}}}
        )
        assert nodes == [{"id": 1}]
        assert page_info == {"hasNextPage": False}
        assert extract_page(None) == ([], None)


# =============================================================================
# Profile / Draft / Transform Tests
# =============================================================================

class TestProfileAndDraft:
    """Tests for the profile and draft-mapping phases."""

    def test_profile_counts(self, store, patients_csv, appointments_csv):
        refs = [
            store.put("run-1", "patients.csv", patients_csv),
            store.put("run-1", "appointments.csv", appointments_csv),
        ]
        result = execute_profile(GenericCSVAdapter("acme"), refs, store)

        assert result.entity_count == 2
        assert result.total_records == 5
        assert result.phi_field_count > 0

    def test_draft_includes_dry_validation(self, store, heuristic_agent, prepared):
        adapter, refs, profile, _ = prepared
        result = execute_draft_mapping(
            heuristic_agent, profile, "acme", adapter=adapter, artifacts=refs, store=store
        )

        assert result.provider == "heuristic"
        assert result.version == 1
        assert result.dry_validation.sample_size == 5
        assert result.dry_validation.passed

    def test_draft_without_artifacts_skips_dry_run(self, heuristic_agent, prepared):
        _, _, profile, _ = prepared
        assert execute_draft_mapping(heuristic_agent, profile, "acme").dry_validation is None

    def test_correction_unavailable_with_heuristic(self, heuristic_agent, prepared):
        _, _, profile, spec = prepared
        feedback = build_mapping_feedback(execute_validate([_appointment("ghost")]), attempt=1)
        assert execute_mapping_correction(spec, feedback, profile, agent=heuristic_agent) is None


class TestTransform:
    """Tests for the transform phase."""

    def test_full_transform(self, store, prepared):
        adapter, refs, _, spec = prepared
        result = execute_transform(adapter, refs, store, spec)

        assert result.counts == {"patient": 3, "appointment": 2}
        patients = [r for r in result.records if r.entity_type == EntityType.PATIENT]
        assert len({p.canonical_id for p in patients}) == 3

    def test_limit_per_entity(self, store, prepared):
        adapter, refs, _, spec = prepared
        result = execute_transform(adapter, refs, store, spec, limit_per_entity=1)
        assert result.counts == {"patient": 1, "appointment": 1}

    def test_deterministic_checksums(self, store, prepared):
        adapter, refs, _, spec = prepared
        first = execute_transform(adapter, refs, store, spec)
        second = execute_transform(adapter, refs, store, spec)

        assert [r.checksum for r in first.records] == [r.checksum for r in second.records]
        assert [r.canonical_id for r in first.records] == [r.canonical_id for r in second.records]

    def test_appointments_link_to_patients(self, store, prepared):
        adapter, refs, _, spec = prepared
        result = execute_validate(execute_transform(adapter, refs, store, spec).records)

        assert result.passed
        assert result.referential_errors == []


# =============================================================================
# Load / Promote Tests
# =============================================================================

class TestLoad:
    """Tests for staging and ledger upserts."""

    def test_load_is_idempotent(self, destination):
        records = [_patient(), _appointment()]

        first = execute_load("run-1", records, destination)
        second = execute_load("run-1", records, destination)

        assert first.staged == 2
        assert second.staged == 0
        assert second.unchanged == 2
        assert len(destination.staged_records("run-1")) == 2
        assert destination.ledger_counts("run-1") == {"patient": {"staged": 1}, "appointment": {"staged": 1}}

    def test_changed_record_restaged(self, destination):
        execute_load("run-1", [_patient()], destination)
        result = execute_load("run-1", [_patient(email="alice@new.com")], destination)

        assert result.staged == 1
        assert destination.staged_records("run-1")[0].payload["email"] == "alice@new.com"


class TestPromote:
    """Tests for dependency-ordered promotion."""

    def test_patients_promoted_before_appointments(self, destination):
        execute_load("run-1", [_appointment(), _patient()], destination)
        result = execute_promote("run-1", destination)

        assert result.promoted == 2
        appointment = next(iter(destination.entities["appointment"].values()))
        assert appointment["canonicalPatientId"] in destination.entities["patient"]

    def test_unresolved_reference_skipped(self, destination):
        execute_load("run-1", [_appointment("ghost")], destination)
        result = execute_promote("run-1", destination)

        assert result.skipped == 1
        assert result.promoted == 0
        assert "appointment" not in destination.entities

    def test_resume_uses_promoted_ids(self, destination):
        execute_load("run-1", [_patient()], destination)
        execute_promote("run-1", destination)

        execute_load("run-1", [_appointment()], destination)
        result = execute_promote("run-1", destination)

        assert result.promoted == 1
        assert result.skipped == 0
        assert len(destination.entities["patient"]) == 1

    def test_existing_patient_linked(self, destination):
        existing_id = destination.create_entity("patient", {"email": "alice@x.com"}, {})
        execute_load("run-1", [_patient(), _appointment()], destination)

        result = execute_promote("run-1", destination)

        assert result.linked == 1
        assert result.promoted == 1
        assert len(destination.entities["patient"]) == 1
        appointment = next(iter(destination.entities["appointment"].values()))
        assert appointment["canonicalPatientId"] == existing_id

    def test_duplicate_detection_disabled(self, destination):
        destination.create_entity("patient", {"email": "alice@x.com"}, {})
        execute_load("run-1", [_patient()], destination)

        result = execute_promote("run-1", destination, detect_duplicates=False)

        assert result.linked == 0
        assert len(destination.entities["patient"]) == 2

    def test_failure_marked_in_ledger(self, monkeypatch):
        logged = []
        monkeypatch.setattr(
            "medmigrate.pipeline.load.log_error",
            lambda logger, error, message, **context: logged.append((message, context["entity_type"])),
        )

        class FailingAppointments(InMemoryDestination):
            def create_entity(self, entity_type, payload, references):
                if entity_type == "appointment":
                    raise RuntimeError("constraint violation")
                return super().create_entity(entity_type, payload, references)

        destination = FailingAppointments()
        execute_load("run-1", [_patient(), _appointment()], destination)

        result = execute_promote("run-1", destination)

        assert result.promoted == 1
        assert len(result.errors) == 1
        failed = [e for e in destination.ledger("run-1") if e.status == LedgerStatus.FAILED]
        assert [e.error_code for e in failed] == [PROMOTE_FAILED]
        assert logged == [("promote_failed", "appointment")]

        report = execute_reconcile("run-1", _profile(patients=1, appointments=1), destination)
        assert report.status == ReconcileStatus.PARTIAL
        assert report.unresolved_exceptions == 1


class TestDuplicateDetection:
    """Tests for matching incoming patients against destination patients."""

    @pytest.fixture
    def existing(self, destination):
        destination.create_entity(
            "patient",
            {
                "firstName": "Katherine",
                "lastName": "Smith",
                "email": "kate@x.com",
                "phone": "+15551234567",
                "dateOfBirth": "1990-04-01",
            },
            {},
        )
        return destination

    def test_email_match_case_insensitive(self, existing):
        result = detect_duplicate(existing, {"email": "KATE@x.com "})
        assert result.is_duplicate
        assert result.match_type == MatchType.EXACT_EMAIL

    def test_phone_match_normalized(self, existing):
        result = detect_duplicate(existing, {"phone": "(555) 123-4567"})
        assert result.match_type == MatchType.EXACT_PHONE

    def test_fuzzy_name_and_dob(self, existing):
        result = detect_duplicate(
            existing, {"firstName": "Kat", "lastName": "smith", "dateOfBirth": "1990-04-01"}
        )
        assert result.match_type == MatchType.FUZZY_NAME_DOB
        assert "Kat" not in result.reasoning

    def test_no_match(self, existing):
        result = detect_duplicate(
            existing, {"firstName": "Kat", "lastName": "Smith", "dateOfBirth": "1991-04-01"}
        )
        assert not result.is_duplicate
        assert result.existing_patient_id is None


# =============================================================================
# Reconcile Tests
# =============================================================================

class TestReconcile:
    """Tests for per-entity reconciliation and the report status."""

    def test_status_rules(self):
        assert determine_status(5, 5, 0) == ReconcileStatus.COMPLETE
        assert determine_status(5, 0, 0) == ReconcileStatus.FAILED
        assert determine_status(5, 4, 1) == ReconcileStatus.PARTIAL
        assert determine_status(5, 3, 0) == ReconcileStatus.PARTIAL
        assert determine_status(0, 0, 0) == ReconcileStatus.COMPLETE

    def test_staged_but_unpromoted_fails(self, destination):
        execute_load("run-1", [_patient()], destination)
        report = execute_reconcile("run-1", _profile(patients=1), destination)

        assert report.status == ReconcileStatus.FAILED
        assert report.reconciliation[0].entity_type == "patient"
        assert report.reconciliation[0].match_rate == 100
        assert report.overall_completeness == 0

    def test_ledger_only_entity_reported(self, destination):
        execute_load("run-1", [_patient(), _appointment()], destination)
        execute_promote("run-1", destination)

        report = execute_reconcile("run-1", _profile(patients=1), destination)

        appointment = next(e for e in report.reconciliation if e.entity_type == "appointment")
        assert appointment.source_count == 0
        assert appointment.promoted_count == 1

    def test_summary_from_capable_client(self, destination):
        report = execute_reconcile("run-1", _profile(patients=1), destination)
        client = CorrectingClient({"summary": "0 of 1 promoted"}, None)

        assert summarize_report(report, LLMClientChain([client])) == {"summary": "0 of 1 promoted"}
        assert summarize_report(report, LLMClientChain([HeuristicMappingClient()])) is None


# =============================================================================
# Orchestrator Tests
# =============================================================================

class TestOrchestrator:
    """Tests for full runs, the approval gate and the correction loop."""

    def _upload(self, orchestrator, *files):
        return orchestrator.create_run(
            "acme", uploaded_files=[UploadedFile(key=key, data=data) for key, data in files]
        )

    def test_full_run_completes(self, orchestrator, destination, mapping_memory, patients_csv, appointments_csv):
        run = self._upload(orchestrator, ("patients.csv", patients_csv), ("appointments.csv", appointments_csv))

        report = orchestrator.run_full(run.run_id)

        assert run.status == RunStatus.COMPLETED
        assert report.status == ReconcileStatus.COMPLETE
        assert report.total_source_records == 5
        assert report.total_promoted_records == 5
        assert run.validation.report.valid_records == 5
        assert run.validation.sampling_packet.entity_distribution["patient"] == 3
        assert run.approved_by == "system-auto-approve"
        assert len(destination.entities["patient"]) == 3
        assert len(mapping_memory.read("acme")) == 1

    def test_phase_order(self, orchestrator, patients_csv):
        run = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_full(run.run_id)

        assert [o.phase for o in run.outcomes] == [
            MigrationPhase.INGEST,
            MigrationPhase.PROFILE,
            MigrationPhase.DRAFT_MAPPING,
            MigrationPhase.TRANSFORM,
            MigrationPhase.VALIDATE,
            MigrationPhase.LOAD,
            MigrationPhase.PROMOTE,
            MigrationPhase.RECONCILE,
        ]
        assert all(o.passed for o in run.outcomes)

    def test_pauses_at_approval(self, orchestrator, patients_csv):
        run = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_to_approval(run.run_id)

        assert run.status == RunStatus.AWAITING_APPROVAL
        assert orchestrator.run_from_approval(run.run_id) is None
        assert run.outcomes[-1].phase == MigrationPhase.APPROVE_MAPPING
        assert "paused" in run.outcomes[-1].reason
        assert run.load_result is None

    def test_edited_spec_approved_as_new_version(self, orchestrator, patients_csv):
        run = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_to_approval(run.run_id)

        edited = parse_mapping_spec(patient_spec_payload())
        orchestrator.approve_mapping(run.run_id, "reviewer@clinic", edited)

        assert run.approved_version == 2
        assert run.current_spec.version == 2
        assert run.approved_by == "reviewer@clinic"
        assert orchestrator.run_from_approval(run.run_id).status == ReconcileStatus.COMPLETE

    def test_rerun_links_existing_patients(self, orchestrator, destination, patients_csv):
        first = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_full(first.run_id)

        second = self._upload(orchestrator, ("patients.csv", patients_csv))
        report = orchestrator.run_full(second.run_id)

        assert second.promote_result.linked == 3
        assert report.status == ReconcileStatus.COMPLETE
        assert len(destination.entities["patient"]) == 3

    def test_validation_failure_without_correction(self, orchestrator):
        run = self._upload(orchestrator, ("patients.csv", MISSING_NAME_CSV))

        assert orchestrator.run_full(run.run_id) is None
        assert run.status == RunStatus.FAILED
        assert run.validation.report.errors_by_code == {"V001": 1}
        assert len(run.correction_history) == 1
        assert not run.correction_history[0].fixed
        assert "CORRECTION_UNAVAILABLE" in [e.action for e in run.events]
        assert run.load_result is None

    def test_ai_correction_fixes_mapping(self, store, destination, mapping_memory, patients_csv):
        client = CorrectingClient(
            patient_spec_payload(first_name_source="given"), patient_spec_payload()
        )
        orchestrator = MigrationOrchestrator(
            store=store,
            destination=destination,
            mapping_agent=MappingAgent(chain=LLMClientChain([client]), mapping_memory=mapping_memory),
            mapping_memory=mapping_memory,
        )
        run = self._upload(orchestrator, ("patients.csv", patients_csv))

        report = orchestrator.run_full(run.run_id)

        assert run.status == RunStatus.COMPLETED
        assert report.status == ReconcileStatus.COMPLETE
        assert run.current_spec.version == 2
        assert run.approved_by == "ai-correction"
        assert run.correction_history[0].errors_by_code == {"V001": 3}
        assert run.correction_history[0].fixed
        assert "MAPPING_CORRECTED" in [e.action for e in run.events]
        assert mapping_memory.read("acme")[0].correction_history[0].fixed

        prompt = client.correction_prompts[0]
        for literal in ("Alice", "alice@x.com", "Smith"):
            assert literal not in prompt

    def test_correction_attempts_bounded(self, store, destination, mapping_memory, patients_csv):
        broken = patient_spec_payload(first_name_source="given")
        orchestrator = MigrationOrchestrator(
            store=store,
            destination=destination,
            mapping_agent=MappingAgent(
                chain=LLMClientChain([CorrectingClient(broken, broken)]), mapping_memory=mapping_memory
            ),
            mapping_memory=mapping_memory,
            max_correction_attempts=2,
        )
        run = self._upload(orchestrator, ("patients.csv", patients_csv))

        assert orchestrator.run_full(run.run_id) is None
        assert run.status == RunStatus.FAILED
        assert len(run.correction_history) == 2
        assert len(run.spec_versions) == 3
        assert mapping_memory.read("acme") == []

    def test_attempts_capped(self, store, destination):
        orchestrator = MigrationOrchestrator(store=store, destination=destination, max_correction_attempts=9)
        assert orchestrator.max_correction_attempts == 5

    def test_phase_crash_becomes_outcome(self, store, destination, heuristic_agent, patients_csv, monkeypatch):
        logged = []
        monkeypatch.setattr(
            "medmigrate.pipeline.orchestrator.log_error",
            lambda logger, error, message, **context: logged.append((message, type(error).__name__, context["phase"])),
        )

        class BrokenAdapter(GenericCSVAdapter):
            def profile(self, artifacts, store):
                raise RuntimeError("disk unplugged")

        orchestrator = MigrationOrchestrator(
            store=store, destination=destination, adapter=BrokenAdapter("acme"), mapping_agent=heuristic_agent
        )
        run = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_to_approval(run.run_id)

        assert run.status == RunStatus.FAILED
        assert run.outcomes[-1].phase == MigrationPhase.PROFILE
        assert run.outcomes[-1].reason == "Unexpected RuntimeError during profile"
        assert logged == [("phase_crashed", "RuntimeError", "profile")]

    def test_api_strategy_run(self, store, destination, heuristic_agent):
        agent = SchemaDiscoveryAgent(
            executor=PagedExecutor(),
            chain=LLMClientChain([HeuristicMappingClient()]),
            schema_cache=SchemaCache(InMemoryCacheRepository(), InMemoryCacheRepository()),
            discovery_memory=DiscoveryMemory(InMemoryCacheRepository(), InMemoryCacheRepository()),
        )
        orchestrator = MigrationOrchestrator(
            store=store, destination=destination, mapping_agent=heuristic_agent, discovery_agent=agent
        )
        run = orchestrator.create_run(
            "acme",
            credentials=GraphQLCredentials(endpoint="https://api.example.com/graphql", apiKey="k"),
            queries=verified_queries(),
        )

        report = orchestrator.run_full(run.run_id)

        assert run.outcomes[0].details["strategy"] == "api"
        assert report.status == ReconcileStatus.COMPLETE
        assert len(destination.entities["patient"]) == 3

    def _api_orchestrator(self, store, destination, heuristic_agent, executor):
        agent = SchemaDiscoveryAgent(
            executor=executor,
            chain=LLMClientChain([HeuristicMappingClient()]),
            schema_cache=SchemaCache(InMemoryCacheRepository(), InMemoryCacheRepository()),
            discovery_memory=DiscoveryMemory(InMemoryCacheRepository(), InMemoryCacheRepository()),
        )
        return MigrationOrchestrator(
            store=store, destination=destination, mapping_agent=heuristic_agent, discovery_agent=agent
        )

    def test_encrypted_credentials_decrypted_for_ingest(self, store, destination, heuristic_agent, monkeypatch):
        monkeypatch.setenv("MIGRATION_ENCRYPTION_KEY", "ab" * 32)
        reload_settings()

        class RecordingExecutor(PagedExecutor):
            def __init__(self):
                super().__init__()
                self.seen = []

            def execute(self, credentials, query, variables=None):
                self.seen.append(credentials)
                return super().execute(credentials, query, variables)

        executor = RecordingExecutor()
        orchestrator = self._api_orchestrator(store, destination, heuristic_agent, executor)
        envelope = encrypt_credentials({"endpoint": "https://api.example.com/graphql", "apiKey": "k-123"})
        run = orchestrator.create_run("acme", credentials=envelope, queries=verified_queries())

        report = orchestrator.run_full(run.run_id)

        assert report.status == ReconcileStatus.COMPLETE
        assert {c.api_key for c in executor.seen} == {"k-123"}
        assert "k-123" not in json.dumps(run.summary())

    def test_undecryptable_credentials_fail_ingest(self, store, destination, heuristic_agent, monkeypatch):
        monkeypatch.setenv("MIGRATION_ENCRYPTION_KEY", "ab" * 32)
        reload_settings()
        orchestrator = self._api_orchestrator(store, destination, heuristic_agent, PagedExecutor())
        run = orchestrator.create_run("acme", credentials="not base64!", queries=verified_queries())

        orchestrator.run_to_approval(run.run_id)

        assert run.status == RunStatus.FAILED
        assert run.outcomes[0].phase == MigrationPhase.INGEST
        assert "base64" in run.outcomes[0].reason

    def test_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFoundError):
            orchestrator.get_run("missing")

    def test_summary_carries_no_values(self, orchestrator, patients_csv):
        run = self._upload(orchestrator, ("patients.csv", patients_csv))
        orchestrator.run_full(run.run_id)

        summary = run.summary()
        payload = json.dumps(summary)

        assert summary["specVersionCount"] == 1
        assert summary["mappingSpec"]["sourceVendor"] == "acme"
        assert summary["validation"]["passed"] is True
        for literal in ("Alice", "alice@x.com", "555-123-4567"):
            assert literal not in payload


class TestEventPublishing:
    """Tests for publishing run events to Redis."""

    class FakeRedis:
        def __init__(self):
            self.published = []
            self.closed = False

        async def publish(self, topic, message):
            self.published.append((topic, json.loads(message)))

        async def aclose(self):
            self.closed = True

    def test_events_published(self, orchestrator, patients_csv, monkeypatch):
        fake = self.FakeRedis()
        monkeypatch.setattr("redis.asyncio.from_url", lambda url: fake)
        run = orchestrator.create_run("acme", uploaded_files=[UploadedFile(key="patients.csv", data=patients_csv)])
        orchestrator.run_full(run.run_id)

        asyncio.run(publish_run_events(run, "redis://localhost:6379/0"))

        assert fake.closed
        assert len(fake.published) == len(run.events)
        assert {topic for topic, _ in fake.published} == {"migration.run"}
        assert fake.published[0][1]["action"] == "PHASE_STARTED"
        assert fake.published[0][1]["runId"] == run.run_id

    def test_publish_failure_swallowed(self, orchestrator, monkeypatch):
        def refuse(url):
            raise ConnectionError("redis down")

        monkeypatch.setattr("redis.asyncio.from_url", refuse)
        run = orchestrator.create_run("acme")

        asyncio.run(publish_run_events(run, "redis://localhost:6379/0"))
