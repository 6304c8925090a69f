"""
Tests for the PHI boundary: SafeContext construction, masking helpers,
structural redaction of live responses and aggregate mapping feedback.
"""

import json

import pytest

from medmigrate.adapters.base import (
    InferredType,
    SourceEntityProfile,
    SourceFieldProfile,
    SourceProfile,
)
from medmigrate.adapters.generic_csv import GenericCSVAdapter
from medmigrate.canonical.schema import EntityType
from medmigrate.core.config import reload_settings
from medmigrate.phi.redactor import redact_graphql_errors, redact_phi
from medmigrate.phi.safe_context import (
    DISTRIBUTION_PLACEHOLDER,
    SafeContextBuilder,
    looks_like_value,
    mask_date,
    mask_free_text,
    mask_identifier,
    mask_string,
    sanitize_distribution,
)
from medmigrate.pipeline.transform import TransformedItem, compute_checksum
from medmigrate.pipeline.validate import build_mapping_feedback, execute_validate

LITERALS = ("Alice", "alice@x.com", "1992-06-15", "555-123-4567")


def _field(name, inferred=InferredType.STRING, distribution="3/3 non-null, 3 unique"):
    return SourceFieldProfile(
        name=name,
        inferredType=inferred,
        nullRate=0.0,
        uniqueRate=1.0,
        sampleDistribution=distribution,
        isPHI=True,
    )


@pytest.fixture
def builder():
    return SafeContextBuilder()


# =============================================================================
# SafeContext Tests
# =============================================================================

class TestSafeContext:
    """Tests for the payload that crosses to AI backends."""

    def test_profile_from_export_carries_no_values(self, builder, store, patients_csv):
        refs = [store.put("run-1", "patients.csv", patients_csv)]
        profile = GenericCSVAdapter("acme").profile(refs, store)

        payload = json.dumps(builder.build_from_profile(profile).to_prompt_json())

        for literal in LITERALS:
            assert literal not in payload
        assert "first_name" in payload
        assert "targetSchema" in payload

    def test_value_shaped_names_replaced(self, builder):
        profile = SourceProfile(
            entities=[
                SourceEntityProfile(
                    type="patients",
                    source="1992-06-15.csv",
                    recordCount=3,
                    fields=[
                        _field("id"),
                        _field("alice@x.com", InferredType.EMAIL),
                        _field("1992-06-15", InferredType.DATE),
                        _field("555-123-4567", InferredType.PHONE),
                    ],
                    keyCandidates=["id", "alice@x.com"],
                )
            ]
        )

        context = builder.build_from_profile(profile)
        payload = json.dumps(context.to_prompt_json())

        for literal in ("alice@x.com", "1992-06-15", "555-123-4567"):
            assert literal not in payload
        entity = context.source_profile.entities[0]
        assert [f.name for f in entity.fields] == ["id", "[field 1]", "[field 2]", "[field 3]"]
        assert entity.key_candidates == ["id", "[field 1]"]
        assert entity.source == "[source 0]"
        assert context.source_profile.phi_classification["patients"]["[field 1]"] is True

    def test_non_statistical_distribution_replaced(self, builder):
        profile = SourceProfile(
            entities=[
                SourceEntityProfile(
                    type="patients",
                    source="patients.csv",
                    fields=[_field("first_name", distribution="Alice, Bob, Carol")],
                )
            ]
        )

        context = builder.build_from_profile(profile)
        assert context.source_profile.entities[0].fields[0].sample_distribution == DISTRIBUTION_PLACEHOLDER
        assert "Alice" not in json.dumps(context.to_prompt_json())

    def test_distribution_with_trailing_values_rebuilt(self, builder):
        polluted = "3/3 non-null, 3 unique; Alice alice@x.com 1992-06-15"
        profile = SourceProfile(
            entities=[
                SourceEntityProfile(
                    type="patients",
                    source="patients.csv",
                    fields=[_field("first_name", distribution=polluted)],
                )
            ]
        )

        context = builder.build_from_profile(profile)
        payload = json.dumps(context.to_prompt_json())

        assert context.source_profile.entities[0].fields[0].sample_distribution == "3/3 non-null, 3 unique"
        for literal in ("Alice", "alice@x.com", "1992-06-15"):
            assert literal not in payload

    def test_existing_services_masked(self, builder):
        context = builder.build_from_profile(
            SourceProfile(), existing_services=[{"id": "svc-1", "name": "Lip Filler"}]
        )

        payload = json.dumps(context.to_prompt_json())
        assert "Lip Filler" not in payload
        assert "svc-1" not in payload
        assert context.existing_services == [
            {"id": mask_identifier("svc-1"), "name": mask_identifier("Lip Filler")}
        ]

    def test_services_omitted_when_absent(self, builder):
        assert "existingServices" not in builder.build_from_profile(SourceProfile()).to_prompt_json()


class TestMasking:
    """Tests for the masking helpers."""

    def test_mask_helpers(self):
        assert mask_string("Alice") == "[string len=5]"
        assert mask_date("1992-06-15") == "[date]"
        assert mask_free_text("Patient reports mild swelling") == "[text redacted len=29]"

    def test_mask_identifier_keyed(self, monkeypatch):
        first = mask_identifier("MRN-1")
        assert len(first) == 16
        assert first == mask_identifier("MRN-1")

        monkeypatch.setenv("MIGRATION_MASKING_SECRET", "rotated")
        reload_settings()
        assert mask_identifier("MRN-1") != first

    def test_looks_like_value(self):
        assert looks_like_value("alice@x.com")
        assert looks_like_value("1992-06-15")
        assert looks_like_value("6/15/1992")
        assert looks_like_value("(555) 123-4567")
        assert not looks_like_value("date_of_birth")
        assert not looks_like_value("patients")

    def test_sanitize_distribution(self):
        assert sanitize_distribution("3/3 non-null, 3 unique") == "3/3 non-null, 3 unique"
        assert sanitize_distribution("3 non-null values, 2 unique") == "3/? non-null, 2 unique"
        assert sanitize_distribution("top: Alice") == DISTRIBUTION_PLACEHOLDER
        assert sanitize_distribution("3/3 non-null, 3 unique, top: Alice") == "3/3 non-null, 3 unique"


# =============================================================================
# Redactor Tests
# =============================================================================

class TestRedactor:
    """Tests for structural redaction of live API responses."""

    @pytest.fixture
    def response(self):
        return {
            "data": {
                "clients": {
                    "totalCount": 2,
                    "nodes": [
                        {
                            "__typename": "Client",
                            "id": "c-1",
                            "firstName": "Alice",
                            "email": "alice@x.com",
                            "visits": 4,
                            "active": True,
                            "notes": None,
                        },
                        {"__typename": "Client", "id": "c-2", "firstName": "Bob"},
                        {"__typename": "Client", "id": "c-3", "firstName": "Carol"},
                    ],
                    "pageInfo": {"hasNextPage": True, "endCursor": "cur-2"},
                }
            }
        }

    def test_values_removed(self, response):
        redacted = json.dumps(redact_phi(response))
        assert "Alice" not in redacted
        assert "alice@x.com" not in redacted
        assert "c-1" not in redacted

    def test_structure_kept(self, response):
        clients = redact_phi(response)["data"]["clients"]
        nodes = clients["nodes"]

        assert nodes["__redacted_array"] is True
        assert nodes["length"] == 3
        assert len(nodes["sample"]) == 2
        assert nodes["sample"][0] == {
            "__typename": "Client",
            "id": "[id]",
            "firstName": "[string len=5]",
            "email": "[string len=11]",
            "visits": 0,
            "active": True,
            "notes": None,
        }

    def test_pagination_metadata_kept(self, response):
        clients = redact_phi(response)["data"]["clients"]
        assert clients["totalCount"] == 2
        assert clients["pageInfo"] == {"hasNextPage": True, "endCursor": "cur-2"}

    def test_depth_bounded(self):
        nested = {"value": "x"}
        for _ in range(30):
            nested = {"child": nested}
        assert "[max depth]" in json.dumps(redact_phi(nested))

    def test_graphql_errors_keep_message_only(self):
        errors = [
            {
                "message": 'Cannot query field "dob" on type "Client"',
                "path": ["clients", 0, "Alice"],
                "extensions": {"value": "alice@x.com"},
            }
        ]
        assert redact_graphql_errors(errors) == [
            {"message": 'Cannot query field "dob" on type "Client"'}
        ]


# =============================================================================
# Mapping Feedback Tests
# =============================================================================

def _item(entity_type, record):
    return TransformedItem(
        entityType=entity_type,
        canonicalId=record["canonicalId"],
        sourceRecordId=record["sourceRecordId"],
        record=record,
        checksum=compute_checksum(record),
    )


class TestMappingFeedback:
    """Tests for the aggregate feedback sent to AI correction."""

    @pytest.fixture
    def failed_result(self):
        return execute_validate(
            [
                _item(
                    EntityType.PATIENT,
                    {
                        "canonicalId": "cid-alice",
                        "sourceRecordId": "1",
                        "firstName": "",
                        "lastName": "Smith",
                        "email": "alice@x.com",
                    },
                ),
                _item(
                    EntityType.PATIENT,
                    {
                        "canonicalId": "cid-bob",
                        "sourceRecordId": "2",
                        "firstName": "",
                        "lastName": "Jones",
                    },
                ),
                _item(
                    EntityType.APPOINTMENT,
                    {
                        "canonicalId": "cid-appt",
                        "sourceRecordId": "a1",
                        "canonicalPatientId": "cid-ghost",
                        "providerName": "Dr. Lee",
                        "startTime": "2024-03-01",
                    },
                ),
            ]
        )

    def test_feedback_aggregates(self, failed_result):
        feedback = build_mapping_feedback(failed_result, attempt=1)

        assert not failed_result.passed
        assert feedback.attempt == 1
        assert feedback.total_records == 3
        assert feedback.invalid_records == 2
        assert feedback.referential_error_count == 1
        assert feedback.error_details[0].code == "V001"
        assert feedback.error_details[0].field == "firstName"
        assert feedback.error_details[0].count == 2
        assert feedback.referential_details[0].field == "canonicalPatientId"

    def test_feedback_carries_no_values_or_ids(self, failed_result):
        payload = json.dumps(build_mapping_feedback(failed_result, attempt=1).model_dump(by_alias=True))

        for literal in ("Smith", "Jones", "alice@x.com", "Dr. Lee", "cid-alice", "cid-ghost"):
            assert literal not in payload

    def test_sampling_packet_counts_only(self, failed_result):
        packet = failed_result.sampling_packet
        assert packet.entity_distribution == {"patient": 2, "appointment": 1}
        assert packet.required_field_presence["patient"]["lastName"] == 2
        assert "firstName" not in packet.required_field_presence["patient"]
        assert "Smith" not in json.dumps(packet.model_dump(by_alias=True))
