"""
Unit tests for the canonical model: identifiers, transforms, validators and
mapping specs.
"""

import pytest

from medmigrate.canonical.mapping_spec import (
    MappingSpec,
    parse_mapping_spec,
    validate_mapping_spec,
)
from medmigrate.canonical.schema import (
    PROMOTION_ORDER,
    EntityType,
    describe_canonical_schema,
    generate_canonical_id,
    parse_entity_type,
)
from medmigrate.canonical.transforms import (
    ALLOWED_TRANSFORMS,
    TransformContext,
    execute_transform,
    is_allowed_transform,
    normalize_date,
    normalize_phone,
)
from medmigrate.canonical.validators import (
    validate_batch,
    validate_record,
    validate_referential_integrity,
)
from medmigrate.core.config import reload_settings
from medmigrate.core.errors import MappingSpecError, TransformError


# =============================================================================
# Fixtures
# =============================================================================

def _field(source, target, confidence=0.95, **extra):
    mapping = {
        "sourceField": source,
        "targetField": target,
        "confidence": confidence,
        "requiresApproval": confidence < 0.8,
    }
    mapping.update(extra)
    return mapping


@pytest.fixture
def raw_spec():
    """A structurally valid raw spec."""
    return {
        "version": 1,
        "sourceVendor": "acme",
        "entityMappings": [
            {
                "sourceEntity": "patients",
                "targetEntity": "patient",
                "fieldMappings": [
                    _field("id", "sourceRecordId"),
                    _field("first_name", "firstName", transform="trim"),
                    _field("dob", "dateOfBirth", confidence=0.6, transform="normalizeDate"),
                ],
                "enumMaps": {},
            }
        ],
    }


# =============================================================================
# Schema Tests
# =============================================================================

class TestCanonicalIds:
    """Tests for deterministic canonical identifiers."""

    def test_same_input_same_id(self):
        assert generate_canonical_id("acme", "patients", "42") == generate_canonical_id(
            "acme", "patients", "42"
        )

    def test_id_length(self):
        assert len(generate_canonical_id("acme", "patients", "42")) == 24

    def test_different_components_differ(self):
        base = generate_canonical_id("acme", "patients", "42")
        assert generate_canonical_id("other", "patients", "42") != base
        assert generate_canonical_id("acme", "clients", "42") != base
        assert generate_canonical_id("acme", "patients", "43") != base


class TestSchemaDescription:
    """Tests for the canonical schema description."""

    def test_all_entity_types_described(self):
        described = {entry["entityType"] for entry in describe_canonical_schema()}
        assert described == {e.value for e in EntityType}

    def test_patients_promoted_first(self):
        assert PROMOTION_ORDER[0] == EntityType.PATIENT
        assert PROMOTION_ORDER.index(EntityType.APPOINTMENT) < PROMOTION_ORDER.index(EntityType.CHART)

    def test_parse_entity_type(self):
        assert parse_entity_type("invoice") == EntityType.INVOICE
        assert parse_entity_type("invoices") is None


# =============================================================================
# Transform Tests
# =============================================================================

class TestTransforms:
    """Tests for the allowlisted transform engine."""

    def test_allowlist_contents(self):
        assert len(ALLOWED_TRANSFORMS) == 11
        assert "normalizeDate" in ALLOWED_TRANSFORMS
        assert "hashToken" in ALLOWED_TRANSFORMS

    def test_unknown_transform_rejected(self):
        assert not is_allowed_transform("eval")
        with pytest.raises(TransformError, match="eval"):
            execute_transform("eval", "1 + 1")

    def test_allowlist_is_case_sensitive(self):
        assert not is_allowed_transform("normalizedate")
        assert not is_allowed_transform(None)

    def test_normalize_date_formats(self):
        assert normalize_date("1992-06-15") == "1992-06-15"
        assert normalize_date("1992-06-15T08:30:00Z") == "1992-06-15"
        assert normalize_date("6/15/1992") == "1992-06-15"
        assert normalize_date("06-15-92") == "2092-06-15"

    def test_normalize_date_unparseable_unchanged(self):
        assert normalize_date("sometime") == "sometime"
        assert normalize_date("13/45/2020") == "13/45/2020"

    def test_normalize_phone(self):
        assert normalize_phone("(555) 123-4567") == "+15551234567"
        assert normalize_phone("1-555-123-4567") == "+15551234567"
        assert normalize_phone("n/a") == ""

    def test_split_name_components(self):
        assert execute_transform("splitName", "Mary Ann Smith", {"nameComponent": "first"}) == "Mary"
        assert execute_transform("splitName", "Mary Ann Smith", {"nameComponent": "last"}) == "Ann Smith"
        assert execute_transform("splitName", "Cher", {"nameComponent": "last"}) == ""

    def test_map_enum_falls_through(self):
        ctx = TransformContext(enumMap={"B": "booked"})
        assert execute_transform("mapEnum", "B", ctx) == "booked"
        assert execute_transform("mapEnum", "X", ctx) == "X"

    def test_concat_joins_non_empty(self):
        assert execute_transform("concat", ["123 Main", "", "Apt 4"], {"separator": ", "}) == "123 Main, Apt 4"

    def test_default_value_for_missing(self):
        assert execute_transform("defaultValue", None, {"defaultValue": "unknown"}) == "unknown"
        assert execute_transform("defaultValue", "", {"defaultValue": "unknown"}) == "unknown"
        assert execute_transform("defaultValue", "set", {"defaultValue": "unknown"}) == "set"

    def test_hash_token_keyed(self, monkeypatch):
        first = execute_transform("hashToken", "MRN-1")
        assert len(first) == 16
        assert first == execute_transform("hashToken", "MRN-1")

        monkeypatch.setenv("MIGRATION_MASKING_SECRET", "rotated")
        assert execute_transform("hashToken", "MRN-1") == first

        reload_settings()
        assert execute_transform("hashToken", "MRN-1") != first


# =============================================================================
# Validator Tests
# =============================================================================

class TestRecordValidation:
    """Tests for per-entity validators."""

    def test_valid_patient(self):
        result = validate_record(
            "patient",
            {"canonicalId": "p1", "firstName": "A", "lastName": "B", "email": "a@b.co"},
        )
        assert result.valid
        assert result.errors == []

    def test_missing_first_name(self):
        result = validate_record("patient", {"canonicalId": "p1", "firstName": " ", "lastName": "B"})
        assert not result.valid
        assert [(e.code, e.field) for e in result.errors] == [("V001", "firstName")]

    def test_bad_email_is_warning(self):
        result = validate_record(
            "patient",
            {"canonicalId": "p1", "firstName": "A", "lastName": "B", "email": "not-an-email"},
        )
        assert result.valid
        assert result.warnings[0].code == "V003"

    def test_messages_carry_no_values(self):
        result = validate_record(
            "patient",
            {"canonicalId": "p1", "firstName": "Alice", "lastName": "", "email": "alice@bad"},
        )
        for issue in result.errors + result.warnings:
            assert "Alice" not in issue.message
            assert "alice@bad" not in issue.message

    def test_appointment_requires_link_and_provider(self):
        result = validate_record("appointment", {"canonicalId": "a1", "startTime": "2024-01-01"})
        codes = {e.code for e in result.errors}
        assert codes == {"V006", "V007"}

    def test_appointment_bad_start_time(self):
        result = validate_record(
            "appointment",
            {
                "canonicalId": "a1",
                "canonicalPatientId": "p1",
                "providerName": "Dr",
                "startTime": "next tuesday",
            },
        )
        assert [e.code for e in result.errors] == ["V002"]

    def test_invoice_amount(self):
        result = validate_record(
            "invoice",
            {"canonicalId": "i1", "canonicalPatientId": "p1", "total": "-5", "lineItems": [{}]},
        )
        assert [e.code for e in result.errors] == ["V009"]

    def test_unknown_entity(self):
        result = validate_record("spaceship", {"canonicalId": "x"})
        assert result.errors[0].code == "V000"


class TestBatchValidation:
    """Tests for batch aggregation and referential integrity."""

    def test_report_counts(self):
        report = validate_batch(
            [
                ("patient", {"canonicalId": "p1", "firstName": "A", "lastName": "B"}),
                ("patient", {"canonicalId": "p2", "firstName": "", "lastName": "B"}),
                ("patient", {"canonicalId": "p3", "firstName": "A", "lastName": "B", "phone": "12"}),
            ]
        )
        assert report.total_records == 3
        assert report.valid_records == 2
        assert report.invalid_records == 1
        assert report.warning_records == 1
        assert report.errors_by_code == {"V001": 1}
        assert report.errors_by_entity == {"patient": 1}

    def test_duplicate_canonical_id(self):
        record = {"canonicalId": "p1", "firstName": "A", "lastName": "B"}
        report = validate_batch([("patient", record), ("patient", dict(record))])
        assert report.errors_by_code == {"V011": 1}

    def test_orphaned_reference_exactly_one(self):
        issues = validate_referential_integrity(
            [
                ("patient", {"canonicalId": "p1"}),
                ("appointment", {"canonicalId": "a1", "canonicalPatientId": "p1"}),
                ("appointment", {"canonicalId": "a2", "canonicalPatientId": "ghost"}),
            ]
        )
        assert len(issues) == 1
        assert issues[0].code == "V005"
        assert issues[0].field == "canonicalPatientId"
        assert issues[0].canonical_id == "a2"

    def test_appointment_reference(self):
        issues = validate_referential_integrity(
            [
                ("patient", {"canonicalId": "p1"}),
                ("chart", {"canonicalId": "c1", "canonicalPatientId": "p1", "canonicalAppointmentId": "a9"}),
            ]
        )
        assert [(i.code, i.field) for i in issues] == [("V005", "canonicalAppointmentId")]


# =============================================================================
# Mapping Spec Tests
# =============================================================================

class TestMappingSpec:
    """Tests for mapping spec validation and parsing."""

    def test_valid_spec_parses(self, raw_spec):
        spec = parse_mapping_spec(raw_spec)
        assert isinstance(spec, MappingSpec)
        assert spec.source_vendor == "acme"
        assert spec.entity_mappings[0].target_entity == EntityType.PATIENT
        assert spec.low_confidence_count() == 1

    def test_round_trip_contract(self, raw_spec):
        spec = parse_mapping_spec(raw_spec)
        assert parse_mapping_spec(spec.to_json()) == spec
        assert "sourceVendor" in spec.to_json()

    def test_low_confidence_requires_approval(self, raw_spec):
        raw_spec["entityMappings"][0]["fieldMappings"][2]["requiresApproval"] = False
        result = validate_mapping_spec(raw_spec)
        assert not result.valid
        assert result.errors[0]["path"] == "entityMappings[0].fieldMappings[2].requiresApproval"

    def test_disallowed_transform_named_in_error(self, raw_spec):
        raw_spec["entityMappings"][0]["fieldMappings"][1]["transform"] = "runScript"
        with pytest.raises(MappingSpecError, match="runScript") as exc_info:
            parse_mapping_spec(raw_spec)
        assert exc_info.value.errors[0]["path"].endswith(".transform")

    def test_unknown_target_entity(self, raw_spec):
        raw_spec["entityMappings"][0]["targetEntity"] = "patients"
        result = validate_mapping_spec(raw_spec)
        assert result.errors[0]["path"] == "entityMappings[0].targetEntity"

    def test_not_an_object(self):
        assert not validate_mapping_spec([]).valid

    def test_version_must_be_positive(self, raw_spec):
        raw_spec["version"] = 0
        assert not validate_mapping_spec(raw_spec).valid

    def test_enum_map_values_must_be_strings(self, raw_spec):
        raw_spec["entityMappings"][0]["enumMaps"] = {"status": {"a": 1}}

        with pytest.raises(MappingSpecError) as exc_info:
            parse_mapping_spec(raw_spec)

        assert exc_info.value.errors == [
            {"path": "entityMappings[0].enumMaps.status", "message": "enum map values must be strings"}
        ]

    def test_enum_map_must_be_object(self, raw_spec):
        raw_spec["entityMappings"][0]["enumMaps"] = {"status": ["booked"]}
        result = validate_mapping_spec(raw_spec)
        assert result.errors[0]["path"] == "entityMappings[0].enumMaps.status"

    def test_transform_context_contents_checked(self, raw_spec):
        raw_spec["entityMappings"][0]["fieldMappings"][1]["transformContext"] = {
            "enumMap": {"booked": 7},
            "separator": ["-"],
        }

        with pytest.raises(MappingSpecError) as exc_info:
            parse_mapping_spec(raw_spec)

        paths = {e["path"] for e in exc_info.value.errors}
        prefix = "entityMappings[0].fieldMappings[1].transformContext"
        assert paths == {f"{prefix}.enumMap.booked", f"{prefix}.separator"}

    def test_valid_transform_context_accepted(self, raw_spec):
        raw_spec["entityMappings"][0]["fieldMappings"][1]["transformContext"] = {
            "enumMap": {"booked": "scheduled"},
            "defaultValue": "unknown",
        }
        assert validate_mapping_spec(raw_spec).valid

    def test_spec_is_immutable(self, raw_spec):
        spec = parse_mapping_spec(raw_spec)
        with pytest.raises(Exception):
            spec.version = 2

        bumped = spec.with_version(2)
        assert bumped.version == 2
        assert spec.version == 1

    def test_mapping_for(self, raw_spec):
        spec = parse_mapping_spec(raw_spec)
        assert spec.mapping_for("patients") is not None
        assert spec.mapping_for("clients") is None
