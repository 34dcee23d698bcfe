"""Unit tests for the message validator.

Pure logic tests: every check reports violations as values, never raises.
"""

from datetime import timedelta

import pytest
from conftest import NOW, build_message

from omop_contracts.models import PipelineMessage, ViolationKind
from omop_contracts.models.message import Metadata
from omop_contracts.services.contracts import SchemaRegistry, validate

STAGES = ["preprocessing", "chunking", "entity_extraction", "standardization"]


def check(message, stage, version="v2", **kwargs):
    registry = SchemaRegistry(version)
    kwargs.setdefault("now", NOW)
    return validate(message, registry.schema_for(stage), **kwargs)


def kinds(result):
    return {(v.field, v.kind) for v in result.violations}


# ─── Valid messages ─────────────────────────────────────────────────────────


class TestValidMessages:
    """Well-formed messages produce no violations."""

    @pytest.mark.parametrize("stage", STAGES)
    def test_valid_completed_message(self, stage):
        result = check(build_message(stage), stage)
        assert result.valid, result.violations
        assert result.stage == stage

    def test_preprocessing_example(self):
        """The canonical preprocessing message validates."""
        message = {
            "message_id": "msg-001",
            "timestamp": "2026-03-01T11:59:59.000Z",
            "correlation_id": "corr-001",
            "status": "completed",
            "metadata": {"patient_id": "TEST001", "document_id": "DOC001"},
            "preprocessed_text": "Patient has type 2 diabetes.",
        }
        assert check(message, "preprocessing").valid

    @pytest.mark.parametrize("stage", STAGES)
    def test_serialized_model_validates(self, stage):
        """A decoded and re-encoded message is still valid (no false positives)."""
        wire = PipelineMessage.from_wire(build_message(stage)).to_wire()
        assert check(wire, stage).valid

    def test_unknown_fields_and_metadata_extensions_allowed(self):
        message = build_message(
            "preprocessing",
            model_version="1.4.2",
            metadata={
                "patient_id": "TEST001",
                "document_id": "DOC001",
                "original_length": 58,
                "cleaning": {"removed_headers": 2},
            },
        )
        assert check(message, "preprocessing").valid

    def test_parent_message_id_optional(self):
        assert check(build_message("chunking", parent_message_id="msg-000"), "chunking").valid
        result = check(build_message("chunking", parent_message_id=7), "chunking")
        assert kinds(result) == {("parent_message_id", ViolationKind.wrong_type)}

    @pytest.mark.parametrize("status", ["pending", "processing"])
    def test_payload_optional_before_completion(self, status):
        """An in-flight status message does not carry the stage payload yet."""
        message = build_message("chunking", status=status)
        del message["chunks"]
        del message["chunk_count"]
        assert check(message, "chunking").valid


# ─── Missing fields ─────────────────────────────────────────────────────────


class TestMissingFields:
    """Each missing field is reported at its own path."""

    @pytest.mark.parametrize("stage", STAGES)
    def test_single_missing_field_reported_alone(self, stage):
        """Removing one required field yields exactly one violation at that field."""
        schema = SchemaRegistry("v2").schema_for(stage)
        for name in schema.required:
            message = build_message(stage)
            del message[name]
            result = validate(message, schema, now=NOW)
            assert kinds(result) == {(name, ViolationKind.missing_field)}, name

    def test_missing_preprocessed_text(self):
        message = build_message("preprocessing")
        del message["preprocessed_text"]
        result = check(message, "preprocessing")
        assert not result.valid
        assert result.fields() == {"preprocessed_text"}
        assert "preprocessed_text" in str(result.violations[0])

    def test_missing_metadata_keys(self):
        message = build_message("chunking", metadata={"document_id": "DOC001"})
        result = check(message, "chunking")
        assert kinds(result) == {("metadata.patient_id", ViolationKind.missing_field)}

    def test_empty_metadata_value(self):
        message = build_message("chunking", metadata={"patient_id": "", "document_id": "DOC001"})
        assert kinds(check(message, "chunking")) == {
            ("metadata.patient_id", ViolationKind.empty_value)
        }

    def test_missing_item_field(self):
        message = build_message("entity_extraction")
        del message["terms"][1]["domain"]
        result = check(message, "entity_extraction")
        assert kinds(result) == {("terms[1].domain", ViolationKind.missing_field)}


# ─── Types and enums ────────────────────────────────────────────────────────


class TestTypesAndEnums:
    """Tests for type and enum checks, including nested items."""

    def test_not_a_mapping(self):
        for value in (None, "text", 42, ["a"]):
            result = check(value, "preprocessing")
            assert kinds(result) == {("$", ViolationKind.not_a_mapping)}

    def test_chunk_position_wrong_type(self):
        message = build_message("chunking")
        message["chunks"][0]["start_pos"] = "0"
        result = check(message, "chunking")
        assert kinds(result) == {("chunks[0].start_pos", ViolationKind.wrong_type)}

    def test_bool_is_not_an_integer(self):
        message = build_message("chunking", chunk_count=True)
        assert kinds(check(message, "chunking")) == {("chunk_count", ViolationKind.wrong_type)}

    def test_string_is_not_a_sequence(self):
        message = build_message("entity_extraction", terms="metformin")
        assert kinds(check(message, "entity_extraction")) == {("terms", ViolationKind.wrong_type)}

    def test_non_mapping_item(self):
        message = build_message("entity_extraction")
        message["terms"].append("aspirin")
        assert kinds(check(message, "entity_extraction")) == {
            ("terms[2]", ViolationKind.wrong_type)
        }

    def test_invalid_domain(self):
        message = build_message("entity_extraction")
        message["terms"][0]["domain"] = "Medication"
        result = check(message, "entity_extraction")
        assert kinds(result) == {("terms[0].domain", ViolationKind.invalid_enum)}
        assert "Drug" in result.violations[0].reason

    def test_domain_is_case_sensitive(self):
        message = build_message("entity_extraction")
        message["terms"][0]["domain"] = "drug"
        assert not check(message, "entity_extraction").valid

    def test_invalid_match_type(self):
        message = build_message("standardization")
        message["results"][0]["match_type"] = "fuzzy"
        assert kinds(check(message, "standardization")) == {
            ("results[0].match_type", ViolationKind.invalid_enum)
        }

    def test_concept_score_accepts_int_and_float(self):
        message = build_message("standardization")
        message["results"][0]["matches"][0]["score"] = 1
        assert check(message, "standardization").valid

    def test_invalid_status(self):
        message = build_message("preprocessing", status="done")
        result = check(message, "preprocessing")
        assert ("status", ViolationKind.invalid_enum) in kinds(result)

    def test_v1_rejects_in_flight_statuses(self):
        message = build_message("preprocessing", status="processing")
        result = check(message, "preprocessing", "v1")
        assert ("status", ViolationKind.invalid_enum) in kinds(result)

    def test_all_violations_reported_together(self):
        """Validation never stops at the first problem."""
        message = build_message(
            "chunking",
            correlation_id="",
            chunk_count="2",
            metadata={"patient_id": "TEST001"},
        )
        del message["message_id"]
        message["chunks"][1]["end_pos"] = None
        result = check(message, "chunking")
        assert result.fields() == {
            "message_id",
            "correlation_id",
            "chunk_count",
            "chunks[1].end_pos",
            "metadata.document_id",
        }
        assert len(result.of_kind(ViolationKind.wrong_type)) == 2


# ─── Malformed values ───────────────────────────────────────────────────────


class TestMalformedValues:
    """Containers where strings are expected are reported, never raised."""

    @pytest.mark.parametrize("value", [["completed"], {"state": "completed"}])
    def test_status_container(self, value):
        message = build_message("standardization", status=value)
        result = check(message, "standardization")
        assert kinds(result) == {("status", ViolationKind.wrong_type)}

    @pytest.mark.parametrize("value", [["direct"], {"type": "direct"}])
    def test_match_type_container(self, value):
        message = build_message("standardization")
        message["results"][0]["match_type"] = value
        result = check(message, "standardization")
        assert kinds(result) == {("results[0].match_type", ViolationKind.wrong_type)}

    @pytest.mark.parametrize("value", [["Drug"], {"name": "Drug"}])
    def test_domain_container(self, value):
        message = build_message("entity_extraction")
        message["terms"][0]["domain"] = value
        result = check(message, "entity_extraction")
        assert kinds(result) == {("terms[0].domain", ViolationKind.wrong_type)}

    def test_entity_id_container(self):
        message = build_message("entity_extraction")
        message["terms"][0]["entity_id"] = ["e1"]
        message["terms"][1]["entity_id"] = ["e1"]
        result = check(message, "entity_extraction")
        assert kinds(result) == {
            ("terms[0].entity_id", ViolationKind.wrong_type),
            ("terms[1].entity_id", ViolationKind.wrong_type),
        }

    def test_metadata_container(self):
        result = check(build_message("chunking", metadata=["TEST001"]), "chunking")
        assert kinds(result) == {("metadata", ViolationKind.wrong_type)}

    def test_failed_status_with_error_list(self):
        message = build_message(
            "chunking",
            status="failed",
            metadata={"patient_id": "TEST001", "document_id": "DOC001", "error": ["boom"]},
        )
        result = check(message, "chunking")
        assert kinds(result) == {("metadata.error", ViolationKind.wrong_type)}


# ─── Content rules ──────────────────────────────────────────────────────────


class TestContentRules:
    """Tests for rules beyond field shapes."""

    def test_completed_with_empty_text(self):
        message = build_message("preprocessing", preprocessed_text="   ")
        assert kinds(check(message, "preprocessing")) == {
            ("preprocessed_text", ViolationKind.empty_content)
        }

    def test_completed_with_no_chunks(self):
        message = build_message("chunking", chunks=[], chunk_count=0)
        assert kinds(check(message, "chunking")) == {("chunks", ViolationKind.empty_content)}

    def test_empty_terms_valid_in_v2(self):
        message = build_message("entity_extraction", terms=[])
        assert check(message, "entity_extraction").valid

    def test_empty_terms_invalid_in_v1(self):
        message = build_message("entity_extraction", terms=[])
        assert kinds(check(message, "entity_extraction", "v1")) == {
            ("terms", ViolationKind.empty_content)
        }

    def test_duplicate_entity_ids(self):
        message = build_message("entity_extraction")
        message["terms"][1]["entity_id"] = "e1"
        result = check(message, "entity_extraction")
        assert kinds(result) == {("terms[1].entity_id", ViolationKind.duplicate_entity)}
        assert "terms[0]" in result.violations[0].reason

    def test_no_match_with_matches(self):
        message = build_message("standardization")
        message["results"][0]["match_type"] = "no_match"
        assert kinds(check(message, "standardization")) == {
            ("results[0].matches", ViolationKind.match_inconsistent)
        }

    def test_direct_match_without_matches(self):
        message = build_message("standardization")
        message["results"][0]["matches"] = []
        assert kinds(check(message, "standardization")) == {
            ("results[0].matches", ViolationKind.match_inconsistent)
        }

    def test_failed_requires_error_metadata(self):
        message = build_message("chunking", status="failed")
        del message["chunks"]
        del message["chunk_count"]
        result = check(message, "chunking")
        assert kinds(result) == {("metadata.error", ViolationKind.missing_error)}

    def test_failed_with_error_metadata(self):
        metadata = Metadata(
            patient_id="TEST001",
            document_id="DOC001",
            error={"kind": "model_timeout", "description": "NER model timed out"},
        ).model_dump(exclude_none=True)
        message = build_message("entity_extraction", status="failed", metadata=metadata)
        del message["terms"]
        assert check(message, "entity_extraction").valid

    def test_failed_with_blank_error_description(self):
        message = build_message(
            "entity_extraction",
            status="failed",
            metadata={
                "patient_id": "TEST001",
                "document_id": "DOC001",
                "error": {"kind": "model_timeout", "description": " "},
            },
        )
        assert kinds(check(message, "entity_extraction")) == {
            ("metadata.error.description", ViolationKind.empty_value)
        }


# ─── Timestamps ─────────────────────────────────────────────────────────────


class TestTimestamps:
    """Tests for the UTC ISO-8601 timestamp rules."""

    @pytest.mark.parametrize(
        "timestamp",
        ["2026-03-01T12:00:00Z", "2026-03-01T12:00:00.123Z", "2026-03-01T12:00:00+00:00"],
    )
    def test_utc_timestamps_accepted(self, timestamp):
        assert check(build_message("preprocessing", timestamp=timestamp), "preprocessing").valid

    @pytest.mark.parametrize(
        "timestamp",
        ["yesterday", "2026-03-01T12:00:00", "2026-03-01T13:00:00+01:00"],
    )
    def test_invalid_timestamps(self, timestamp):
        result = check(build_message("preprocessing", timestamp=timestamp), "preprocessing")
        assert kinds(result) == {("timestamp", ViolationKind.invalid_timestamp)}

    def test_future_timestamp(self):
        future = NOW + timedelta(minutes=1)
        message = build_message("preprocessing", timestamp=future.isoformat())
        result = check(message, "preprocessing")
        assert kinds(result) == {("timestamp", ViolationKind.future_timestamp)}

    def test_clock_skew_tolerated(self):
        ahead = NOW + timedelta(seconds=3)
        message = build_message("preprocessing", timestamp=ahead.isoformat())
        assert check(message, "preprocessing").valid
        assert not check(message, "preprocessing", clock_skew=timedelta(0)).valid


# ─── Intake ─────────────────────────────────────────────────────────────────


class TestIntakeSchema:
    """Tests for documents submitted to preprocessing."""

    def test_pending_document_valid(self):
        document = build_message("intake", status="pending")
        assert validate(document, SchemaRegistry().intake_schema(), now=NOW).valid

    def test_raw_text_always_required(self):
        document = build_message("intake", status="pending")
        del document["raw_text"]
        result = validate(document, SchemaRegistry().intake_schema(), now=NOW)
        assert kinds(result) == {("raw_text", ViolationKind.missing_field)}

    def test_blank_raw_text(self):
        document = build_message("intake", status="pending", raw_text="")
        result = validate(document, SchemaRegistry().intake_schema(), now=NOW)
        assert kinds(result) == {("raw_text", ViolationKind.empty_value)}
