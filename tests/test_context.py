"""Tests for ContractContext: the full boundary flow across the four stages."""

from datetime import timedelta

import pytest
from conftest import NOW, PREPROCESSED_TEXT, build_message, stage_payload

from omop_contracts.exceptions import UnknownStageError
from omop_contracts.models import FindingKind, MessageStatus, PipelineMessage, ViolationKind
from omop_contracts.services.contracts import BoundaryAction, ContractContext
from omop_contracts.settings import Settings
from omop_contracts.utils.logger import logger


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def document() -> PipelineMessage:
    return PipelineMessage.from_wire(
        build_message(
            "intake",
            message_id="msg-000",
            status="pending",
            timestamp=NOW - timedelta(seconds=1),
        )
    )


def produce(context, upstream, stage, **payload):
    """Run one stage the way a service would and return the produced message."""
    message = context.propagator.start(context.propagator.derive(upstream))
    return context.propagator.complete(message, **(payload or stage_payload(stage)))


def run_all(context, document):
    """Drive a document through all four stages, returning the reports."""
    reports = []
    upstream = document
    for stage in ("preprocessing", "chunking", "entity_extraction", "standardization"):
        inbound = context.check_inbound(upstream, stage)
        assert inbound.accepted, inbound.violations
        produced = produce(context, upstream, stage)
        reports.append(context.check_outbound(produced, stage, upstream=upstream))
        upstream = produced
    return reports


# ─── Happy path ─────────────────────────────────────────────────────────────


class TestHappyPath:
    """A well-behaved pipeline is forwarded at every boundary."""

    def test_full_pipeline(self, context, document):
        reports = run_all(context, document)
        for report in reports:
            assert report.action is BoundaryAction.forward, (report.violations, report.findings)
            assert report.violations == []
            assert report.findings == []
        assert context.tracker.incomplete() == []
        assert context.tracker.record("corr-001").completed

    def test_inbound_intake(self, context, document):
        report = context.check_inbound(document, "preprocessing")
        assert report.accepted
        assert report.should_process
        assert report.direction == "inbound"
        assert report.tracking is None

    def test_report_identifiers(self, context, document):
        produced = produce(context, document, "preprocessing")
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert report.correlation_id == "corr-001"
        assert report.message_id == produced.message_id
        assert report.status == "completed"
        assert report.log_prefix == f"[correlation=corr-001 message={produced.message_id}] "

    def test_wire_dicts_accepted(self, context, document):
        produced = produce(context, document, "preprocessing")
        report = context.check_outbound(
            produced.to_wire(), "preprocessing", upstream=document.to_wire()
        )
        assert report.accepted

    def test_independent_contexts(self, registry, document, clock):
        """Two pipelines in one process do not share tracking state."""
        first = ContractContext(registry, clock=clock)
        second = ContractContext(registry, clock=clock)
        run_all(first, document)
        assert "corr-001" in first.tracker
        assert "corr-001" not in second.tracker


# ─── Rejections ─────────────────────────────────────────────────────────────


class TestRejections:
    """Contract violations and critical findings reject the message."""

    def test_schema_violation(self, context, document):
        produced = produce(context, document, "preprocessing").to_wire()
        del produced["preprocessed_text"]
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert report.action is BoundaryAction.reject
        assert report.validation.fields() == {"preprocessed_text"}

    def test_metadata_tampering(self, context, document):
        produced = produce(context, document, "preprocessing")
        produced.metadata.patient_id = "test001"
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert report.action is BoundaryAction.reject
        assert [v.kind for v in report.integrity] == [ViolationKind.metadata_changed]

    def test_truncated_text(self, context, document):
        produced = produce(context, document, "preprocessing", preprocessed_text="Patient")
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert [v.kind for v in report.integrity] == [ViolationKind.text_truncated]

    def test_original_length_from_metadata(self, context, document):
        """Without the intake upstream, the recorded original length is used."""
        produced = produce(context, document, "preprocessing")
        produced.metadata.original_length = 500
        report = context.check_outbound(produced, "preprocessing")
        assert [v.kind for v in report.integrity] == [ViolationKind.text_truncated]

    def test_overlapping_chunks(self, context, document):
        prep = produce(context, document, "preprocessing")
        context.check_outbound(prep, "preprocessing", upstream=document)
        payload = stage_payload("chunking")
        payload["chunks"][1].update(start_pos=20, char_count=len(PREPROCESSED_TEXT) - 20)
        chunked = produce(context, prep, "chunking", **payload)
        report = context.check_outbound(chunked, "chunking", upstream=prep)
        assert report.action is BoundaryAction.reject
        assert [v.kind for v in report.integrity] == [ViolationKind.chunk_overlap]

    def test_chunk_count_mismatch(self, context, document):
        prep = produce(context, document, "preprocessing")
        chunked = produce(
            context, prep, "chunking", **{**stage_payload("chunking"), "chunk_count": 3}
        )
        report = context.check_outbound(chunked, "chunking", upstream=prep)
        assert ViolationKind.count_mismatch in [v.kind for v in report.integrity]

    def test_correlation_drift(self, context, document):
        produced = produce(context, document, "preprocessing").model_copy(
            update={"correlation_id": "corr-XYZ"}
        )
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert report.action is BoundaryAction.reject
        assert [f.kind for f in report.findings] == [FindingKind.correlation_drift]
        assert [v.kind for v in report.integrity] == [ViolationKind.correlation_changed]

    def test_not_a_mapping(self, context):
        report = context.check_outbound("garbage", "chunking")
        assert report.action is BoundaryAction.reject
        assert report.tracking is None
        assert report.correlation_id is None

    def test_invalid_inbound(self, context):
        report = context.check_inbound({"status": "completed"}, "chunking")
        assert not report.accepted
        assert not report.should_process

    def test_unfinished_upstream_inbound(self, context, document):
        started = context.propagator.start(context.propagator.derive(document))
        report = context.check_inbound(started, "chunking")
        assert [v.kind for v in report.violations] == [ViolationKind.upstream_unfinished]
        assert report.action is BoundaryAction.reject
        assert not report.should_process

    def test_pending_intake_inbound(self, context, document):
        report = context.check_inbound(document, "preprocessing")
        assert report.accepted
        assert report.should_process

    def test_unknown_stage(self, context, document):
        with pytest.raises(UnknownStageError):
            context.check_inbound(document, "ocr")


# ─── Warnings ───────────────────────────────────────────────────────────────


class TestNonCriticalFindings:
    """Non-critical findings are logged but do not stop the message."""

    def test_stage_skip_forwarded_and_logged(self, context, log_messages):
        message = build_message("entity_extraction", message_id="msg-003")
        report = context.check_outbound(message, "entity_extraction")
        assert report.action is BoundaryAction.forward
        assert [f.kind for f in report.findings] == [FindingKind.stage_skip]
        assert any(
            "[correlation=corr-001 message=msg-003]" in m and "stage_skip" in m
            for m in log_messages
        )

    def test_duplicate_processing(self, context, document):
        produced = produce(context, document, "preprocessing")
        context.check_outbound(produced, "preprocessing", upstream=document)
        again = produce(context, document, "preprocessing")
        report = context.check_outbound(again, "preprocessing", upstream=document)
        assert [f.kind for f in report.findings] == [FindingKind.duplicate_processing]

    def test_redelivery_is_idempotent(self, context, document):
        produced = produce(context, document, "preprocessing")
        context.check_outbound(produced, "preprocessing", upstream=document)
        report = context.check_outbound(produced, "preprocessing", upstream=document)
        assert report.tracking.repeated
        assert report.accepted


# ─── Status rules ───────────────────────────────────────────────────────────


class TestStatusRules:
    """Illegal transitions are quarantined; failures pass through."""

    def test_reprocessing_quarantined(self, context, document, log_messages):
        produced = produce(context, document, "preprocessing")
        reprocessed = produced.model_copy(update={"status": MessageStatus.processing})
        report = context.check_outbound(
            reprocessed, "preprocessing", upstream=document, previous_status="completed"
        )
        assert report.action is BoundaryAction.quarantine
        assert report.transition_error.current == "completed"
        assert report.transition_error.target == "processing"
        assert any("illegal status transition" in m for m in log_messages)

    def test_status_moving_backward_is_quarantined(self, context, document):
        """Without an explicit previous status, the tracker's last status is used."""
        produced = produce(context, document, "preprocessing")
        assert context.check_outbound(produced, "preprocessing", upstream=document).accepted

        reprocessed = produced.model_copy(update={"status": MessageStatus.processing})
        report = context.check_outbound(reprocessed, "preprocessing", upstream=document)
        assert report.action is BoundaryAction.quarantine
        assert [f.kind for f in report.findings] == [FindingKind.duplicate_processing]

    def test_legal_previous_status(self, context, document):
        produced = produce(context, document, "preprocessing")
        report = context.check_outbound(
            produced, "preprocessing", upstream=document, previous_status="processing"
        )
        assert report.transition_error is None
        assert report.accepted

    def test_failure_passes_through(self, context, document):
        prep = context.propagator.start(context.propagator.derive(document))
        failed = context.propagator.fail(prep, "cleaner_crash", "Encoding error in source")
        report = context.check_outbound(failed, "preprocessing", upstream=document)
        assert report.accepted

        inbound = context.check_inbound(failed, "chunking")
        assert inbound.accepted
        assert not inbound.should_process

        forwarded, report = context.pass_through(failed, "chunking")
        assert report.accepted, report.violations
        assert forwarded.status.value == "failed"
        assert forwarded.parent_message_id == failed.message_id
        assert forwarded.metadata.error.kind == "cleaner_crash"

    def test_failed_without_error_rejected(self, context, document):
        prep = context.propagator.start(context.propagator.derive(document))
        broken = prep.model_copy(update={"status": MessageStatus.failed})
        report = context.check_outbound(broken, "preprocessing", upstream=document)
        assert report.action is BoundaryAction.reject
        assert report.validation.of_kind(ViolationKind.missing_error)


# ─── Stuck runs and settings ────────────────────────────────────────────────


class TestStuckAndSettings:
    """Tests for stuck detection through the context and settings wiring."""

    def test_find_stuck(self, context, clock, log_messages):
        message = build_message("preprocessing", status="processing")
        del message["preprocessed_text"]
        context.check_outbound(message, "preprocessing")
        clock.advance(minutes=10)
        stuck = context.find_stuck()
        assert [f.kind for f in stuck] == [FindingKind.stuck_pipeline]
        assert any("stuck_pipeline" in m for m in log_messages)

    def test_from_settings(self, clock):
        config = Settings(
            schema_version="v1",
            stuck_timeout_seconds=60,
            text_length_tolerance=0.1,
            chunk_max_gap=4,
        )
        context = ContractContext.from_settings(config, clock=clock)
        assert context.registry.version.value == "v1"
        assert context.tracker.stuck_timeout == timedelta(seconds=60)
        assert context.text_tolerance == 0.1
        assert context.chunk_max_gap == 4
        assert context.clock is clock
