"""
Contract context: the engine as seen from one service boundary.

ContractContext bundles an explicitly owned registry, tracker and propagator
and runs the full boundary flow in one call:

    validate -> observe -> integrity checks -> status rules -> log

Several contexts can coexist (one per simulated pipeline in tests); nothing
here relies on module-level mutable state.

Example:
    context = ContractContext.from_settings()
    report = context.check_outbound(message, "chunking", upstream=consumed)
    if report.action is BoundaryAction.quarantine:
        ...
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from omop_contracts.exceptions import IllegalTransitionError
from omop_contracts.models import (
    Finding,
    MessageStatus,
    PipelineMessage,
    PipelineStage,
    Severity,
    ValidationResult,
    Violation,
    ViolationKind,
)
from omop_contracts.settings import Settings, settings as default_settings
from omop_contracts.utils.logger import logger

from .integrity import check_chunks, check_lineage, check_metadata_preserved, check_text_bounds
from .propagator import StatusPropagator, is_allowed
from .registry import SchemaRegistry, coerce_stage, get_schema_registry
from .tracker import CorrelationTracker, TrackingOutcome
from .validator import validate

if TYPE_CHECKING:
    from omop_contracts.types import Clock, WireMessage

# Upstream statuses a downstream stage must not consume
_UNFINISHED_STATUSES = frozenset({MessageStatus.pending.value, MessageStatus.processing.value})


class BoundaryAction(str, enum.Enum):
    """What the messaging collaborator should do with a checked message."""

    forward = "forward"
    reject = "reject"
    quarantine = "quarantine"


@dataclass
class BoundaryReport:
    """Everything the engine found about one message at one boundary.

    Attributes:
        stage: Stage whose boundary was checked
        direction: ``inbound`` or ``outbound``
        correlation_id: Correlation id of the message, if readable
        message_id: Message id, if readable
        status: Status of the message, if readable
        validation: Schema validation result
        tracking: Correlation tracking outcome (outbound only)
        integrity: Content integrity violations
        transition_error: Illegal status transition, if one was detected
    """

    stage: PipelineStage
    direction: str
    correlation_id: str | None
    message_id: str | None
    status: str | None
    validation: ValidationResult
    tracking: TrackingOutcome | None = None
    integrity: list[Violation] = field(default_factory=list)
    transition_error: IllegalTransitionError | None = None

    @property
    def violations(self) -> list[Violation]:
        return [*self.validation.violations, *self.integrity]

    @property
    def findings(self) -> list[Finding]:
        return list(self.tracking.findings) if self.tracking else []

    @property
    def action(self) -> BoundaryAction:
        if self.transition_error is not None:
            return BoundaryAction.quarantine
        if self.violations or any(f.severity is Severity.critical for f in self.findings):
            return BoundaryAction.reject
        return BoundaryAction.forward

    @property
    def accepted(self) -> bool:
        return self.action is BoundaryAction.forward

    @property
    def should_process(self) -> bool:
        """Whether the consuming stage should run on the payload (inbound)."""
        return self.accepted and self.status != MessageStatus.failed.value

    @property
    def log_prefix(self) -> str:
        return f"[correlation={self.correlation_id} message={self.message_id}] "


def _as_wire(message: PipelineMessage | WireMessage | Any) -> Any:
    if isinstance(message, PipelineMessage):
        return message.to_wire()
    return message


def _text(message: Mapping[str, Any], name: str) -> str | None:
    value = message.get(name)
    return value if isinstance(value, str) else None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


class ContractContext:
    """Registry, tracker and propagator owned by one pipeline instance.

    Args:
        registry: Schema registry (default: cached registry for the configured version).
        tracker: Correlation tracker (default: a fresh tracker).
        propagator: Status propagator (default: a fresh propagator).
        text_tolerance: Allowed relative length change during preprocessing.
        chunk_max_gap: Largest tolerated gap between adjacent chunks.
        chunk_max_overlap: Largest tolerated overlap between adjacent chunks.
        clock_skew: Tolerance for producer timestamps slightly in the future.
        clock: Time source for validation and tracking.
    """

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        tracker: CorrelationTracker | None = None,
        propagator: StatusPropagator | None = None,
        *,
        text_tolerance: float | None = None,
        chunk_max_gap: int | None = None,
        chunk_max_overlap: int | None = None,
        clock_skew: timedelta | None = None,
        clock: Clock | None = None,
    ):
        self.registry = registry or get_schema_registry()
        self.tracker = tracker or CorrelationTracker(clock=clock)
        self.propagator = propagator or StatusPropagator(clock=clock)
        self.clock = clock or self.tracker.clock
        self.text_tolerance = (
            default_settings.text_length_tolerance if text_tolerance is None else text_tolerance
        )
        self.chunk_max_gap = (
            default_settings.chunk_max_gap if chunk_max_gap is None else chunk_max_gap
        )
        self.chunk_max_overlap = (
            default_settings.chunk_max_overlap if chunk_max_overlap is None else chunk_max_overlap
        )
        self.clock_skew = clock_skew or timedelta(seconds=default_settings.clock_skew_seconds)

    @classmethod
    def from_settings(
        cls, config: Settings | None = None, clock: Clock | None = None
    ) -> ContractContext:
        """Build a context from application settings.

        Args:
            config: Settings to use (default: the global settings).
            clock: Optional time source.

        Returns:
            A new ContractContext with its own tracker.
        """
        config = config or default_settings
        return cls(
            registry=SchemaRegistry(config.schema_version),
            tracker=CorrelationTracker(
                stuck_timeout=timedelta(seconds=config.stuck_timeout_seconds), clock=clock
            ),
            text_tolerance=config.text_length_tolerance,
            chunk_max_gap=config.chunk_max_gap,
            chunk_max_overlap=config.chunk_max_overlap,
            clock_skew=timedelta(seconds=config.clock_skew_seconds),
            clock=clock,
        )

    def check_inbound(
        self, message: PipelineMessage | WireMessage | Any, stage: PipelineStage | str
    ) -> BoundaryReport:
        """Validate a message a stage is about to consume.

        Every stage but preprocessing also rejects messages its upstream stage
        has not finished (still ``pending`` or ``processing``).

        Args:
            message: Consumed message (model or decoded JSON).
            stage: Consuming stage.

        Returns:
            BoundaryReport; ``should_process`` tells whether to run the stage.
        """
        stage = coerce_stage(stage)
        wire = _as_wire(message)
        schema = self.registry.input_schema_for(stage)
        report = self._new_report(
            wire,
            stage,
            "inbound",
            validate(wire, schema, now=self.clock(), clock_skew=self.clock_skew),
        )
        if stage.previous is not None and report.status in _UNFINISHED_STATUSES:
            report.integrity.append(
                Violation(
                    field="status",
                    kind=ViolationKind.upstream_unfinished,
                    reason=f"consumed message is still '{report.status}'; "
                    f"'{stage.value}' only consumes finished '{stage.previous.value}' output",
                )
            )
        self._log(report)
        return report

    def check_outbound(
        self,
        message: PipelineMessage | WireMessage | Any,
        stage: PipelineStage | str,
        *,
        upstream: PipelineMessage | WireMessage | None = None,
        previous_status: MessageStatus | str | None = None,
    ) -> BoundaryReport:
        """Run the full boundary flow on a message a stage is about to publish.

        Args:
            message: Produced message (model or decoded JSON).
            stage: Producing stage.
            upstream: The message the stage consumed, for lineage, metadata
                preservation and length checks.
            previous_status: Status this message had before, to enforce the
                status state machine (default: the status the tracker last
                saw for this message id at this stage).

        Returns:
            BoundaryReport with every violation and finding.
        """
        stage = coerce_stage(stage)
        wire = _as_wire(message)
        up = _as_wire(upstream) if upstream is not None else None
        schema = self.registry.schema_for(stage)

        report = self._new_report(
            wire,
            stage,
            "outbound",
            validate(wire, schema, now=self.clock(), clock_skew=self.clock_skew),
        )
        if not isinstance(wire, Mapping):
            self._log(report)
            return report

        if previous_status is None:
            previous_status = self._known_status(report, stage)

        report.tracking = self._observe(wire, stage, up)
        report.integrity = self._check_integrity(wire, stage, up)

        if (
            previous_status is not None
            and report.status is not None
            and not is_allowed(previous_status, report.status)
        ):
            current = (
                previous_status.value
                if isinstance(previous_status, MessageStatus)
                else str(previous_status)
            )
            report.transition_error = IllegalTransitionError(
                current, report.status, report.message_id
            )

        self._log(report)
        return report

    def pass_through(
        self, message: PipelineMessage, stage: PipelineStage | str
    ) -> tuple[PipelineMessage, BoundaryReport]:
        """Forward a failed message through a stage without processing it.

        Args:
            message: Failed message consumed by the stage.
            stage: Stage passing the message on.

        Returns:
            The forwarded message and the outbound report for it.
        """
        forwarded = self.propagator.forward(message)
        logger.info(
            f"[correlation={message.correlation_id} message={forwarded.message_id}] "
            f"Passing failed message through '{coerce_stage(stage).value}' "
            f"(error: {message.metadata.error.kind if message.metadata.error else 'unknown'})"
        )
        return forwarded, self.check_outbound(forwarded, stage, upstream=message)

    def find_stuck(self, now: datetime | None = None) -> list[Finding]:
        """Report stuck runs and log each of them."""
        findings = self.tracker.find_stuck(now)
        for finding in findings:
            logger.warning(
                f"[correlation={finding.correlation_id} message={finding.message_id}] {finding}"
            )
        return findings

    @staticmethod
    def _new_report(
        wire: Any, stage: PipelineStage, direction: str, validation: ValidationResult
    ) -> BoundaryReport:
        mapping = wire if isinstance(wire, Mapping) else {}
        return BoundaryReport(
            stage=stage,
            direction=direction,
            correlation_id=_text(mapping, "correlation_id"),
            message_id=_text(mapping, "message_id"),
            status=_text(mapping, "status"),
            validation=validation,
        )

    def _known_status(self, report: BoundaryReport, stage: PipelineStage) -> MessageStatus | None:
        """Status this message last had at the stage, unless this is a plain redelivery."""
        if not report.correlation_id or not report.message_id:
            return None
        known = self.tracker.last_status(report.correlation_id, stage, report.message_id)
        if known is None or known.value == report.status:
            return None
        return known

    def _observe(
        self, wire: Mapping[str, Any], stage: PipelineStage, upstream: Any
    ) -> TrackingOutcome | None:
        correlation_id = _text(wire, "correlation_id")
        message_id = _text(wire, "message_id")
        status = _text(wire, "status")
        if not correlation_id or not message_id or status not in {s.value for s in MessageStatus}:
            # Unattributable; the validation result already says why
            return None

        expected = _text(upstream, "correlation_id") if isinstance(upstream, Mapping) else None
        return self.tracker.observe(
            correlation_id,
            stage,
            message_id,
            status,
            _parse_timestamp(wire.get("timestamp")),
            expected_correlation_id=expected,
        )

    def _check_integrity(
        self, wire: Mapping[str, Any], stage: PipelineStage, upstream: Any
    ) -> list[Violation]:
        violations: list[Violation] = []
        completed = wire.get("status") == MessageStatus.completed.value

        if isinstance(upstream, Mapping):
            violations.extend(check_lineage(upstream, wire))
            if isinstance(upstream.get("metadata"), Mapping):
                violations.extend(
                    check_metadata_preserved(upstream["metadata"], wire.get("metadata"))
                )

        if stage is PipelineStage.preprocessing and completed:
            cleaned = _text(wire, "preprocessed_text")
            original = self._original_length(wire, upstream)
            if cleaned is not None and original is not None:
                violations.extend(check_text_bounds(original, len(cleaned), self.text_tolerance))

        if stage is PipelineStage.chunking and completed:
            chunks = wire.get("chunks")
            if isinstance(chunks, list):
                chunk_count = wire.get("chunk_count")
                source = (
                    _text(upstream, "preprocessed_text") if isinstance(upstream, Mapping) else None
                )
                violations.extend(
                    check_chunks(
                        chunks,
                        chunk_count=chunk_count if isinstance(chunk_count, int) else None,
                        text_length=len(source) if source is not None else None,
                        max_gap=self.chunk_max_gap,
                        max_overlap=self.chunk_max_overlap,
                    )
                )

        return violations

    @staticmethod
    def _original_length(wire: Mapping[str, Any], upstream: Any) -> int | None:
        if isinstance(upstream, Mapping):
            raw = _text(upstream, "raw_text")
            if raw is not None:
                return len(raw)
        metadata = wire.get("metadata")
        if isinstance(metadata, Mapping):
            value = metadata.get("original_length")
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        return None

    @staticmethod
    def _log(report: BoundaryReport) -> None:
        prefix = report.log_prefix
        where = f"{report.stage.value} {report.direction}"

        for violation in report.violations:
            logger.warning(f"{prefix}{where} contract violation: {violation}")
        for finding in report.findings:
            if finding.severity is Severity.critical:
                logger.error(f"{prefix}{where} integrity finding: {finding}")
            else:
                logger.warning(f"{prefix}{where} integrity finding: {finding}")
        if report.transition_error is not None:
            logger.error(f"{prefix}{where} {report.transition_error}")

        logger.debug(f"{prefix}{where} -> {report.action.value}")
