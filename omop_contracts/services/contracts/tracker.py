"""
Correlation tracking across asynchronous pipeline hops.

The CorrelationTracker keeps one append-only CorrelationRecord per
correlation id and reports integrity findings (drift, duplicates, stage
skips, out-of-order arrival, stuck runs) as values. It is the only
component of the engine with shared mutable state: observations for the
same correlation id are serialized, observations for different ids never
block each other.

Example:
    tracker = CorrelationTracker(stuck_timeout=timedelta(minutes=5))
    outcome = tracker.observe("corr-001", "preprocessing", "msg-001", "completed", now)
    if not outcome.clean:
        for finding in outcome.findings:
            logger.warning(str(finding))
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from omop_contracts.models import STAGE_ORDER, Finding, FindingKind, MessageStatus, PipelineStage
from omop_contracts.settings import settings

from .registry import coerce_stage

if TYPE_CHECKING:
    from omop_contracts.types import Clock


def _utc_clock() -> datetime:
    return datetime.now(UTC)


@dataclass
class StageVisit:
    """What the tracker knows about one stage of one pipeline run.

    Attributes:
        stage: Pipeline stage
        arrived_at: Timestamp of the first observation at this stage
        last_seen_at: Timestamp of the latest observation at this stage
        status: Latest reported status
        terminal_status: First terminal status reported, if any
        first_message_id: First message id seen at this stage
        last_message_id: Latest message id seen at this stage
        statuses: Latest status reported per message id
        reports: Every distinct (message id, status) pair reported
    """

    stage: PipelineStage
    arrived_at: datetime
    last_seen_at: datetime
    status: MessageStatus
    first_message_id: str
    last_message_id: str
    terminal_status: MessageStatus | None = None
    statuses: dict[str, MessageStatus] = field(default_factory=dict)
    reports: set[tuple[str, MessageStatus]] = field(default_factory=set)

    @property
    def is_terminal(self) -> bool:
        return self.terminal_status is not None

    @property
    def message_ids(self) -> set[str]:
        return set(self.statuses)


@dataclass
class CorrelationRecord:
    """Everything observed for one correlation id. Never deleted during a run."""

    correlation_id: str
    first_seen_at: datetime
    last_seen_at: datetime
    stages: dict[PipelineStage, StageVisit] = field(default_factory=dict)

    @property
    def furthest_stage(self) -> PipelineStage | None:
        reached = [stage for stage in STAGE_ORDER if stage in self.stages]
        return reached[-1] if reached else None

    @property
    def completed(self) -> bool:
        """True once the final stage reported a terminal status."""
        final = self.stages.get(STAGE_ORDER[-1])
        return final is not None and final.is_terminal


@dataclass
class TrackingOutcome:
    """Result of one observe() call.

    Attributes:
        correlation_id: Correlation id observed
        stage: Stage observed
        message_id: Message id observed
        findings: Integrity findings raised by this observation
        first_sighting: True if this observation created the record
        repeated: True if this was an exact duplicate report (no state change)
    """

    correlation_id: str
    stage: PipelineStage
    message_id: str
    findings: list[Finding] = field(default_factory=list)
    first_sighting: bool = False
    repeated: bool = False

    @property
    def clean(self) -> bool:
        return not self.findings


class CorrelationTracker:
    """Tracks pipeline runs by correlation id and reports integrity findings.

    Args:
        stuck_timeout: How long a stage may stay in ``processing`` without any
            further observation before the run is reported as stuck.
        clock: Time source used when an observation carries no timestamp and
            for stuck detection (default: current UTC time).
    """

    def __init__(
        self,
        stuck_timeout: timedelta | None = None,
        clock: Clock | None = None,
    ):
        self.stuck_timeout = stuck_timeout or timedelta(seconds=settings.stuck_timeout_seconds)
        self.clock = clock or _utc_clock
        self._records: dict[str, CorrelationRecord] = {}
        # message_id -> (correlation_id, stage) of its first sighting
        self._message_index: dict[str, tuple[str, PipelineStage]] = {}
        self._index_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, correlation_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[correlation_id]

    def observe(
        self,
        correlation_id: str,
        stage: PipelineStage | str,
        message_id: str,
        status: MessageStatus | str,
        timestamp: datetime | None = None,
        *,
        expected_correlation_id: str | None = None,
    ) -> TrackingOutcome:
        """Record that a message reached a stage.

        Args:
            correlation_id: Correlation id carried by the message.
            stage: Stage the message was produced by.
            message_id: Id of the message.
            status: Status reported by the stage.
            timestamp: When the message was produced (default: clock()).
            expected_correlation_id: Correlation id of the upstream message,
                when the caller knows it.

        Returns:
            TrackingOutcome listing the findings this observation raised.

        Raises:
            UnknownStageError: If the stage does not exist.
            ValueError: If the status is not a known status.
        """
        stage = coerce_stage(stage)
        status = MessageStatus(status)
        timestamp = timestamp or self.clock()
        outcome = TrackingOutcome(correlation_id=correlation_id, stage=stage, message_id=message_id)

        def finding(kind: FindingKind, detail: str) -> None:
            outcome.findings.append(
                Finding(
                    kind=kind,
                    correlation_id=correlation_id,
                    stage=stage.value,
                    message_id=message_id,
                    detail=detail,
                )
            )

        if expected_correlation_id is not None and expected_correlation_id != correlation_id:
            finding(
                FindingKind.correlation_drift,
                f"expected correlation id '{expected_correlation_id}', got '{correlation_id}'",
            )

        with self._index_lock:
            first = self._message_index.setdefault(message_id, (correlation_id, stage))
        bound_correlation, bound_stage = first
        if bound_correlation != correlation_id:
            finding(
                FindingKind.correlation_drift,
                f"message '{message_id}' was first seen under correlation id "
                f"'{bound_correlation}'",
            )
        elif bound_stage != stage:
            finding(
                FindingKind.message_id_reused,
                f"message id already used at stage '{bound_stage.value}'",
            )

        with self._lock_for(correlation_id):
            record = self._records.get(correlation_id)
            if record is None:
                record = CorrelationRecord(
                    correlation_id=correlation_id,
                    first_seen_at=timestamp,
                    last_seen_at=timestamp,
                )
                self._records[correlation_id] = record
                outcome.first_sighting = True

            visit = record.stages.get(stage)
            if visit is not None and (message_id, status) in visit.reports:
                outcome.repeated = True
                # Idempotent: identical reports never raise new findings
                outcome.findings = []
                return outcome

            if visit is None:
                self._check_arrival_order(record, stage, finding)
                visit = StageVisit(
                    stage=stage,
                    arrived_at=timestamp,
                    last_seen_at=timestamp,
                    status=status,
                    first_message_id=message_id,
                    last_message_id=message_id,
                )
                record.stages[stage] = visit
            else:
                self._check_duplicate(visit, message_id, status, finding)

            visit.reports.add((message_id, status))
            visit.statuses[message_id] = status
            visit.last_message_id = message_id
            visit.status = status
            visit.last_seen_at = max(visit.last_seen_at, timestamp)
            if status.is_terminal and visit.terminal_status is None:
                visit.terminal_status = status
            record.last_seen_at = max(record.last_seen_at, timestamp)

        return outcome

    @staticmethod
    def _check_arrival_order(record: CorrelationRecord, stage: PipelineStage, finding) -> None:
        previous = stage.previous
        if previous is None:
            return
        upstream = record.stages.get(previous)
        if upstream is None:
            finding(
                FindingKind.stage_skip,
                f"arrived at '{stage.value}' without an observation at '{previous.value}'",
            )
        elif not upstream.is_terminal:
            finding(
                FindingKind.out_of_order,
                f"arrived at '{stage.value}' while '{previous.value}' is still "
                f"'{upstream.status.value}'",
            )

    @staticmethod
    def _check_duplicate(
        visit: StageVisit, message_id: str, status: MessageStatus, finding
    ) -> None:
        if not visit.is_terminal:
            return
        if message_id in visit.statuses:
            finding(
                FindingKind.duplicate_processing,
                f"message reported '{status.value}' after stage already finished "
                f"'{visit.terminal_status.value}'",
            )
        elif status.is_terminal or status == MessageStatus.processing:
            finding(
                FindingKind.duplicate_processing,
                f"second message '{message_id}' processed at '{visit.stage.value}' "
                f"(first: '{visit.first_message_id}')",
            )

    def find_stuck(self, now: datetime | None = None) -> list[Finding]:
        """Report runs whose latest stage sits in ``processing`` past the timeout.

        Args:
            now: Reference time (default: clock()).

        Returns:
            One stuck_pipeline finding per stuck correlation id.
        """
        now = now or self.clock()
        findings: list[Finding] = []
        for correlation_id in list(self._records):
            with self._lock_for(correlation_id):
                record = self._records[correlation_id]
                stage = record.furthest_stage
                if stage is None:
                    continue
                visit = record.stages[stage]
                idle = now - record.last_seen_at
                if visit.status == MessageStatus.processing and idle > self.stuck_timeout:
                    findings.append(
                        Finding(
                            kind=FindingKind.stuck_pipeline,
                            correlation_id=correlation_id,
                            stage=stage.value,
                            message_id=visit.last_message_id,
                            detail=f"'processing' for {idle.total_seconds():.0f}s "
                            f"(timeout {self.stuck_timeout.total_seconds():.0f}s)",
                        )
                    )
        return findings

    def last_status(
        self, correlation_id: str, stage: PipelineStage | str, message_id: str
    ) -> MessageStatus | None:
        """Latest status reported for a message at a stage, if it was seen there."""
        stage = coerce_stage(stage)
        with self._lock_for(correlation_id):
            record = self._records.get(correlation_id)
            visit = record.stages.get(stage) if record is not None else None
            return visit.statuses.get(message_id) if visit is not None else None

    def incomplete(self) -> list[str]:
        """Correlation ids that have not finished the final stage."""
        return [cid for cid, record in list(self._records.items()) if not record.completed]

    def record(self, correlation_id: str) -> CorrelationRecord | None:
        """Get a snapshot copy of the record for a correlation id."""
        with self._lock_for(correlation_id):
            record = self._records.get(correlation_id)
            return copy.deepcopy(record) if record is not None else None

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._records

    def __len__(self) -> int:
        return len(self._records)
