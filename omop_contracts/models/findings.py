"""
Result types reported by the contract engine.

Schema and integrity problems are data, not exceptions: every check returns
a list of violations (or findings) so that a single call surfaces every
problem at once.
"""

import enum
from dataclasses import dataclass, field


class ViolationKind(str, enum.Enum):
    """Kinds of schema and content violations."""

    # Schema
    not_a_mapping = "not_a_mapping"
    missing_field = "missing_field"
    wrong_type = "wrong_type"
    invalid_enum = "invalid_enum"
    empty_value = "empty_value"
    missing_error = "missing_error"
    invalid_timestamp = "invalid_timestamp"
    future_timestamp = "future_timestamp"
    empty_content = "empty_content"
    duplicate_entity = "duplicate_entity"
    match_inconsistent = "match_inconsistent"
    count_mismatch = "count_mismatch"

    # Content integrity
    chunk_order = "chunk_order"
    chunk_length = "chunk_length"
    chunk_overlap = "chunk_overlap"
    chunk_gap = "chunk_gap"
    chunk_coverage = "chunk_coverage"
    metadata_missing = "metadata_missing"
    metadata_changed = "metadata_changed"
    text_truncated = "text_truncated"
    text_expanded = "text_expanded"
    correlation_changed = "correlation_changed"
    message_id_reused = "message_id_reused"
    lineage_broken = "lineage_broken"
    upstream_unfinished = "upstream_unfinished"


@dataclass(frozen=True)
class Violation:
    """A single schema or content violation.

    Attributes:
        field: Path of the offending field (e.g. ``chunks[2].start_pos``)
        kind: Violation category
        reason: Human-readable explanation
    """

    field: str
    kind: ViolationKind
    reason: str

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


@dataclass
class ValidationResult:
    """Result of validating one message against a stage schema.

    Attributes:
        stage: Stage whose schema was applied
        violations: Every violation found (empty if valid)
    """

    stage: str
    violations: list[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    def fields(self) -> set[str]:
        """Set of field paths that have at least one violation."""
        return {v.field for v in self.violations}

    def of_kind(self, kind: ViolationKind) -> list[Violation]:
        return [v for v in self.violations if v.kind == kind]


class Severity(str, enum.Enum):
    """How seriously a tracker finding should be treated."""

    critical = "critical"
    error = "error"
    warning = "warning"


class FindingKind(str, enum.Enum):
    """Kinds of correlation tracking findings."""

    correlation_drift = "correlation_drift"
    duplicate_processing = "duplicate_processing"
    stage_skip = "stage_skip"
    out_of_order = "out_of_order"
    stuck_pipeline = "stuck_pipeline"
    message_id_reused = "message_id_reused"


FINDING_SEVERITY: dict[FindingKind, Severity] = {
    FindingKind.correlation_drift: Severity.critical,
    FindingKind.duplicate_processing: Severity.error,
    FindingKind.stage_skip: Severity.error,
    FindingKind.message_id_reused: Severity.error,
    FindingKind.out_of_order: Severity.warning,
    FindingKind.stuck_pipeline: Severity.warning,
}


@dataclass(frozen=True)
class Finding:
    """An integrity finding reported by the correlation tracker.

    Attributes:
        kind: Finding category
        correlation_id: Pipeline run the finding belongs to
        stage: Stage at which the problem was detected
        message_id: Message that triggered the finding, if any
        detail: Human-readable explanation
    """

    kind: FindingKind
    correlation_id: str
    stage: str
    message_id: str | None
    detail: str

    @property
    def severity(self) -> Severity:
        return FINDING_SEVERITY[self.kind]

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.kind.value} at {self.stage}: {self.detail}"
