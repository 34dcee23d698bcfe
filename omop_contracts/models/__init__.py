from .base import STAGE_ORDER, MatchType, MessageStatus, OmopDomain, PipelineStage
from .findings import (
    Finding,
    FindingKind,
    Severity,
    ValidationResult,
    Violation,
    ViolationKind,
)
from .message import (
    Chunk,
    ConceptReference,
    ErrorInfo,
    ExtractedTerm,
    Metadata,
    PipelineMessage,
    StandardizedTerm,
    format_timestamp,
    utc_now,
)

__all__ = [
    "STAGE_ORDER",
    "Chunk",
    "ConceptReference",
    "ErrorInfo",
    "ExtractedTerm",
    "Finding",
    "FindingKind",
    "MatchType",
    "MessageStatus",
    "Metadata",
    "OmopDomain",
    "PipelineMessage",
    "PipelineStage",
    "Severity",
    "StandardizedTerm",
    "ValidationResult",
    "Violation",
    "ViolationKind",
    "format_timestamp",
    "utc_now",
]
