"""
Pydantic models for OMOP pipeline messages.

PipelineMessage is the envelope every stage publishes. Stage payloads are
optional fields on the same envelope; which of them must be present is
decided by the stage schema in the contract registry.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .base import MatchType, MessageStatus, OmopDomain


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with millisecond precision.

    Naive datetimes are assumed to already be in UTC.

    Examples:
        >>> format_timestamp(datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=UTC))
        '2026-01-02T03:04:05.678Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_message_id() -> str:
    return str(uuid4())


class ErrorInfo(BaseModel):
    """Failure details attached to ``metadata.error`` of a failed message."""

    kind: str = Field(min_length=1)
    description: str = Field(min_length=1)


class Metadata(BaseModel):
    """Message metadata: a fixed core plus an open extension map.

    Stages may add keys (statistics, lengths, model versions) but must never
    change or remove keys set upstream.
    """

    model_config = ConfigDict(extra="allow")

    patient_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    error: ErrorInfo | None = None

    @property
    def extensions(self) -> dict[str, Any]:
        """Stage-specific keys beyond the fixed core."""
        return dict(self.model_extra or {})


class Chunk(BaseModel):
    """A contiguous span of the preprocessed text."""

    chunk_id: str
    text: str
    start_pos: int = Field(ge=0)
    end_pos: int = Field(ge=0)
    word_count: int = Field(ge=0)
    char_count: int = Field(ge=0)


class ExtractedTerm(BaseModel):
    """A clinical entity found by the extraction stage."""

    term: str = Field(min_length=1)
    domain: OmopDomain
    entity_id: str


class ConceptReference(BaseModel):
    """A candidate OMOP concept for a standardized term."""

    model_config = ConfigDict(extra="allow")

    concept_id: int
    concept_name: str
    vocabulary_id: str
    concept_code: str | None = None
    score: float | None = None


class StandardizedTerm(BaseModel):
    """An extracted term mapped to OMOP standard concepts."""

    original_term: str
    domain: OmopDomain
    entity_id: str
    match_type: MatchType
    matches: list[ConceptReference] = Field(default_factory=list)


class PipelineMessage(BaseModel):
    """Message passed between pipeline stages.

    Carries the correlation context of one document's journey through the
    pipeline, the status of the producing stage, and that stage's payload.

    Args:
        message_id: Identifier of this message, fresh at every stage.
        timestamp: When the message was produced (UTC).
        correlation_id: Identifier shared by every message of one pipeline run.
        status: Status of the producing stage.
        metadata: Patient/document context plus stage statistics.
        parent_message_id: ``message_id`` of the upstream message, if any.
        raw_text: Intake document text (preprocessing input).
        preprocessed_text: Cleaned text (preprocessing output).
        chunks: Ordered chunks (chunking output).
        chunk_count: Declared number of chunks (chunking output).
        terms: Extracted entities (entity extraction output).
        results: Standardized entities (standardization output).
    """

    model_config = ConfigDict(extra="allow")

    message_id: str = Field(default_factory=new_message_id)
    timestamp: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(min_length=1)
    status: MessageStatus = MessageStatus.pending
    metadata: Metadata
    parent_message_id: str | None = None

    raw_text: str | None = None
    preprocessed_text: str | None = None
    chunks: list[Chunk] | None = None
    chunk_count: int | None = None
    terms: list[ExtractedTerm] | None = None
    results: list[StandardizedTerm] | None = None

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return format_timestamp(value)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible dict published on the queue."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "PipelineMessage":
        """Decode a queue payload.

        Raises:
            pydantic.ValidationError: If the payload does not decode, including
                enum values outside their closed domain.
        """
        return cls.model_validate(data)
