"""
Base enumerations for OMOP pipeline messages.

Enum values are part of the wire format and are reproduced verbatim.
"""

import enum


class PipelineStage(str, enum.Enum):
    """Enumeration of pipeline stages, in processing order."""

    preprocessing = "preprocessing"
    chunking = "chunking"
    entity_extraction = "entity_extraction"
    standardization = "standardization"

    @property
    def index(self) -> int:
        """Position of the stage in the pipeline (0-based)."""
        return STAGE_ORDER.index(self)

    @property
    def previous(self) -> "PipelineStage | None":
        """The stage that feeds this one, or None for the first stage."""
        return STAGE_ORDER[self.index - 1] if self.index > 0 else None

    @property
    def next(self) -> "PipelineStage | None":
        """The stage this one feeds, or None for the last stage."""
        return STAGE_ORDER[self.index + 1] if self.index + 1 < len(STAGE_ORDER) else None


STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)


class MessageStatus(str, enum.Enum):
    """Enumeration of possible message status values."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.completed, MessageStatus.failed)


class OmopDomain(str, enum.Enum):
    """OMOP clinical domains an extracted term can belong to."""

    Drug = "Drug"
    Measurement = "Measurement"
    Procedure = "Procedure"
    Condition = "Condition"
    Observation = "Observation"
    Device = "Device"
    Specimen = "Specimen"


class MatchType(str, enum.Enum):
    """How a term was standardized to OMOP concepts."""

    direct = "direct"
    ingredient = "ingredient"
    no_match = "no_match"
