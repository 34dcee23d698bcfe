"""Shared fixtures: a controllable clock and builders for wire messages."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from omop_contracts.models import format_timestamp
from omop_contracts.services.contracts import (
    ContractContext,
    CorrelationTracker,
    SchemaRegistry,
    StatusPropagator,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

PREPROCESSED_TEXT = "Patient on metformin 500mg; HbA1c 7.2% measured today."


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def stage_payload(stage: str) -> dict[str, Any]:
    """A valid completed payload for each stage."""
    if stage == "intake":
        return {"raw_text": " Patient on metformin 500mg; HbA1c 7.2% measured today. "}
    if stage == "preprocessing":
        return {"preprocessed_text": PREPROCESSED_TEXT}
    if stage == "chunking":
        return {
            "chunks": [
                {
                    "chunk_id": "c0",
                    "text": PREPROCESSED_TEXT[:28],
                    "start_pos": 0,
                    "end_pos": 28,
                    "word_count": 4,
                    "char_count": 28,
                },
                {
                    "chunk_id": "c1",
                    "text": PREPROCESSED_TEXT[28:],
                    "start_pos": 28,
                    "end_pos": len(PREPROCESSED_TEXT),
                    "word_count": 4,
                    "char_count": len(PREPROCESSED_TEXT) - 28,
                },
            ],
            "chunk_count": 2,
        }
    if stage == "entity_extraction":
        return {
            "terms": [
                {"term": "metformin", "domain": "Drug", "entity_id": "e1"},
                {"term": "HbA1c", "domain": "Measurement", "entity_id": "e2"},
            ]
        }
    if stage == "standardization":
        return {
            "results": [
                {
                    "original_term": "metformin",
                    "domain": "Drug",
                    "entity_id": "e1",
                    "match_type": "direct",
                    "matches": [
                        {
                            "concept_id": 1503297,
                            "concept_name": "metformin",
                            "vocabulary_id": "RxNorm",
                            "concept_code": "6809",
                            "score": 0.98,
                        }
                    ],
                },
                {
                    "original_term": "HbA1c",
                    "domain": "Measurement",
                    "entity_id": "e2",
                    "match_type": "no_match",
                    "matches": [],
                },
            ]
        }
    raise ValueError(stage)


def build_message(
    stage: str,
    *,
    message_id: str = "msg-001",
    correlation_id: str = "corr-001",
    status: str = "completed",
    timestamp: datetime | str = NOW,
    **overrides: Any,
) -> dict[str, Any]:
    """Build a wire message for ``stage`` (or ``"intake"``) with a valid payload."""
    message: dict[str, Any] = {
        "message_id": message_id,
        "timestamp": timestamp if isinstance(timestamp, str) else format_timestamp(timestamp),
        "correlation_id": correlation_id,
        "status": status,
        "metadata": {"patient_id": "TEST001", "document_id": "DOC001"},
        **stage_payload(stage),
    }
    message.update(overrides)
    return message


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_message() -> Callable[..., dict[str, Any]]:
    return build_message


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry("v2")


@pytest.fixture
def tracker(clock: FakeClock) -> CorrelationTracker:
    return CorrelationTracker(stuck_timeout=timedelta(minutes=5), clock=clock)


@pytest.fixture
def propagator(clock: FakeClock) -> StatusPropagator:
    return StatusPropagator(clock=clock)


@pytest.fixture
def context(
    registry: SchemaRegistry,
    tracker: CorrelationTracker,
    propagator: StatusPropagator,
    clock: FakeClock,
) -> ContractContext:
    return ContractContext(
        registry,
        tracker,
        propagator,
        text_tolerance=0.05,
        chunk_max_gap=2,
        chunk_max_overlap=0,
        clock_skew=timedelta(seconds=5),
        clock=clock,
    )
