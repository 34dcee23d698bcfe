"""
Contract engine: message contracts and pipeline integrity for the OMOP pipeline.

Validates inter-service messages against per-stage schemas, tracks
correlation ids across asynchronous hops, checks payload invariants and
enforces the status state machine.

Example:
    from omop_contracts.services.contracts import ContractContext

    context = ContractContext.from_settings()
    report = context.check_outbound(message, "preprocessing", upstream=document)
    if not report.accepted:
        ...
"""

from .context import BoundaryAction, BoundaryReport, ContractContext
from .integrity import check_chunks, check_lineage, check_metadata_preserved, check_text_bounds
from .propagator import StatusPropagator, check_sequence, is_allowed, should_process
from .registry import (
    Schema,
    SchemaRegistry,
    coerce_stage,
    get_schema_registry,
    schema_for,
)
from .tracker import CorrelationRecord, CorrelationTracker, StageVisit, TrackingOutcome
from .validator import validate

__all__ = [
    "BoundaryAction",
    "BoundaryReport",
    "ContractContext",
    "CorrelationRecord",
    "CorrelationTracker",
    "Schema",
    "SchemaRegistry",
    "StageVisit",
    "StatusPropagator",
    "TrackingOutcome",
    "check_chunks",
    "check_lineage",
    "check_metadata_preserved",
    "check_sequence",
    "check_text_bounds",
    "coerce_stage",
    "get_schema_registry",
    "is_allowed",
    "schema_for",
    "should_process",
    "validate",
]
