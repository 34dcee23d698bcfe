"""
Schema registry for pipeline stage messages.

Holds one JSON Schema (draft 2020-12) document per stage output plus the
intake document schema. Status-dependent rules are expressed in the
documents themselves with ``if``/``then``/``else``: payload fields are only
required once a stage completed, failed messages must carry
``metadata.error``, and a completed stage must not publish empty content.

Example:
    from omop_contracts.services.contracts import get_schema_registry

    registry = get_schema_registry()
    schema = registry.schema_for("chunking")
    schema.property("chunk_count")  # {"type": "integer"}
    errors = list(schema.validator.iter_errors(message))
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from functools import cached_property, lru_cache
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator

from omop_contracts.exceptions import UnknownStageError
from omop_contracts.models import MatchType, MessageStatus, OmopDomain, PipelineStage
from omop_contracts.settings import SchemaVersion, settings

if TYPE_CHECKING:
    from collections.abc import Mapping

INTAKE = "intake"

JSON_SCHEMA_DIALECT = "https://json-schema.org/draft/2020-12/schema"


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


DOMAIN_VALUES = _values(OmopDomain)
MATCH_TYPE_VALUES = _values(MatchType)
STATUS_VALUES: Mapping[SchemaVersion, list[str]] = MappingProxyType(
    {
        SchemaVersion.V1: [MessageStatus.completed.value, MessageStatus.failed.value],
        SchemaVersion.V2: _values(MessageStatus),
    }
)

# Statuses for which the stage payload is not (yet, or ever) present
PAYLOAD_OPTIONAL_STATUSES = [
    MessageStatus.pending.value,
    MessageStatus.processing.value,
    MessageStatus.failed.value,
]

NON_BLANK = {"type": "string", "pattern": r"\S"}
OPTIONAL_STRING = {"type": ["string", "null"]}


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "required": required, "properties": properties}


def _array_of(item: dict[str, Any]) -> dict[str, Any]:
    return {"type": "array", "items": item}


def _when_status(
    statuses: list[str],
    then: dict[str, Any] | None = None,
    otherwise: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """``if`` the message declares one of ``statuses``, apply ``then``, else ``otherwise``."""
    rule: dict[str, Any] = {
        "if": {"required": ["status"], "properties": {"status": {"enum": statuses}}}
    }
    if then is not None:
        rule["then"] = then
    if otherwise is not None:
        rule["else"] = otherwise
    return rule


CHUNK_SCHEMA = _object(
    {
        "chunk_id": NON_BLANK,
        "text": {"type": "string"},
        "start_pos": {"type": "integer"},
        "end_pos": {"type": "integer"},
        "word_count": {"type": "integer"},
        "char_count": {"type": "integer"},
    },
    required=["chunk_id", "text", "start_pos", "end_pos", "word_count", "char_count"],
)

EXTRACTED_TERM_SCHEMA = _object(
    {
        "term": NON_BLANK,
        "domain": {"type": "string", "enum": DOMAIN_VALUES},
        "entity_id": NON_BLANK,
    },
    required=["term", "domain", "entity_id"],
)

CONCEPT_REFERENCE_SCHEMA = _object(
    {
        "concept_id": {"type": "integer"},
        "concept_name": {"type": "string"},
        "vocabulary_id": NON_BLANK,
        "concept_code": OPTIONAL_STRING,
        "score": {"type": ["number", "null"]},
    },
    required=["concept_id", "concept_name", "vocabulary_id"],
)

STANDARDIZED_TERM_SCHEMA = _object(
    {
        "original_term": NON_BLANK,
        "domain": {"type": "string", "enum": DOMAIN_VALUES},
        "entity_id": NON_BLANK,
        "match_type": {"type": "string", "enum": MATCH_TYPE_VALUES},
        # An empty list is the valid outcome of a no_match
        "matches": _array_of(CONCEPT_REFERENCE_SCHEMA),
    },
    required=["original_term", "domain", "entity_id", "match_type", "matches"],
)

ERROR_SCHEMA = _object(
    {"kind": NON_BLANK, "description": NON_BLANK},
    required=["kind", "description"],
)

METADATA_SCHEMA = _object(
    {
        "patient_id": {"type": "string", "minLength": 1},
        "document_id": {"type": "string", "minLength": 1},
        "error": ERROR_SCHEMA,
    },
    required=["patient_id", "document_id"],
)

ENVELOPE_REQUIRED = ["message_id", "timestamp", "correlation_id", "status", "metadata"]


def _envelope(version: SchemaVersion) -> dict[str, Any]:
    return {
        "message_id": NON_BLANK,
        "timestamp": NON_BLANK,
        "correlation_id": NON_BLANK,
        "status": {"type": "string", "enum": STATUS_VALUES[version]},
        "metadata": METADATA_SCHEMA,
        "parent_message_id": OPTIONAL_STRING,
    }


def _non_empty(definition: Mapping[str, Any]) -> dict[str, Any]:
    if definition.get("type") == "array":
        return {"minItems": 1}
    return {"pattern": r"\S"}


def _document(
    name: str,
    version: SchemaVersion,
    payload: dict[str, dict[str, Any]],
    *,
    content_field: str | None,
    content_may_be_empty: bool,
    payload_always_required: bool = False,
) -> dict[str, Any]:
    properties = {**_envelope(version), **payload}
    required = list(ENVELOPE_REQUIRED)
    rules: list[dict[str, Any]] = []

    if payload_always_required:
        required.extend(payload)
    else:
        rules.append(
            _when_status(PAYLOAD_OPTIONAL_STATUSES, otherwise={"required": list(payload)})
        )

    rules.append(
        _when_status(
            [MessageStatus.failed.value],
            {"properties": {"metadata": {"required": ["error"]}}},
        )
    )

    if content_field is not None and not content_may_be_empty:
        rules.append(
            _when_status(
                [MessageStatus.completed.value],
                {"properties": {content_field: _non_empty(payload[content_field])}},
            )
        )

    return {
        "$schema": JSON_SCHEMA_DIALECT,
        "title": name,
        "type": "object",
        "required": required,
        "properties": properties,
        "allOf": rules,
    }


@dataclass(frozen=True)
class Schema:
    """A stage message schema: a JSON Schema document plus its content rule.

    Attributes:
        name: Stage name (or ``intake``)
        document: JSON Schema (draft 2020-12) document
        payload_fields: Stage payload fields, only required once the stage completed
        content_field: Principal payload field that must be non-empty once completed
        content_may_be_empty: Whether an empty principal field is a valid outcome
        version: Schema revision this schema belongs to
    """

    name: str
    document: Mapping[str, Any] = field(repr=False)
    payload_fields: tuple[str, ...] = ()
    content_field: str | None = None
    content_may_be_empty: bool = False
    version: SchemaVersion = SchemaVersion.V2

    @property
    def properties(self) -> Mapping[str, Any]:
        return self.document["properties"]

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self.properties)

    @property
    def required(self) -> tuple[str, ...]:
        """Fields a completed message must carry."""
        return (*self.document["required"], *self.payload_fields)

    @property
    def array_fields(self) -> tuple[str, ...]:
        return tuple(
            name
            for name, definition in self.properties.items()
            if definition.get("type") == "array"
        )

    def property(self, name: str) -> Mapping[str, Any] | None:
        return self.properties.get(name)

    @cached_property
    def validator(self) -> Draft202012Validator:
        return Draft202012Validator(self.document)


def _build_stage_schemas(version: SchemaVersion) -> dict[PipelineStage, Schema]:
    def stage_schema(
        stage: PipelineStage,
        payload: dict[str, dict[str, Any]],
        content_field: str,
        content_may_be_empty: bool = False,
    ) -> Schema:
        return Schema(
            name=stage.value,
            document=_document(
                stage.value,
                version,
                payload,
                content_field=content_field,
                content_may_be_empty=content_may_be_empty,
            ),
            payload_fields=tuple(payload),
            content_field=content_field,
            content_may_be_empty=content_may_be_empty,
            version=version,
        )

    return {
        PipelineStage.preprocessing: stage_schema(
            PipelineStage.preprocessing,
            {"preprocessed_text": {"type": "string"}},
            "preprocessed_text",
        ),
        PipelineStage.chunking: stage_schema(
            PipelineStage.chunking,
            {"chunks": _array_of(CHUNK_SCHEMA), "chunk_count": {"type": "integer"}},
            "chunks",
        ),
        PipelineStage.entity_extraction: stage_schema(
            PipelineStage.entity_extraction,
            {"terms": _array_of(EXTRACTED_TERM_SCHEMA)},
            "terms",
            # The legacy revision required at least one term per document
            content_may_be_empty=version is SchemaVersion.V2,
        ),
        PipelineStage.standardization: stage_schema(
            PipelineStage.standardization,
            {"results": _array_of(STANDARDIZED_TERM_SCHEMA)},
            "results",
        ),
    }


def _build_intake_schema(version: SchemaVersion) -> Schema:
    # Documents enter as pending, so intake always uses the four-status domain
    return Schema(
        name=INTAKE,
        document=_document(
            INTAKE,
            SchemaVersion.V2,
            {"raw_text": NON_BLANK},
            content_field=None,
            content_may_be_empty=False,
            payload_always_required=True,
        ),
        content_field="raw_text",
        version=version,
    )


def coerce_stage(stage: PipelineStage | str) -> PipelineStage:
    """Convert a stage name to a PipelineStage.

    Raises:
        UnknownStageError: If the name is not one of the four pipeline stages.
    """
    if isinstance(stage, PipelineStage):
        return stage
    try:
        return PipelineStage(stage)
    except ValueError:
        raise UnknownStageError(stage) from None


class SchemaRegistry:
    """Immutable lookup of message schemas by pipeline stage.

    Args:
        version: Schema revision to serve (default: ``v2``).

    Examples:
        >>> registry = SchemaRegistry()
        >>> registry.schema_for("standardization").content_field
        'results'
    """

    def __init__(self, version: SchemaVersion | str = SchemaVersion.V2):
        self.version = SchemaVersion(version)
        self._schemas: Mapping[PipelineStage, Schema] = MappingProxyType(
            _build_stage_schemas(self.version)
        )
        self._intake = _build_intake_schema(self.version)

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        return tuple(self._schemas)

    def schema_for(self, stage: PipelineStage | str) -> Schema:
        """Get the schema of the message a stage publishes.

        Args:
            stage: Stage name or PipelineStage.

        Returns:
            The stage's output schema.

        Raises:
            UnknownStageError: If the stage does not exist.
        """
        return self._schemas[coerce_stage(stage)]

    def intake_schema(self) -> Schema:
        """Get the schema of a document submitted to preprocessing."""
        return self._intake

    def input_schema_for(self, stage: PipelineStage | str) -> Schema:
        """Get the schema of the message a stage consumes.

        Preprocessing consumes intake documents; every other stage consumes
        the previous stage's output.
        """
        previous = coerce_stage(stage).previous
        if previous is None:
            return self._intake
        return self._schemas[previous]

    def __repr__(self) -> str:
        return f"SchemaRegistry(version='{self.version.value}')"


@lru_cache
def get_schema_registry(version: SchemaVersion | str | None = None) -> SchemaRegistry:
    """Get the process-wide registry for a schema version, with caching.

    Args:
        version: Schema revision, defaults to ``settings.schema_version``.

    Returns:
        Cached SchemaRegistry instance
    """
    return SchemaRegistry(version or settings.schema_version)


def schema_for(stage: PipelineStage | str, version: SchemaVersion | str | None = None) -> Schema:
    """Shortcut for ``get_schema_registry(version).schema_for(stage)``."""
    return get_schema_registry(version).schema_for(stage)
