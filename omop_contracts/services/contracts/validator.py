"""
Message validation against stage schemas.

``validate`` is a pure function: it never raises on malformed input and
never stops at the first problem. Shape rules (presence, types, enums,
non-empty strings, status-dependent payloads) come from the stage's JSON
Schema and are collected with ``iter_errors``; the rules JSON Schema cannot
express (timestamps, entity id uniqueness, match consistency) are checked
here. Every problem is reported as a Violation with its field path.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from omop_contracts.models import MatchType, ValidationResult, Violation
from omop_contracts.models.findings import ViolationKind

from .registry import MATCH_TYPE_VALUES, Schema

if TYPE_CHECKING:
    from jsonschema import ValidationError

    from omop_contracts.types import WireMessage

DEFAULT_CLOCK_SKEW = timedelta(seconds=5)

_KIND_BY_KEYWORD = {
    "type": ViolationKind.wrong_type,
    "enum": ViolationKind.invalid_enum,
    "pattern": ViolationKind.empty_value,
    "minLength": ViolationKind.empty_value,
    "minItems": ViolationKind.empty_value,
}


def _describe(value: Any) -> str:
    return "null" if value is None else type(value).__name__


def field_path(path: Iterable[str | int], name: str | None = None) -> str:
    """Render a JSON path as ``results[0].matches``."""
    rendered = ""
    for part in (*path, name) if name is not None else path:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered += f".{part}" if rendered else part
    return rendered


class _Collector:
    """Accumulates violations for one validate() call."""

    def __init__(self) -> None:
        self.violations: list[Violation] = []
        self._seen: set[tuple[str, ViolationKind]] = set()

    def add(self, field: str, kind: ViolationKind, reason: str) -> None:
        # One JSON Schema "required" failure is raised once per missing name
        if (field, kind) in self._seen:
            return
        self._seen.add((field, kind))
        self.violations.append(Violation(field=field, kind=kind, reason=reason))


def _collect_schema_errors(message: Mapping[str, Any], schema: Schema, out: _Collector) -> None:
    for error in schema.validator.iter_errors(message):
        _report(error, schema, out)


def _report(error: ValidationError, schema: Schema, out: _Collector) -> None:
    keyword = error.validator
    path = tuple(error.absolute_path)

    if keyword == "required":
        instance = error.instance if isinstance(error.instance, Mapping) else {}
        for name in error.validator_value:
            if name in instance:
                continue
            if path == ("metadata",) and name == "error":
                out.add(
                    "metadata.error",
                    ViolationKind.missing_error,
                    "failed message must describe its error (kind and description)",
                )
            else:
                out.add(
                    field_path(path, name),
                    ViolationKind.missing_field,
                    f"required field '{name}' is missing",
                )
        return

    field = field_path(path)
    # Non-required failures under a "then" branch are the completed-content rule
    if "then" in error.schema_path:
        out.add(
            field,
            ViolationKind.empty_content,
            f"completed {schema.name} message has empty '{field}'",
        )
        return

    if keyword == "enum" and not isinstance(error.instance, str):
        # Already reported as a type error
        return

    kind = _KIND_BY_KEYWORD.get(keyword, ViolationKind.wrong_type)
    if kind is ViolationKind.wrong_type:
        expected = error.validator_value
        if isinstance(expected, list):
            expected = " or ".join(expected)
        reason = f"expected {expected}, got {_describe(error.instance)}"
        if keyword != "type":
            reason = error.message
    elif kind is ViolationKind.invalid_enum:
        allowed = ", ".join(sorted(error.validator_value))
        reason = f"{error.instance!r} is not one of: {allowed}"
    else:
        reason = "must not be empty"
    out.add(field, kind, reason)


def _check_items(message: Mapping[str, Any], schema: Schema, out: _Collector) -> None:
    """Entity ids are unique within a list; matches agree with the match type."""
    for name in schema.array_fields:
        items = message.get(name)
        if not isinstance(items, list):
            continue

        seen_entities: dict[str, int] = {}
        for index, item in enumerate(items):
            if not isinstance(item, Mapping):
                continue
            item_path = f"{name}[{index}]"

            entity_id = item.get("entity_id")
            if isinstance(entity_id, str) and entity_id:
                if entity_id in seen_entities:
                    out.add(
                        f"{item_path}.entity_id",
                        ViolationKind.duplicate_entity,
                        f"entity_id '{entity_id}' already used by "
                        f"{name}[{seen_entities[entity_id]}]",
                    )
                else:
                    seen_entities[entity_id] = index

            _check_match_consistency(item, item_path, out)


def _check_match_consistency(item: Mapping[str, Any], item_path: str, out: _Collector) -> None:
    """A standardized term has matches if and only if it is not a no_match."""
    match_type = item.get("match_type")
    matches = item.get("matches")
    if not isinstance(match_type, str) or match_type not in MATCH_TYPE_VALUES:
        return
    if not isinstance(matches, list):
        return

    no_match = match_type == MatchType.no_match.value
    if no_match and len(matches) > 0:
        out.add(
            f"{item_path}.matches",
            ViolationKind.match_inconsistent,
            f"match_type 'no_match' but {len(matches)} matches listed",
        )
    elif not no_match and len(matches) == 0:
        out.add(
            f"{item_path}.matches",
            ViolationKind.match_inconsistent,
            f"match_type '{match_type}' requires at least one match",
        )


def _check_timestamp(
    message: Mapping[str, Any], now: datetime, clock_skew: timedelta, out: _Collector
) -> None:
    value = message.get("timestamp")
    if not isinstance(value, str) or not value.strip():
        return

    try:
        produced_at = datetime.fromisoformat(value)
    except ValueError:
        out.add("timestamp", ViolationKind.invalid_timestamp, f"'{value}' is not ISO-8601")
        return

    offset = produced_at.utcoffset()
    if offset is None:
        out.add("timestamp", ViolationKind.invalid_timestamp, "timestamp has no UTC offset")
        return
    if offset != timedelta(0):
        out.add(
            "timestamp", ViolationKind.invalid_timestamp, f"timestamp offset {offset} is not UTC"
        )
        return

    if produced_at > now + clock_skew:
        out.add(
            "timestamp",
            ViolationKind.future_timestamp,
            f"timestamp {value} is in the future",
        )


def validate(
    message: WireMessage | Any,
    schema: Schema,
    *,
    now: datetime | None = None,
    clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
) -> ValidationResult:
    """Validate a wire message against a stage schema.

    Args:
        message: Decoded JSON message (anything; non-mappings are reported).
        schema: Schema from the registry.
        now: Reference time for the non-future timestamp check.
        clock_skew: Tolerance for producers whose clocks run slightly ahead.

    Returns:
        ValidationResult with every violation found.

    Examples:
        >>> result = validate({"status": "completed"}, schema_for("preprocessing"))
        >>> sorted(result.fields())[:2]
        ['correlation_id', 'message_id']
    """
    out = _Collector()

    if not isinstance(message, Mapping):
        out.add("$", ViolationKind.not_a_mapping, f"expected mapping, got {_describe(message)}")
        return ValidationResult(stage=schema.name, violations=out.violations)

    _collect_schema_errors(message, schema, out)
    _check_items(message, schema, out)
    _check_timestamp(message, now or datetime.now(UTC), clock_skew, out)

    return ValidationResult(stage=schema.name, violations=out.violations)
