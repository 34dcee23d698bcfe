"""
Content integrity checks that generic schema validation cannot express.

All checks accept either pydantic models or decoded JSON mappings and return
a list of violations (empty when the content is sound). None of them raise
on malformed input: fields that are missing or mistyped are skipped here,
since the validator already reports them.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from omop_contracts.models import Violation
from omop_contracts.models.findings import ViolationKind
from omop_contracts.settings import settings

DEFAULT_TEXT_TOLERANCE = 0.05

_MISSING = object()


def _as_mapping(obj: Any) -> Mapping[str, Any] | None:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", exclude_none=True)
    if isinstance(obj, Mapping):
        return obj
    return None


def _int_field(item: Mapping[str, Any], name: str) -> int | None:
    value = item.get(name)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _strict_equal(left: Any, right: Any) -> bool:
    """Equality that also requires identical types (``1 != True``, ``1 != 1.0``).

    Strings compare code point by code point with no Unicode normalization,
    which is byte-for-byte equality of their UTF-8 encodings.
    """
    if type(left) is not type(right):
        return False
    if isinstance(left, Mapping):
        return left.keys() == right.keys() and all(_strict_equal(left[k], right[k]) for k in left)
    if isinstance(left, list | tuple):
        return len(left) == len(right) and all(
            _strict_equal(a, b) for a, b in zip(left, right, strict=True)
        )
    return left == right


def check_chunks(
    chunks: Sequence[Any],
    *,
    chunk_count: int | None = None,
    text_length: int | None = None,
    max_gap: int | None = None,
    max_overlap: int | None = None,
) -> list[Violation]:
    """Check that chunks tile the preprocessed text.

    Args:
        chunks: Chunks in the order they were published.
        chunk_count: Declared number of chunks, when the message carries one.
        text_length: Length of the preprocessed text, to check full coverage.
        max_gap: Largest tolerated gap between adjacent chunks
            (default: ``settings.chunk_max_gap``).
        max_overlap: Largest tolerated overlap between adjacent chunks
            (default: ``settings.chunk_max_overlap``).

    Returns:
        List of violations, empty when the chunks are contiguous and consistent.

    Examples:
        >>> check_chunks([
        ...     {"start_pos": 0, "end_pos": 32, "char_count": 32},
        ...     {"start_pos": 32, "end_pos": 64, "char_count": 32},
        ... ])
        []
    """
    max_gap = settings.chunk_max_gap if max_gap is None else max_gap
    max_overlap = settings.chunk_max_overlap if max_overlap is None else max_overlap
    violations: list[Violation] = []

    if chunk_count is not None and chunk_count != len(chunks):
        violations.append(
            Violation(
                field="chunk_count",
                kind=ViolationKind.count_mismatch,
                reason=f"chunk_count is {chunk_count} but {len(chunks)} chunks were sent",
            )
        )

    previous: tuple[int, int, int] | None = None  # (index, start, end)
    for index, raw in enumerate(chunks):
        chunk = _as_mapping(raw)
        if chunk is None:
            continue
        path = f"chunks[{index}]"
        start = _int_field(chunk, "start_pos")
        end = _int_field(chunk, "end_pos")
        if start is None or end is None:
            continue

        if end < start:
            violations.append(
                Violation(
                    field=f"{path}.end_pos",
                    kind=ViolationKind.chunk_length,
                    reason=f"end_pos {end} precedes start_pos {start}",
                )
            )

        char_count = _int_field(chunk, "char_count")
        if char_count is not None and end - start != char_count:
            violations.append(
                Violation(
                    field=f"{path}.char_count",
                    kind=ViolationKind.chunk_length,
                    reason=f"span {start}..{end} is {end - start} chars, "
                    f"char_count says {char_count}",
                )
            )

        if previous is not None:
            prev_index, prev_start, prev_end = previous
            if start < prev_start:
                violations.append(
                    Violation(
                        field=f"{path}.start_pos",
                        kind=ViolationKind.chunk_order,
                        reason=f"start_pos {start} is before chunks[{prev_index}] "
                        f"start_pos {prev_start}",
                    )
                )
            elif start < prev_end and prev_end - start > max_overlap:
                violations.append(
                    Violation(
                        field=f"{path}.start_pos",
                        kind=ViolationKind.chunk_overlap,
                        reason=f"overlaps chunks[{prev_index}] by {prev_end - start} chars "
                        f"({prev_start}..{prev_end} and {start}..{end})",
                    )
                )
            elif start - prev_end > max_gap:
                violations.append(
                    Violation(
                        field=f"{path}.start_pos",
                        kind=ViolationKind.chunk_gap,
                        reason=f"gap of {start - prev_end} chars after chunks[{prev_index}] "
                        f"(max {max_gap})",
                    )
                )

        previous = (index, start, end)

    if text_length is not None:
        violations.extend(_check_coverage(chunks, text_length, max_gap))

    return violations


def _check_coverage(chunks: Sequence[Any], text_length: int, max_gap: int) -> list[Violation]:
    spans = []
    for raw in chunks:
        chunk = _as_mapping(raw)
        if chunk is None:
            continue
        start, end = _int_field(chunk, "start_pos"), _int_field(chunk, "end_pos")
        if start is not None and end is not None:
            spans.append((start, end))

    if not spans:
        if text_length > max_gap:
            return [
                Violation(
                    field="chunks",
                    kind=ViolationKind.chunk_coverage,
                    reason=f"no chunks cover a text of {text_length} chars",
                )
            ]
        return []

    violations = []
    first_start = min(start for start, _ in spans)
    last_end = max(end for _, end in spans)
    if first_start > max_gap:
        violations.append(
            Violation(
                field="chunks",
                kind=ViolationKind.chunk_coverage,
                reason=f"first chunk starts at {first_start}, leaving the text head uncovered",
            )
        )
    if last_end > text_length:
        violations.append(
            Violation(
                field="chunks",
                kind=ViolationKind.chunk_coverage,
                reason=f"chunks end at {last_end}, past the text length {text_length}",
            )
        )
    elif text_length - last_end > max_gap:
        violations.append(
            Violation(
                field="chunks",
                kind=ViolationKind.chunk_coverage,
                reason=f"chunks end at {last_end}, "
                f"leaving {text_length - last_end} chars uncovered",
            )
        )
    return violations


def check_metadata_preserved(upstream_metadata: Any, downstream_metadata: Any) -> list[Violation]:
    """Check that a stage only appended to the metadata it received.

    Every upstream key must be present downstream with an identical value.
    New keys are allowed. Identifiers are compared exactly: case-sensitive,
    no Unicode normalization, no type coercion.

    Args:
        upstream_metadata: Metadata of the consumed message.
        downstream_metadata: Metadata of the produced message.

    Returns:
        One violation per removed or changed key.
    """
    upstream = _as_mapping(upstream_metadata)
    downstream = _as_mapping(downstream_metadata)
    if upstream is None:
        return []
    if downstream is None:
        return [
            Violation(
                field="metadata",
                kind=ViolationKind.metadata_missing,
                reason="downstream message carries no metadata mapping",
            )
        ]

    violations = []
    for key, value in upstream.items():
        path = f"metadata.{key}"
        new_value = downstream.get(key, _MISSING)
        if new_value is _MISSING:
            violations.append(
                Violation(
                    field=path,
                    kind=ViolationKind.metadata_missing,
                    reason=f"key '{key}' was removed downstream",
                )
            )
        elif not _strict_equal(value, new_value):
            violations.append(
                Violation(
                    field=path,
                    kind=ViolationKind.metadata_changed,
                    reason=f"value changed from {value!r} to {new_value!r}",
                )
            )
    return violations


def check_text_bounds(
    original_length: int,
    cleaned_length: int,
    tolerance: float = DEFAULT_TEXT_TOLERANCE,
) -> list[Violation]:
    """Check that preprocessing kept the text length within tolerance.

    Args:
        original_length: Length of the raw text.
        cleaned_length: Length of the preprocessed text.
        tolerance: Allowed relative change (0.05 = 5%).

    Returns:
        A single violation when the cleaned text is truncated or inflated.
    """
    lower = original_length * (1 - tolerance)
    upper = original_length * (1 + tolerance)
    if cleaned_length < lower:
        return [
            Violation(
                field="preprocessed_text",
                kind=ViolationKind.text_truncated,
                reason=f"cleaned length {cleaned_length} is below {lower:.0f} "
                f"({original_length} - {tolerance:.0%})",
            )
        ]
    if cleaned_length > upper:
        return [
            Violation(
                field="preprocessed_text",
                kind=ViolationKind.text_expanded,
                reason=f"cleaned length {cleaned_length} is above {upper:.0f} "
                f"({original_length} + {tolerance:.0%})",
            )
        ]
    return []


def check_lineage(upstream: Any, downstream: Any) -> list[Violation]:
    """Check correlation and message-id lineage between two hops.

    The correlation id must be carried unchanged, the downstream message id
    must be fresh, and ``parent_message_id`` (when present) must point to the
    upstream message.
    """
    up = _as_mapping(upstream)
    down = _as_mapping(downstream)
    if up is None or down is None:
        return []

    violations = []
    if up.get("correlation_id") != down.get("correlation_id"):
        violations.append(
            Violation(
                field="correlation_id",
                kind=ViolationKind.correlation_changed,
                reason=f"correlation id changed from {up.get('correlation_id')!r} "
                f"to {down.get('correlation_id')!r}",
            )
        )
    if up.get("message_id") is not None and up.get("message_id") == down.get("message_id"):
        violations.append(
            Violation(
                field="message_id",
                kind=ViolationKind.message_id_reused,
                reason="downstream message reuses the upstream message id",
            )
        )
    parent = down.get("parent_message_id")
    if parent is not None and parent != up.get("message_id"):
        violations.append(
            Violation(
                field="parent_message_id",
                kind=ViolationKind.lineage_broken,
                reason=f"parent_message_id {parent!r} does not match upstream "
                f"message id {up.get('message_id')!r}",
            )
        )
    return violations
