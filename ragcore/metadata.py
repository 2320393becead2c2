"""
Typed metadata maps shared between vector writers and readers.

Every producer owns a closed set of keys; values are JSON scalars. Writers
build metadata through `build_metadata` so a reader never sees a key it does
not know about.
"""

from __future__ import annotations

import calendar
from datetime import datetime
from typing import Any, Optional

from ragcore.errors import ValidationIssue
from ragcore.validators import validate_metadata

KNOWLEDGE_CHUNK = "knowledge_chunk"
CONVERSATION_SUMMARY = "conversation_summary"
RETRIEVED_DOCUMENT = "retrieved_document"

PRODUCER_KEYS: dict[str, frozenset[str]] = {
    KNOWLEDGE_CHUNK: frozenset({
        "owner_id",
        "knowledge_item_id",
        "chunk_index",
        "title",
        "text",
        "updated_at",
    }),
    CONVERSATION_SUMMARY: frozenset({
        "conversation_id",
        "summary_id",
        "tier",
        "start_seq",
        "end_seq",
        "text",
        "updated_at",
    }),
    RETRIEVED_DOCUMENT: frozenset({
        "namespace",
        "knowledge_item_id",
        "chunk_index",
        "summary_id",
        "tier",
        "title",
        "updated_at",
    }),
}

MAX_METADATA_STRING_LENGTH = 100000
_SCALAR_TYPES = (str, int, float, bool)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    """Naive UTC datetime to epoch seconds (metadata stores plain floats)."""
    if value is None:
        return None
    return calendar.timegm(value.utctimetuple()) + value.microsecond / 1_000_000


def _check_value(producer: str, key: str, value: Any) -> None:
    if value is None or isinstance(value, _SCALAR_TYPES):
        if isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
            raise ValidationIssue(
                f"metadata value too long at '{key}'",
                field=f"metadata.{key}",
                error_type="max_length",
            )
        return
    raise ValidationIssue(
        f"{producer} metadata '{key}' must be a scalar",
        field=f"metadata.{key}",
        error_type="invalid_type",
    )


def build_metadata(producer: str, **values: Any) -> dict[str, Any]:
    """Return a metadata dict for `producer`, dropping None values."""
    allowed = PRODUCER_KEYS.get(producer)
    if allowed is None:
        raise ValidationIssue(f"unknown metadata producer: {producer}", field="metadata", error_type="invalid_value")
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValidationIssue(
            f"{producer} metadata does not accept keys: {unknown}",
            field="metadata",
            error_type="unknown_key",
        )
    result: dict[str, Any] = {}
    for key, value in values.items():
        _check_value(producer, key, value)
        if value is not None:
            result[key] = value
    validate_metadata(result, "metadata")
    return result


def validate_filter(producer: str, filters: Optional[dict]) -> dict[str, Any]:
    """Equality filters may only name keys the producer writes; a list value means "any of"."""
    if not filters:
        return {}
    if not isinstance(filters, dict):
        raise ValidationIssue("filters must be a dict", field="filters", error_type="invalid_type")
    scalars = {key: value for key, value in filters.items() if not isinstance(value, (list, tuple, set))}
    result = build_metadata(producer, **scalars)
    for key, values in filters.items():
        if key in scalars:
            continue
        build_metadata(producer, **{key: None})
        for value in values:
            _check_value(producer, key, value)
        result[key] = list(values)
    return result


def project_metadata(producer: str, metadata: Optional[dict]) -> dict[str, Any]:
    """Keep only the keys `producer` recognizes (used when reading foreign rows)."""
    allowed = PRODUCER_KEYS[producer]
    return {key: value for key, value in (metadata or {}).items() if key in allowed}


__all__ = [
    "KNOWLEDGE_CHUNK",
    "CONVERSATION_SUMMARY",
    "RETRIEVED_DOCUMENT",
    "PRODUCER_KEYS",
    "build_metadata",
    "validate_filter",
    "project_metadata",
    "to_epoch",
]
