"""
Shared validation helpers for RAGCore services.
"""

from __future__ import annotations

import json
from typing import Optional

from ragcore.config import (
    MAX_EMBEDDING_TEXT_LENGTH,
    MAX_METADATA_BYTES,
)
from ragcore.errors import ValidationIssue
from ragcore.models import MessageRole


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_text(value: str, field: str, max_len: int) -> None:
    """Like validate_required_text, but empty strings are allowed."""
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    validate_text(value, field, max_len)


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_budget(value: int, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value < 0:
        raise ValidationIssue(f"{field} must not be negative", field=field, error_type="out_of_range")


def validate_priority(value: int, field: str = "priority") -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 10:
        raise ValidationIssue(f"{field} must be an integer between 1 and 10", field=field, error_type="out_of_range")


def validate_rating(value: int, field: str = "rating") -> None:
    if isinstance(value, bool) or value not in (-1, 0, 1):
        raise ValidationIssue(f"{field} must be -1, 0 or 1", field=field, error_type="out_of_range")


def validate_role(value: str, field: str = "role") -> None:
    allowed = {role.value for role in MessageRole}
    if value not in allowed:
        raise ValidationIssue(
            f"{field} must be one of: {', '.join(sorted(allowed))}",
            field=field,
            error_type="invalid_value",
        )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)
