"""
Chunking strategies for knowledge content.

Chunkers are stateless; `chunk_size` and `chunk_overlap` are always passed
explicitly (in characters).
"""

from __future__ import annotations

import re
from typing import Callable, Optional

import ragcore.config as config
from ragcore.errors import ValidationIssue

_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


def _check_params(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ValidationIssue("chunk_size must be positive", field="chunk_size", error_type="out_of_range")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValidationIssue(
            "chunk_overlap must be >= 0 and smaller than chunk_size",
            field="chunk_overlap",
            error_type="out_of_range",
        )


def fixed_size_chunks(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """
    Sliding character windows of `chunk_size` advancing by `chunk_size - chunk_overlap`.

    Empty or whitespace-only text yields no chunks; text no longer than one
    window yields exactly one.
    """
    _check_params(chunk_size, chunk_overlap)
    text = text.strip()
    if not text:
        return []
    chunks = []
    start = 0
    while True:
        end = min(start + chunk_size, len(text))
        chunks.append(text[start:end])
        if end >= len(text):
            break
        start = end - chunk_overlap
    return chunks


def sentence_chunks(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """Pack whole sentences up to `chunk_size`; trailing sentences within `chunk_overlap` repeat."""
    _check_params(chunk_size, chunk_overlap)
    text = text.strip()
    if not text:
        return []
    sentences: list[str] = []
    for sentence in _SENTENCE_BOUNDARY_RE.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > chunk_size:
            sentences.extend(fixed_size_chunks(sentence, chunk_size, chunk_overlap))
        else:
            sentences.append(sentence)

    chunks: list[str] = []
    current: list[str] = []
    for sentence in sentences:
        candidate = " ".join(current + [sentence])
        if current and len(candidate) > chunk_size:
            chunks.append(" ".join(current))
            carried: list[str] = []
            for previous in reversed(current):
                if len(" ".join([previous] + carried)) > chunk_overlap:
                    break
                carried.insert(0, previous)
            current = carried
            if current and len(" ".join(current + [sentence])) > chunk_size:
                current = []
        current.append(sentence)
    if current:
        chunks.append(" ".join(current))
    return chunks


CHUNKERS: dict[str, Callable[[str, int, int], list[str]]] = {
    "fixed": fixed_size_chunks,
    "sentence": sentence_chunks,
}


class Chunker:
    def __init__(
        self,
        strategy: str = config.CHUNK_STRATEGY,
        chunk_size: int = config.CHUNK_SIZE,
        chunk_overlap: int = config.CHUNK_OVERLAP,
    ):
        if strategy not in CHUNKERS:
            raise ValidationIssue(
                f"chunk strategy must be one of: {', '.join(sorted(CHUNKERS))}",
                field="strategy",
                error_type="invalid_value",
            )
        _check_params(chunk_size, chunk_overlap)
        self.strategy = strategy
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def split(self, text: Optional[str]) -> list[str]:
        return CHUNKERS[self.strategy](text or "", self.chunk_size, self.chunk_overlap)

    def signature(self) -> str:
        """Identifies the parameters that shape chunk boundaries."""
        return f"{self.strategy}:{self.chunk_size}:{self.chunk_overlap}"
