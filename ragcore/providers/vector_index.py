"""
Vector index capability and its backends.

The core only relies on "higher score is more similar"; every backend here
uses cosine similarity. Filters are equality matches on metadata keys (a
list/tuple/set value means "any of") and are applied before `top_k`
truncation.
"""

from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Sequence

import numpy as np

import ragcore.config as config
from ragcore.db import get_session
from ragcore.errors import VectorIndexError
from ragcore.models import VectorEntry

logger = config.logger


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict = field(default_factory=dict)


class VectorIndex(Protocol):
    async def upsert(self, namespace: str, id: str, vector: Sequence[float], metadata: dict) -> None:
        ...

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[VectorMatch]:
        ...

    async def delete(self, namespace: str, ids: Sequence[str]) -> None:
        ...


def _normalize(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0:
        return array
    return array / norm


def _matches(metadata: dict, filter: Optional[dict]) -> bool:
    if not filter:
        return True
    for key, expected in filter.items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def rank_matches(
    query: Sequence[float],
    candidates: Sequence[tuple[str, Sequence[float], dict]],
    top_k: int,
) -> list[VectorMatch]:
    """Cosine-rank candidates; ties are broken by id so the order is stable."""
    if not candidates:
        return []
    query_vec = _normalize(query)
    matrix = np.vstack([_normalize(vector) for _, vector, _ in candidates])
    if matrix.shape[1] != query_vec.shape[0]:
        raise VectorIndexError(
            f"dimension mismatch: index has {matrix.shape[1]}, query has {query_vec.shape[0]}"
        )
    scores = matrix @ query_vec
    ranked = sorted(
        (
            VectorMatch(id=entry_id, score=float(score), metadata=dict(metadata))
            for (entry_id, _, metadata), score in zip(candidates, scores)
        ),
        key=lambda match: (-match.score, match.id),
    )
    return ranked[:top_k]


class InMemoryVectorIndex:
    """Process-local index; fine for tests and single-process deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, tuple[list[float], dict]]] = {}

    async def upsert(self, namespace: str, id: str, vector: Sequence[float], metadata: dict) -> None:
        with self._lock:
            self._entries.setdefault(namespace, {})[id] = (list(vector), dict(metadata))

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[VectorMatch]:
        with self._lock:
            candidates = [
                (entry_id, entry_vector, metadata)
                for entry_id, (entry_vector, metadata) in self._entries.get(namespace, {}).items()
                if _matches(metadata, filter)
            ]
        return rank_matches(vector, candidates, top_k)

    async def delete(self, namespace: str, ids: Sequence[str]) -> None:
        with self._lock:
            entries = self._entries.get(namespace, {})
            for entry_id in ids:
                entries.pop(entry_id, None)

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._entries.get(namespace, {}))


class SqlVectorIndex:
    """
    Vectors stored in the `vector_entries` table.

    With `use_pgvector` the ranking is pushed down to PostgreSQL's cosine
    distance operator; otherwise rows are filtered and scored with numpy.
    """

    def __init__(self, use_pgvector: bool = False):
        self._use_pgvector = use_pgvector

    def _upsert_sync(self, namespace: str, id: str, vector: list[float], metadata: dict) -> None:
        db = get_session()
        try:
            entry = db.get(VectorEntry, (namespace, id))
            if entry is None:
                entry = VectorEntry(namespace=namespace, id=id)
                db.add(entry)
            entry.vector = vector
            entry.metadata_ = metadata
            entry.updated_at = datetime.utcnow()
            db.commit()
        finally:
            db.close()

    def _query_sync(
        self,
        namespace: str,
        vector: list[float],
        top_k: int,
        filter: Optional[dict],
    ) -> list[VectorMatch]:
        db = get_session()
        try:
            query = db.query(VectorEntry).filter(VectorEntry.namespace == namespace)
            if self._use_pgvector:
                return self._query_pgvector(query, vector, top_k, filter)
            candidates = [
                (row.id, row.vector, row.metadata_ or {})
                for row in query.all()
                if _matches(row.metadata_ or {}, filter)
            ]
            return rank_matches(vector, candidates, top_k)
        finally:
            db.close()

    def _query_pgvector(self, query, vector: list[float], top_k: int, filter: Optional[dict]) -> list[VectorMatch]:
        for key, expected in (filter or {}).items():
            column = VectorEntry.metadata_[key].astext
            values = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
            rendered = [value if isinstance(value, str) else json.dumps(value) for value in values]
            query = query.filter(column.in_(rendered))
        distance = VectorEntry.vector.cosine_distance(vector)
        rows = (
            query.with_entities(VectorEntry.id, VectorEntry.metadata_, distance.label("distance"))
            .order_by(distance.asc(), VectorEntry.id.asc())
            .limit(top_k)
            .all()
        )
        return [
            VectorMatch(id=row.id, score=1.0 - float(row.distance), metadata=dict(row.metadata_ or {}))
            for row in rows
        ]

    def _delete_sync(self, namespace: str, ids: list[str]) -> None:
        if not ids:
            return
        db = get_session()
        try:
            (
                db.query(VectorEntry)
                .filter(VectorEntry.namespace == namespace, VectorEntry.id.in_(ids))
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

    async def upsert(self, namespace: str, id: str, vector: Sequence[float], metadata: dict) -> None:
        try:
            await asyncio.to_thread(self._upsert_sync, namespace, id, list(vector), dict(metadata))
        except VectorIndexError:
            raise
        except Exception as exc:
            raise VectorIndexError(f"vector upsert failed: {exc.__class__.__name__}") from exc

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[VectorMatch]:
        try:
            return await asyncio.to_thread(self._query_sync, namespace, list(vector), top_k, filter)
        except VectorIndexError:
            raise
        except Exception as exc:
            raise VectorIndexError(f"vector query failed: {exc.__class__.__name__}") from exc

    async def delete(self, namespace: str, ids: Sequence[str]) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, namespace, list(ids))
        except Exception as exc:
            raise VectorIndexError(f"vector delete failed: {exc.__class__.__name__}") from exc


__all__ = [
    "VectorMatch",
    "VectorIndex",
    "InMemoryVectorIndex",
    "SqlVectorIndex",
    "rank_matches",
]
