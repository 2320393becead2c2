"""
Retrieval audit trail (DB-only, write-once).

Tracking observes retrieval without gating it: a failed write is logged as
`tracking_failure` and never reaches the caller.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional, Sequence

import numpy as np
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

import ragcore.config as config
from ragcore.db import get_session
from ragcore.errors import TrackingFailure, ValidationIssue
from ragcore.metadata import RETRIEVED_DOCUMENT, project_metadata
from ragcore.models import (
    Embedding,
    EmbeddingSource,
    Feedback,
    Message,
    RAGOperation,
    RetrievedDocument,
)
from ragcore.services.embedding_cache import text_hash
from ragcore.services.retriever import RankedContext
from ragcore.validators import validate_limit, validate_optional_text, validate_rating

logger = config.logger

AGGREGATE_FILTER_KEYS = {"user_id", "conversation_id", "source"}
LATENCY_PERCENTILES = (50, 90, 95, 99)


def _embedding_anchor(db, text: str, model_id: str, vector_id: str, source: EmbeddingSource, now: datetime) -> str:
    """Return the Embedding row for (normalized text, model, source), creating it once."""
    digest = text_hash(text)
    existing = (
        db.query(Embedding)
        .filter(Embedding.text_hash == digest, Embedding.model_id == model_id, Embedding.source == source)
        .first()
    )
    if existing is not None:
        return existing.id
    anchor = Embedding(
        text=text,
        text_hash=digest,
        model_id=model_id,
        vector_id=vector_id,
        source=source,
        timestamp=now,
    )
    db.add(anchor)
    db.flush()
    return anchor.id


class OperationTracker:
    def __init__(self):
        self._pending: set[asyncio.Future] = set()

    # =========================================================================
    # Writes
    # =========================================================================

    def record(self, operation: RAGOperation, documents: Sequence[RetrievedDocument]) -> Optional[str]:
        """Append one operation and its documents in a single transaction."""
        try:
            return self._write(operation, documents)
        except Exception as exc:
            logger.warning(
                "tracking_failure",
                extra={"error": str(exc), "error_type": exc.__class__.__name__},
            )
            return None

    @staticmethod
    def _write(operation: RAGOperation, documents: Sequence[RetrievedDocument]) -> str:
        ranks = [document.rank for document in documents]
        if ranks != list(range(len(documents))):
            raise TrackingFailure(f"document ranks must be 0..{len(documents) - 1} in order")
        db = get_session()
        try:
            operation.documents = list(documents)
            db.add(operation)
            db.commit()
            return operation.id
        except SQLAlchemyError as exc:
            db.rollback()
            raise TrackingFailure(f"tracking write failed: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    def record_ranked_context(
        self,
        ranked: RankedContext,
        message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        for attempt in range(2):
            try:
                return self._write_ranked(ranked, message_id, conversation_id, user_id)
            except TrackingFailure as exc:
                # A concurrent writer may have inserted the same Embedding anchor.
                if attempt == 0 and isinstance(exc.__cause__, IntegrityError):
                    continue
                error = exc
            except Exception as exc:
                error = exc
            logger.warning(
                "tracking_failure",
                extra={"error": str(error), "error_type": error.__class__.__name__},
            )
            return None
        return None

    @staticmethod
    def _write_ranked(
        ranked: RankedContext,
        message_id: Optional[str],
        conversation_id: Optional[str],
        user_id: Optional[str],
    ) -> str:
        selected = {item.document_id for item in ranked.selected}
        db = get_session()
        try:
            embedding_id = _embedding_anchor(
                db,
                ranked.normalized_query,
                ranked.model_id,
                ranked.embedding_key,
                EmbeddingSource.user_query,
                ranked.started_at,
            )
            operation = RAGOperation(
                query=ranked.query,
                message_id=message_id,
                conversation_id=conversation_id,
                user_id=user_id,
                timestamp=ranked.started_at,
                source=ranked.source,
                operation_time=ranked.operation_time_ms,
                embedding_id=embedding_id,
                degraded_sources=list(ranked.degraded_sources),
            )
            operation.documents = [
                RetrievedDocument(
                    rank=rank,
                    document_id=item.document_id,
                    similarity_score=item.score,
                    content=item.content,
                    source=item.source,
                    used=item.document_id in selected,
                    metadata_=project_metadata(RETRIEVED_DOCUMENT, item.metadata),
                    timestamp=ranked.started_at,
                )
                for rank, item in enumerate(ranked.items)
            ]
            db.add(operation)
            db.commit()
            logger.debug(
                "rag_operation_recorded",
                extra={"rag_operation_id": operation.id, "document_count": len(ranked.items)},
            )
            return operation.id
        except SQLAlchemyError as exc:
            db.rollback()
            raise TrackingFailure(f"tracking write failed: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    def record_in_background(
        self,
        ranked: RankedContext,
        message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> asyncio.Future:
        """Schedule `record_ranked_context` on a worker thread without awaiting it."""
        future = asyncio.ensure_future(
            asyncio.to_thread(self.record_ranked_context, ranked, message_id, conversation_id, user_id)
        )
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        return future

    async def drain(self) -> None:
        """Wait for scheduled writes (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def record_feedback(self, message_id: str, rating: int, comment: Optional[str] = None) -> dict:
        validate_rating(rating)
        validate_optional_text(comment, "comment", config.MAX_TEXT_LENGTH)
        db = get_session()
        try:
            if db.get(Message, message_id) is None:
                raise ValidationIssue(f"message not found: {message_id}", field="message_id", error_type="not_found")
            feedback = db.query(Feedback).filter(Feedback.message_id == message_id).first()
            status = "updated" if feedback is not None else "stored"
            if feedback is None:
                feedback = Feedback(message_id=message_id, rating=rating, comment=comment)
                db.add(feedback)
            else:
                feedback.rating = rating
                feedback.comment = comment
            db.commit()
            return {"status": status, "id": feedback.id, "message_id": message_id, "rating": rating}
        finally:
            db.close()

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def get_operation(operation_id: str) -> Optional[RAGOperation]:
        db = get_session()
        try:
            return (
                db.query(RAGOperation)
                .options(selectinload(RAGOperation.documents))
                .filter(RAGOperation.id == operation_id)
                .first()
            )
        finally:
            db.close()

    @staticmethod
    def list_operations(
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[RAGOperation]:
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        db = get_session()
        try:
            query = db.query(RAGOperation).options(selectinload(RAGOperation.documents))
            if user_id is not None:
                query = query.filter(RAGOperation.user_id == user_id)
            if conversation_id is not None:
                query = query.filter(RAGOperation.conversation_id == conversation_id)
            return query.order_by(RAGOperation.timestamp.desc(), RAGOperation.id.asc()).limit(limit).all()
        finally:
            db.close()

    @staticmethod
    def aggregate(
        filters: Optional[dict] = None,
        time_range: Optional[tuple[Optional[datetime], Optional[datetime]]] = None,
    ) -> dict[str, Any]:
        """Read-only statistics over recorded operations."""
        filters = filters or {}
        unknown = sorted(set(filters) - AGGREGATE_FILTER_KEYS)
        if unknown:
            raise ValidationIssue(
                f"unsupported aggregate filters: {unknown}",
                field="filters",
                error_type="unknown_key",
            )
        db = get_session()
        try:
            query = db.query(RAGOperation).options(selectinload(RAGOperation.documents))
            for key, value in filters.items():
                query = query.filter(getattr(RAGOperation, key) == value)
            if time_range:
                start, end = time_range
                if start is not None:
                    query = query.filter(RAGOperation.timestamp >= start)
                if end is not None:
                    query = query.filter(RAGOperation.timestamp < end)
            operations = query.all()

            message_ids = [op.message_id for op in operations if op.message_id]
            feedback_average = None
            if message_ids:
                feedback_average = (
                    db.query(func.avg(Feedback.rating))
                    .filter(Feedback.message_id.in_(message_ids))
                    .scalar()
                )
        finally:
            db.close()

        latencies = np.array([op.operation_time for op in operations], dtype=np.float64)
        documents = [document for op in operations for document in op.documents]
        scores = np.array([d.similarity_score for d in documents], dtype=np.float64)
        used_scores = np.array([d.similarity_score for d in documents if d.used], dtype=np.float64)
        per_source: dict[str, int] = {}
        for document in documents:
            key = document.source or "unknown"
            per_source[key] = per_source.get(key, 0) + 1

        latency: dict[str, Optional[float]] = {"mean": None}
        latency.update({f"p{p}": None for p in LATENCY_PERCENTILES})
        if latencies.size:
            latency["mean"] = float(latencies.mean())
            for p, value in zip(LATENCY_PERCENTILES, np.percentile(latencies, LATENCY_PERCENTILES)):
                latency[f"p{p}"] = float(value)

        return {
            "operation_count": len(operations),
            "document_count": len(documents),
            "latency_ms": latency,
            "avg_similarity": float(scores.mean()) if scores.size else None,
            "avg_used_similarity": float(used_scores.mean()) if used_scores.size else None,
            "avg_documents_per_operation": (len(documents) / len(operations)) if operations else 0.0,
            "degraded_operation_count": sum(1 for op in operations if op.degraded_sources),
            "documents_by_source": per_source,
            "avg_feedback_rating": float(feedback_average) if feedback_average is not None else None,
        }


__all__ = ["OperationTracker"]
