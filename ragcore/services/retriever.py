"""
Query-time retrieval over knowledge chunks and conversation memory.

Both sources are ranked into one deterministic order: similarity desc, then
source priority, then recency desc, then document id. A source that fails
degrades the result; when every requested source fails the call raises
`RetrievalUnavailable`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import ragcore.config as config
from ragcore.context import RequestContext, resolve_now, resolve_timeout
from ragcore.db import get_session
from ragcore.errors import ProviderUnavailable, RetrievalUnavailable, ValidationIssue
from ragcore.metadata import KNOWLEDGE_CHUNK, RETRIEVED_DOCUMENT, build_metadata, to_epoch, validate_filter
from ragcore.models import KnowledgeItem
from ragcore.providers.vector_index import VectorIndex, VectorMatch
from ragcore.services.embedding_cache import EmbeddingCache, cache_key, normalize_text
from ragcore.services.knowledge_store import KNOWLEDGE_NAMESPACE
from ragcore.services.memory_manager import MEMORY_NAMESPACE, SCORE_TIE_PRECISION, MemoryItem, MemoryManager
from ragcore.validators import validate_budget, validate_limit, validate_optional_text, validate_required_text

logger = config.logger

KNOWLEDGE_SOURCE = "knowledge"
MEMORY_SOURCE = "memory"


@dataclass(frozen=True)
class RetrievedItem:
    document_id: str
    source: str
    content: str
    score: float
    recency: float = 0.0  # epoch seconds
    metadata: dict = field(default_factory=dict)


@dataclass
class RankedContext:
    query: str
    normalized_query: str
    items: list[RetrievedItem]
    selected: list[RetrievedItem]
    degraded_sources: list[str]
    embedding_key: str
    model_id: str
    operation_time_ms: float
    started_at: datetime
    source: str = "retriever"

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)

    def selected_from(self, source: str) -> list[RetrievedItem]:
        return [item for item in self.selected if item.source == source]


def assemble_within_budget(items: Sequence[RetrievedItem], char_budget: int) -> list[RetrievedItem]:
    """Keep the ranked prefix that fits; everything after the first overflow is dropped."""
    selected = []
    used = 0
    for item in items:
        if used + len(item.content) > char_budget:
            break
        selected.append(item)
        used += len(item.content)
    return selected


class Retriever:
    def __init__(
        self,
        embedding_cache: EmbeddingCache,
        vector_index: VectorIndex,
        memory: Optional[MemoryManager] = None,
        model_id: str = config.EMBEDDING_MODEL,
        source_priority: Sequence[str] = config.RETRIEVAL_SOURCE_PRIORITY,
        top_k: int = config.RETRIEVAL_TOP_K,
        char_budget: int = config.CONTEXT_CHAR_BUDGET,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
    ):
        unknown = set(source_priority) - {KNOWLEDGE_SOURCE, MEMORY_SOURCE}
        if unknown:
            raise ValueError(f"unknown retrieval sources: {sorted(unknown)}")
        self._cache = embedding_cache
        self._index = vector_index
        self._memory = memory
        self._model_id = model_id
        self._source_rank = {name: rank for rank, name in enumerate(source_priority)}
        self.top_k = top_k
        self.char_budget = char_budget
        self._timeout_seconds = timeout_seconds

    def rank_key(self, item: RetrievedItem) -> tuple:
        return (
            -round(item.score, SCORE_TIE_PRECISION),
            self._source_rank.get(item.source, len(self._source_rank)),
            -item.recency,
            item.document_id,
        )

    # -- sources ---------------------------------------------------------------

    @staticmethod
    def _live_chunks(owner_id: str, matches: list[VectorMatch]) -> list[VectorMatch]:
        """Drop vectors whose item is gone or whose chunk index is past the current count."""
        item_ids = {match.metadata.get("knowledge_item_id") for match in matches}
        item_ids.discard(None)
        if not item_ids:
            return []
        db = get_session()
        try:
            counts = dict(
                db.query(KnowledgeItem.id, KnowledgeItem.chunk_count)
                .filter(KnowledgeItem.id.in_(list(item_ids)), KnowledgeItem.owner_id == owner_id)
                .all()
            )
        finally:
            db.close()
        return [
            match
            for match in matches
            if match.metadata.get("knowledge_item_id") in counts
            and int(match.metadata.get("chunk_index", 0)) < counts[match.metadata["knowledge_item_id"]]
        ]

    async def _live_knowledge_matches(
        self,
        vector: list[float],
        user_id: str,
        query_filter: dict,
        top_k: int,
    ) -> list[VectorMatch]:
        """Query with a growing window until `top_k` live matches are found or the index runs out."""
        fetch = top_k
        while True:
            matches = await self._index.query(KNOWLEDGE_NAMESPACE, vector, fetch, filter=query_filter)
            live = await asyncio.to_thread(self._live_chunks, user_id, matches)
            if len(live) < len(matches):
                logger.info(
                    "stale_knowledge_vectors_skipped",
                    extra={"count": len(matches) - len(live), "fetched": fetch},
                )
            if len(live) >= top_k or len(matches) < fetch:
                return live[:top_k]
            fetch *= 2

    async def _search_knowledge(
        self,
        vector: list[float],
        user_id: str,
        filters: dict,
        top_k: int,
        timeout: float,
    ) -> list[RetrievedItem]:
        query_filter = dict(filters)
        query_filter["owner_id"] = user_id
        live = await asyncio.wait_for(
            self._live_knowledge_matches(vector, user_id, query_filter, top_k),
            timeout=timeout,
        )
        return [
            RetrievedItem(
                document_id=match.id,
                source=KNOWLEDGE_SOURCE,
                content=str(match.metadata.get("text", "")),
                score=match.score,
                recency=float(match.metadata.get("updated_at") or 0.0),
                metadata=build_metadata(
                    RETRIEVED_DOCUMENT,
                    namespace=KNOWLEDGE_NAMESPACE,
                    knowledge_item_id=match.metadata.get("knowledge_item_id"),
                    chunk_index=match.metadata.get("chunk_index"),
                    title=match.metadata.get("title"),
                    updated_at=match.metadata.get("updated_at"),
                ),
            )
            for match in live
        ]

    async def _search_memory(
        self,
        vector: list[float],
        conversation_id: str,
        top_k: int,
        timeout: float,
    ) -> list[RetrievedItem]:
        items: list[MemoryItem] = await asyncio.wait_for(
            self._memory.search(vector, conversation_id, top_k),
            timeout=timeout,
        )
        return [
            RetrievedItem(
                document_id=item.document_id,
                source=MEMORY_SOURCE,
                content=item.content,
                score=item.score,
                recency=to_epoch(item.created_at) or 0.0,
                metadata=build_metadata(
                    RETRIEVED_DOCUMENT,
                    namespace=MEMORY_NAMESPACE,
                    summary_id=item.id,
                    tier=item.tier,
                    updated_at=to_epoch(item.created_at),
                ),
            )
            for item in items
        ]

    # -- public API --------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        user_id: str,
        conversation_id: Optional[str] = None,
        top_k: Optional[int] = None,
        filters: Optional[dict] = None,
        char_budget: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> RankedContext:
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)
        top_k = self.top_k if top_k is None else top_k
        validate_limit(top_k, "top_k", config.MAX_RESULT_LIMIT)
        char_budget = self.char_budget if char_budget is None else char_budget
        validate_budget(char_budget, "char_budget")
        knowledge_filter = validate_filter(KNOWLEDGE_CHUNK, filters)
        if "owner_id" in knowledge_filter and knowledge_filter["owner_id"] != user_id:
            raise ValidationIssue("filters may not select another owner", field="filters.owner_id", error_type="forbidden")
        normalized = normalize_text(query)
        if not normalized:
            raise ValidationIssue("query must be a non-empty string", field="query", error_type="required")

        if conversation_id and self._memory is not None:
            await self._memory.authorize(conversation_id, user_id)

        started_at = resolve_now(context, None)
        started = time.perf_counter()
        requested = [KNOWLEDGE_SOURCE]
        if conversation_id and self._memory is not None:
            requested.append(MEMORY_SOURCE)

        try:
            vector = await asyncio.wait_for(
                self._cache.get(query, self._model_id, now=started_at),
                timeout=resolve_timeout(self._timeout_seconds, context),
            )
        except (ProviderUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("retrieval_embedding_failed", extra={"error": str(exc) or exc.__class__.__name__})
            raise RetrievalUnavailable("query embedding unavailable", sources=requested) from exc

        searches = {
            KNOWLEDGE_SOURCE: self._search_knowledge(
                vector,
                user_id,
                knowledge_filter,
                top_k,
                resolve_timeout(self._timeout_seconds, context),
            ),
        }
        if MEMORY_SOURCE in requested:
            searches[MEMORY_SOURCE] = self._search_memory(
                vector,
                conversation_id,
                top_k,
                resolve_timeout(self._timeout_seconds, context),
            )
        results = await asyncio.gather(*searches.values(), return_exceptions=True)

        merged: list[RetrievedItem] = []
        degraded: list[str] = []
        for name, result in zip(searches, results):
            if isinstance(result, (ProviderUnavailable, asyncio.TimeoutError)):
                degraded.append(name)
                logger.warning(
                    "retrieval_source_unavailable",
                    extra={"source": name, "error": str(result) or result.__class__.__name__},
                )
                continue
            if isinstance(result, BaseException):
                raise result
            merged.extend(result)
        if degraded and len(degraded) == len(searches):
            raise RetrievalUnavailable("no retrieval source available", sources=degraded)

        merged.sort(key=self.rank_key)
        items = merged[:top_k]
        selected = assemble_within_budget(items, char_budget)
        if self._memory is not None and conversation_id:
            summary_ids = [item.metadata["summary_id"] for item in selected if item.source == MEMORY_SOURCE]
            if summary_ids:
                await self._memory.touch(summary_ids, now=started_at)

        ranked = RankedContext(
            query=query,
            normalized_query=normalized,
            items=items,
            selected=selected,
            degraded_sources=degraded,
            embedding_key=cache_key(normalized, self._model_id),
            model_id=self._model_id,
            operation_time_ms=(time.perf_counter() - started) * 1000.0,
            started_at=started_at,
        )
        logger.info(
            "retrieval_complete",
            extra={
                "result_count": len(items),
                "selected_count": len(selected),
                "degraded_sources": degraded,
                "operation_time_ms": round(ranked.operation_time_ms, 2),
            },
        )
        return ranked


__all__ = [
    "Retriever",
    "RankedContext",
    "RetrievedItem",
    "assemble_within_budget",
    "KNOWLEDGE_SOURCE",
    "MEMORY_SOURCE",
]
