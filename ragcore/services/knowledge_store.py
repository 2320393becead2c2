"""
Per-user knowledge items and their chunk vectors.

The relational row is the source of truth; vectors in the `knowledge`
namespace are a derived projection keyed `knowledge:<item_id>:<chunk_index>`.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime
from typing import Optional

import ragcore.config as config
from ragcore.context import RequestContext, resolve_now
from ragcore.db import get_session
from ragcore.errors import ProviderUnavailable, ValidationIssue
from ragcore.metadata import KNOWLEDGE_CHUNK, build_metadata, to_epoch
from ragcore.models import KnowledgeItem, VectorReconciliationTask
from ragcore.providers.vector_index import VectorIndex
from ragcore.services.chunking import Chunker
from ragcore.services.embedding_cache import EmbeddingCache
from ragcore.validators import (
    validate_limit,
    validate_optional_text,
    validate_required_text,
    validate_text,
)

logger = config.logger

KNOWLEDGE_NAMESPACE = "knowledge"
# Reconciliation tasks with this reason re-project the stored row instead of only deleting.
REINDEX_REASON = "update_restore_failed"


def chunk_vector_id(item_id: str, chunk_index: int) -> str:
    return f"knowledge:{item_id}:{chunk_index}"


def chunk_vector_ids(item_id: str, chunk_count: int, start: int = 0) -> list[str]:
    return [chunk_vector_id(item_id, index) for index in range(start, chunk_count)]


class KnowledgeStore:
    def __init__(
        self,
        embedding_cache: EmbeddingCache,
        vector_index: VectorIndex,
        chunker: Optional[Chunker] = None,
        model_id: str = config.EMBEDDING_MODEL,
    ):
        self._cache = embedding_cache
        self._index = vector_index
        self._chunker = chunker or Chunker()
        self._model_id = model_id

    def _content_hash(self, content: str, title: Optional[str]) -> str:
        material = "\x00".join([self._chunker.signature(), self._model_id, title or "", content])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    # -- relational helpers (run in worker threads) --------------------------

    @staticmethod
    def _load(item_id: str) -> Optional[KnowledgeItem]:
        db = get_session()
        try:
            return db.get(KnowledgeItem, item_id)
        finally:
            db.close()

    @staticmethod
    def _insert(item: KnowledgeItem) -> KnowledgeItem:
        db = get_session()
        try:
            db.add(item)
            db.commit()
            return item
        finally:
            db.close()

    @staticmethod
    def _apply_update(item_id: str, values: dict) -> Optional[KnowledgeItem]:
        db = get_session()
        try:
            item = db.get(KnowledgeItem, item_id)
            if item is None:
                return None
            for key, value in values.items():
                setattr(item, key, value)
            db.commit()
            return item
        finally:
            db.close()

    @staticmethod
    def _delete_row(item_id: str) -> Optional[int]:
        db = get_session()
        try:
            item = db.get(KnowledgeItem, item_id)
            if item is None:
                return None
            chunk_count = item.chunk_count
            db.delete(item)
            db.commit()
            return chunk_count
        finally:
            db.close()

    @staticmethod
    def _record_orphans(item_id: str, vector_ids: list[str], reason: str) -> str:
        db = get_session()
        try:
            task = VectorReconciliationTask(
                knowledge_item_id=item_id,
                namespace=KNOWLEDGE_NAMESPACE,
                vector_ids=vector_ids,
                reason=reason,
            )
            db.add(task)
            db.commit()
            return task.id
        finally:
            db.close()

    # -- vector helpers -------------------------------------------------------

    async def _write_chunks(
        self,
        item_id: str,
        owner_id: str,
        title: Optional[str],
        chunks: list[str],
        updated_at: datetime,
        now: datetime,
        written: Optional[list[str]] = None,
    ) -> None:
        vectors = await asyncio.gather(
            *(self._cache.get(chunk, self._model_id, now=now) for chunk in chunks)
        )
        for index, (chunk, vector) in enumerate(zip(chunks, vectors)):
            metadata = build_metadata(
                KNOWLEDGE_CHUNK,
                owner_id=owner_id,
                knowledge_item_id=item_id,
                chunk_index=index,
                title=title,
                text=chunk,
                updated_at=to_epoch(updated_at),
            )
            vector_id = chunk_vector_id(item_id, index)
            await self._index.upsert(KNOWLEDGE_NAMESPACE, vector_id, vector, metadata)
            if written is not None:
                written.append(vector_id)

    async def _delete_vectors_best_effort(self, item_id: str, vector_ids: list[str], reason: str) -> bool:
        if not vector_ids:
            return True
        try:
            await self._index.delete(KNOWLEDGE_NAMESPACE, vector_ids)
            return True
        except ProviderUnavailable as exc:
            task_id = await asyncio.to_thread(self._record_orphans, item_id, vector_ids, reason)
            logger.warning(
                "knowledge_vector_delete_failed",
                extra={
                    "knowledge_item_id": item_id,
                    "vector_count": len(vector_ids),
                    "reconciliation_task_id": task_id,
                    "error": str(exc),
                },
            )
            return False

    async def _restore_chunks(self, item: KnowledgeItem, written: list[str], now: datetime) -> None:
        """Put the stored row's chunks back over the ids a failed update already overwrote."""
        if not written:
            return
        previous = self._chunker.split(item.content)
        try:
            await self._write_chunks(
                item.id, item.owner_id, item.title, previous[: len(written)], item.updated_at, now
            )
        except ProviderUnavailable as exc:
            task_id = await asyncio.to_thread(self._record_orphans, item.id, written, REINDEX_REASON)
            logger.warning(
                "knowledge_restore_failed",
                extra={
                    "knowledge_item_id": item.id,
                    "vector_count": len(written),
                    "reconciliation_task_id": task_id,
                    "error": str(exc),
                },
            )
            return
        await self._delete_vectors_best_effort(item.id, written[len(previous):], "update_failed")
        logger.info("knowledge_update_rolled_back", extra={"knowledge_item_id": item.id})

    async def _reproject(self, item_id: str, vector_ids: list[str], now: datetime) -> None:
        """Rewrite the index from the stored row; ids past its chunk count are removed."""
        item = await asyncio.to_thread(self._load, item_id)
        if item is None:
            await self._index.delete(KNOWLEDGE_NAMESPACE, vector_ids)
            return
        chunks = self._chunker.split(item.content)
        await self._write_chunks(item.id, item.owner_id, item.title, chunks, item.updated_at, now)
        live = set(chunk_vector_ids(item.id, len(chunks)))
        surplus = [vector_id for vector_id in vector_ids if vector_id not in live]
        if surplus:
            await self._index.delete(KNOWLEDGE_NAMESPACE, surplus)

    # -- public API -------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        content: str,
        title: Optional[str] = None,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> KnowledgeItem:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_text(content, "content", config.MAX_TEXT_LENGTH)
        validate_optional_text(title, "title", config.MAX_TITLE_LENGTH)
        now = resolve_now(context, now)

        chunks = self._chunker.split(content)
        item = KnowledgeItem(
            owner_id=owner_id,
            title=title,
            content=content,
            content_hash=self._content_hash(content, title),
            chunk_count=len(chunks),
            created_at=now,
            updated_at=now,
        )
        item = await asyncio.to_thread(self._insert, item)
        try:
            await self._write_chunks(item.id, owner_id, title, chunks, now, now)
        except (ProviderUnavailable, asyncio.CancelledError):
            # Nothing user-visible may point at a half-indexed item.
            await asyncio.to_thread(self._delete_row, item.id)
            await self._delete_vectors_best_effort(item.id, chunk_vector_ids(item.id, len(chunks)), "create_failed")
            raise
        logger.info(
            "knowledge_item_created",
            extra={"knowledge_item_id": item.id, "chunk_count": len(chunks)},
        )
        return item

    async def update(
        self,
        item_id: str,
        content: str,
        title: Optional[str] = None,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> KnowledgeItem:
        validate_required_text(item_id, "item_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_text(content, "content", config.MAX_TEXT_LENGTH)
        validate_optional_text(title, "title", config.MAX_TITLE_LENGTH)
        now = resolve_now(context, now)

        item = await asyncio.to_thread(self._load, item_id)
        if item is None:
            raise ValidationIssue(f"knowledge item not found: {item_id}", field="item_id", error_type="not_found")

        content_hash = self._content_hash(content, title)
        if content_hash == item.content_hash:
            logger.debug("knowledge_item_unchanged", extra={"knowledge_item_id": item_id})
            return item

        chunks = self._chunker.split(content)
        written: list[str] = []
        try:
            await self._write_chunks(item_id, item.owner_id, title, chunks, now, now, written=written)
        except (ProviderUnavailable, asyncio.CancelledError):
            # The row still holds the previous content; so must the index.
            await self._restore_chunks(item, written, now)
            raise
        previous_count = item.chunk_count
        updated = await asyncio.to_thread(
            self._apply_update,
            item_id,
            {
                "content": content,
                "title": title,
                "content_hash": content_hash,
                "chunk_count": len(chunks),
                "updated_at": now,
            },
        )
        if updated is None:
            # Deleted while we were embedding; the new vectors are orphans.
            await self._delete_vectors_best_effort(item_id, chunk_vector_ids(item_id, len(chunks)), "deleted_during_update")
            raise ValidationIssue(f"knowledge item not found: {item_id}", field="item_id", error_type="not_found")
        if previous_count > len(chunks):
            await self._delete_vectors_best_effort(
                item_id,
                chunk_vector_ids(item_id, previous_count, start=len(chunks)),
                "chunk_count_shrunk",
            )
        logger.info(
            "knowledge_item_updated",
            extra={"knowledge_item_id": item_id, "chunk_count": len(chunks)},
        )
        return updated

    async def delete(self, item_id: str) -> dict:
        """Delete the row; vector cleanup never blocks or fails the deletion."""
        validate_required_text(item_id, "item_id", config.MAX_SHORT_TEXT_LENGTH)
        chunk_count = await asyncio.to_thread(self._delete_row, item_id)
        if chunk_count is None:
            return {"status": "not_found", "id": item_id}
        cleaned = await self._delete_vectors_best_effort(
            item_id,
            chunk_vector_ids(item_id, chunk_count),
            "knowledge_item_deleted",
        )
        logger.info(
            "knowledge_item_deleted",
            extra={"knowledge_item_id": item_id, "vector_cleanup": "ok" if cleaned else "pending"},
        )
        return {
            "status": "deleted",
            "id": item_id,
            "vector_cleanup": "ok" if cleaned else "pending",
        }

    async def get(self, item_id: str) -> Optional[KnowledgeItem]:
        return await asyncio.to_thread(self._load, item_id)

    async def list_for_owner(self, owner_id: str, limit: int = config.MAX_RESULT_LIMIT) -> list[KnowledgeItem]:
        validate_required_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

        def _query() -> list[KnowledgeItem]:
            db = get_session()
            try:
                return (
                    db.query(KnowledgeItem)
                    .filter(KnowledgeItem.owner_id == owner_id)
                    .order_by(KnowledgeItem.updated_at.desc(), KnowledgeItem.id.asc())
                    .limit(limit)
                    .all()
                )
            finally:
                db.close()

        return await asyncio.to_thread(_query)

    async def reconcile(self, limit: int = config.RECONCILE_BATCH_LIMIT, now: Optional[datetime] = None) -> dict:
        """Retry vector cleanup left pending by earlier failures."""
        now = resolve_now(None, now)

        def _pending() -> list[VectorReconciliationTask]:
            db = get_session()
            try:
                return (
                    db.query(VectorReconciliationTask)
                    .filter(VectorReconciliationTask.status == "pending")
                    .order_by(VectorReconciliationTask.created_at.asc())
                    .limit(limit)
                    .all()
                )
            finally:
                db.close()

        def _mark(task_id: str, resolved: bool) -> None:
            db = get_session()
            try:
                task = db.get(VectorReconciliationTask, task_id)
                task.attempts = (task.attempts or 0) + 1
                if resolved:
                    task.status = "done"
                    task.resolved_at = now
                db.commit()
            finally:
                db.close()

        resolved = 0
        failed = 0
        for task in await asyncio.to_thread(_pending):
            try:
                if task.reason == REINDEX_REASON:
                    await self._reproject(task.knowledge_item_id, list(task.vector_ids or []), now)
                else:
                    await self._index.delete(task.namespace, list(task.vector_ids or []))
            except ProviderUnavailable:
                failed += 1
                await asyncio.to_thread(_mark, task.id, False)
                continue
            resolved += 1
            await asyncio.to_thread(_mark, task.id, True)
        if resolved or failed:
            logger.info("vector_reconciliation_complete", extra={"resolved": resolved, "failed": failed})
        return {"status": "ok", "resolved": resolved, "failed": failed}


__all__ = [
    "KnowledgeStore",
    "KNOWLEDGE_NAMESPACE",
    "REINDEX_REASON",
    "chunk_vector_id",
    "chunk_vector_ids",
]
