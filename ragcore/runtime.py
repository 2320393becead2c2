"""
Process wiring for RAGCore.

`RAGCore.start()` initializes the database and starts the background
reconciliation loop; `aclose()` stops it, drains pending tracking writes
and releases provider clients.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import ragcore.config as config
from ragcore.db import dispose_engine, init_db
from ragcore.providers import build_completion_provider, build_embedding_provider, build_vector_index
from ragcore.providers.completion import CompletionProvider
from ragcore.providers.embedding import EmbeddingProvider
from ragcore.providers.vector_index import VectorIndex
from ragcore.services.chunking import Chunker
from ragcore.services.embedding_cache import EmbeddingCache
from ragcore.services.knowledge_store import KnowledgeStore
from ragcore.services.memory_manager import MemoryManager
from ragcore.services.operation_tracker import OperationTracker
from ragcore.services.orchestrator import CompletionOrchestrator
from ragcore.services.retriever import Retriever
from ragcore.services.summarizer import build_summarizer

logger = config.logger


@dataclass
class RAGCore:
    embedding_provider: EmbeddingProvider
    completion_provider: CompletionProvider
    vector_index: VectorIndex
    embedding_cache: EmbeddingCache
    knowledge: KnowledgeStore
    memory: MemoryManager
    retriever: Retriever
    tracker: OperationTracker
    orchestrator: CompletionOrchestrator
    _reconcile_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_provider: Optional[CompletionProvider] = None,
        vector_index: Optional[VectorIndex] = None,
    ) -> "RAGCore":
        embedding_provider = embedding_provider or build_embedding_provider()
        completion_provider = completion_provider or build_completion_provider()
        vector_index = vector_index or build_vector_index()

        cache = EmbeddingCache(embedding_provider)
        knowledge = KnowledgeStore(cache, vector_index, Chunker())
        memory = MemoryManager(cache, vector_index, build_summarizer(completion_provider))
        retriever = Retriever(cache, vector_index, memory)
        tracker = OperationTracker()
        orchestrator = CompletionOrchestrator(retriever, memory, completion_provider, tracker)
        return cls(
            embedding_provider=embedding_provider,
            completion_provider=completion_provider,
            vector_index=vector_index,
            embedding_cache=cache,
            knowledge=knowledge,
            memory=memory,
            retriever=retriever,
            tracker=tracker,
            orchestrator=orchestrator,
        )

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(config.RECONCILE_INTERVAL_SECONDS)
            try:
                await self.knowledge.reconcile()
            except Exception as exc:
                logger.warning("reconcile_task_error", extra={"error": str(exc)})

    async def start(self, initialize_database: bool = True) -> None:
        if initialize_database:
            await asyncio.to_thread(init_db)
        if config.RECONCILE_INTERVAL_SECONDS > 0:
            await self.knowledge.reconcile()
            self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    async def aclose(self) -> None:
        if self._reconcile_task:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None
        await self.tracker.drain()
        for provider in (self.embedding_provider, self.completion_provider):
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
        dispose_engine()


__all__ = ["RAGCore"]
