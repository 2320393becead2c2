import asyncio
import hashlib
import os
import re
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "memory")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")
os.environ.setdefault("COMPLETION_PROVIDER", "none")
os.environ.setdefault("SUMMARIZER", "extractive")

import pytest
from sqlalchemy import create_engine

from ragcore.db import DB, bind_engine
from ragcore.errors import CompletionProviderError, EmbeddingProviderError, VectorIndexError
from ragcore.models import Base
from ragcore.providers.vector_index import InMemoryVectorIndex
from ragcore.services.embedding_cache import EmbeddingCache
from ragcore.services.knowledge_store import KnowledgeStore
from ragcore.services.memory_manager import MemoryManager
from ragcore.services.operation_tracker import OperationTracker
from ragcore.services.orchestrator import CompletionOrchestrator
from ragcore.services.retriever import Retriever
from ragcore.services.summarizer import ExtractiveSummarizer

T0 = datetime(2026, 1, 1, 12, 0, 0)
_TOKEN_RE = re.compile(r"[a-z0-9]+")


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


class FakeEmbeddingProvider:
    """Bag-of-words hashing embeddings: shared words mean higher cosine similarity."""

    def __init__(self, dim=2048, delay=0.0, fail=False):
        self.dim = dim
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.texts = []

    async def embed(self, text, model_id):
        self.calls += 1
        self.texts.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingProviderError("fake embedding outage")
        vector = [0.0] * self.dim
        for token in _TOKEN_RE.findall(text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


class FakeCompletionProvider:
    def __init__(self, reply="Paris.", fragments=None, delay=0.0, fail=False):
        self.reply = reply
        self.fragments = fragments or ["Par", "is", "."]
        self.delay = delay
        self.fail = fail
        self.prompts = []
        self.started = None  # optional asyncio.Event set when complete() is entered
        self.stream_closed = False

    async def complete(self, prompt, options=None):
        self.prompts.append(prompt)
        if self.started is not None:
            self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CompletionProviderError("fake completion outage")
        return self.reply

    async def stream(self, prompt, options=None):
        self.prompts.append(prompt)
        try:
            for fragment in self.fragments:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
        finally:
            self.stream_closed = True


class FlakyVectorIndex(InMemoryVectorIndex):
    """In-memory index that fails chosen operations on chosen namespaces."""

    def __init__(self):
        super().__init__()
        self.failing = set()  # {(operation, namespace)}
        self.trips = {}  # {(operation, namespace): [calls left before failing, fail only once]}
        self.upserts = 0
        self.deletes = 0

    def fail(self, operation, namespace):
        self.failing.add((operation, namespace))

    def fail_after(self, operation, namespace, calls, once=True):
        """Let `calls` more calls through, then fail once (or until healed)."""
        self.trips[(operation, namespace)] = [calls, once]

    def heal(self):
        self.failing.clear()
        self.trips.clear()

    def _check(self, operation, namespace):
        trip = self.trips.get((operation, namespace))
        if trip is not None:
            if trip[0] > 0:
                trip[0] -= 1
            elif trip[1]:
                del self.trips[(operation, namespace)]
                raise VectorIndexError(f"fake {operation} outage on {namespace}")
            else:
                self.failing.add((operation, namespace))
        if (operation, namespace) in self.failing:
            raise VectorIndexError(f"fake {operation} outage on {namespace}")

    async def upsert(self, namespace, id, vector, metadata):
        self._check("upsert", namespace)
        self.upserts += 1
        await super().upsert(namespace, id, vector, metadata)

    async def query(self, namespace, vector, top_k, filter=None):
        self._check("query", namespace)
        return await super().query(namespace, vector, top_k, filter=filter)

    async def delete(self, namespace, ids):
        self._check("delete", namespace)
        self.deletes += 1
        await super().delete(namespace, ids)


class Services:
    def __init__(self, embedding=None, completion=None, index=None, summarizer=None, **memory_options):
        self.embedding = embedding or FakeEmbeddingProvider()
        self.completion = completion or FakeCompletionProvider()
        self.index = index or FlakyVectorIndex()
        self.cache = EmbeddingCache(self.embedding, ttl_seconds=3600, max_entries=1000)
        self.knowledge = KnowledgeStore(self.cache, self.index)
        memory_options.setdefault("message_threshold", 10)
        self.memory = MemoryManager(self.cache, self.index, summarizer or ExtractiveSummarizer(), **memory_options)
        self.retriever = Retriever(self.cache, self.index, self.memory)
        self.tracker = OperationTracker()
        self.orchestrator = CompletionOrchestrator(self.retriever, self.memory, self.completion, self.tracker)


@pytest.fixture
def db(tmp_path):
    db_path = tmp_path / "ragcore.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    bind_engine(engine)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def services(db):
    return Services()


def run(coro):
    return asyncio.run(coro)
