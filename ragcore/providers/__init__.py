"""
Provider selection by configuration.
"""

from __future__ import annotations

from typing import Callable, Optional

import ragcore.config as config
from ragcore.providers.completion import (
    CompletionProvider,
    DisabledCompletionProvider,
    OpenAICompletionProvider,
)
from ragcore.providers.embedding import (
    DisabledEmbeddingProvider,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
)
from ragcore.providers.vector_index import (
    InMemoryVectorIndex,
    SqlVectorIndex,
    VectorIndex,
    VectorMatch,
)

EMBEDDING_BACKENDS: dict[str, Callable[[], EmbeddingProvider]] = {
    "openai": OpenAIEmbeddingProvider,
    "sentence_transformers": SentenceTransformerEmbeddingProvider,
    "none": DisabledEmbeddingProvider,
}

COMPLETION_BACKENDS: dict[str, Callable[[], CompletionProvider]] = {
    "openai": OpenAICompletionProvider,
    "none": DisabledCompletionProvider,
}

VECTOR_BACKENDS: dict[str, Callable[[], VectorIndex]] = {
    "memory": InMemoryVectorIndex,
    "sql": SqlVectorIndex,
    "pgvector": lambda: SqlVectorIndex(use_pgvector=True),
}


def _build(registry: dict, name: str, kind: str):
    factory = registry.get(name)
    if factory is None:
        raise RuntimeError(f"Unknown {kind} backend: {name}")
    return factory()


def build_embedding_provider(name: Optional[str] = None) -> EmbeddingProvider:
    return _build(EMBEDDING_BACKENDS, name or config.EMBEDDING_PROVIDER, "embedding")


def build_completion_provider(name: Optional[str] = None) -> CompletionProvider:
    return _build(COMPLETION_BACKENDS, name or config.COMPLETION_PROVIDER, "completion")


def build_vector_index(name: Optional[str] = None) -> VectorIndex:
    return _build(VECTOR_BACKENDS, name or config.VECTOR_BACKEND, "vector index")


__all__ = [
    "EmbeddingProvider",
    "CompletionProvider",
    "VectorIndex",
    "VectorMatch",
    "build_embedding_provider",
    "build_completion_provider",
    "build_vector_index",
]
