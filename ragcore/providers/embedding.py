"""
Embedding provider adapters.

Each adapter satisfies `EmbeddingProvider`; the active one is chosen by
EMBEDDING_PROVIDER through `ragcore.providers.build_embedding_provider`.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

import httpx

import ragcore.config as config
from ragcore.errors import EmbeddingProviderError
from ragcore.providers.resilience import CircuitBreaker, RetryableError, call_with_retries
from ragcore.validators import validate_embedding_text

logger = config.logger

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class EmbeddingProvider(Protocol):
    async def embed(self, text: str, model_id: str) -> List[float]:
        ...


class OpenAIEmbeddingProvider:
    """OpenAI-compatible /embeddings endpoint over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = config.OPENAI_API_KEY,
        base_url: str = config.OPENAI_BASE_URL,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        )
        self.breaker = breaker or CircuitBreaker(
            "embedding",
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )

    async def _post(self, text: str, model_id: str) -> List[float]:
        try:
            response = await self._client.post(
                f"{self._base_url}/embeddings",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={"model": model_id, "input": text},
            )
        except httpx.RequestError as exc:
            raise RetryableError(f"request error: {exc.__class__.__name__}") from exc
        if response.status_code in RETRYABLE_STATUS:
            raise RetryableError(f"status {response.status_code}")
        if response.status_code >= 400:
            raise EmbeddingProviderError(f"embedding provider returned status {response.status_code}")
        data = response.json()
        return data["data"][0]["embedding"]

    async def embed(self, text: str, model_id: str) -> List[float]:
        validate_embedding_text(text)
        return await call_with_retries(
            lambda: self._post(text, model_id),
            breaker=self.breaker,
            error_cls=EmbeddingProviderError,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class SentenceTransformerEmbeddingProvider:
    """Local CPU embeddings; requires the `local` extra."""

    def __init__(self, model_name: str = config.LOCAL_EMBEDDING_MODEL):
        self._model_name = model_name
        self._model = None

    def _load(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise EmbeddingProviderError("sentence-transformers is not installed") from exc
            self._model = SentenceTransformer(self._model_name)
        return self._model

    def _embed_sync(self, text: str) -> List[float]:
        model = self._load()
        return model.encode([text], normalize_embeddings=True)[0].tolist()

    async def embed(self, text: str, model_id: str) -> List[float]:
        validate_embedding_text(text)
        try:
            return await asyncio.to_thread(self._embed_sync, text)
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            logger.warning("local_embedding_failed", extra={"model": self._model_name})
            raise EmbeddingProviderError("local embedding failed") from exc


class DisabledEmbeddingProvider:
    async def embed(self, text: str, model_id: str) -> List[float]:
        raise EmbeddingProviderError("embedding provider disabled")
