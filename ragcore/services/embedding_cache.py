"""
Memoized text -> vector lookups with single-flight misses.

Normalization (applied before hashing and before the provider call):
Unicode NFC, strip, collapse every whitespace run to one space, lowercase.
The cache key is sha256(model_id + NUL + normalized text).
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import ragcore.config as config
from ragcore.context import RequestContext, resolve_now
from ragcore.errors import EmbeddingProviderError, ValidationIssue
from ragcore.providers.embedding import EmbeddingProvider

logger = config.logger

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    if not isinstance(text, str):
        raise ValidationIssue("text must be a string", field="text", error_type="invalid_type")
    text = unicodedata.normalize("NFC", text)
    return _WHITESPACE_RE.sub(" ", text.strip()).lower()


def text_hash(normalized: str) -> str:
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def cache_key(text: str, model_id: str) -> str:
    normalized = normalize_text(text)
    return hashlib.sha256(f"{model_id}\x00{normalized}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class _CacheEntry:
    vector: tuple[float, ...]
    expires_at: datetime


class EmbeddingCache:
    """
    Process-wide embedding cache shared by concurrent requests.

    A miss starts one provider task per key; every concurrent caller for that
    key awaits the same task, so the provider sees at most one in-flight call
    per key. Failures reach every waiter and are never cached. Callers that
    are cancelled stop waiting; the shared task is left to finish for the
    others.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        ttl_seconds: int = config.EMBEDDING_CACHE_TTL_SECONDS,
        max_entries: int = config.EMBEDDING_CACHE_MAX_ENTRIES,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
        default_model_id: str = config.EMBEDDING_MODEL,
    ):
        self._provider = provider
        self._ttl = timedelta(seconds=max(0, ttl_seconds))
        self._max_entries = max(1, max_entries)
        self._timeout_seconds = timeout_seconds
        self.default_model_id = default_model_id
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "joined": 0,
            "provider_calls": 0,
            "provider_failures": 0,
            "expired": 0,
            "evicted": 0,
        }

    async def get(
        self,
        text: str,
        model_id: Optional[str] = None,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> list[float]:
        model_id = model_id or self.default_model_id
        normalized = normalize_text(text)
        if not normalized:
            raise ValidationIssue("text must be a non-empty string", field="text", error_type="required")
        key = cache_key(normalized, model_id)
        now = resolve_now(context, now)

        entry = self._entries.get(key)
        if entry is not None:
            if entry.expires_at > now:
                self._entries.move_to_end(key)
                self._stats["hits"] += 1
                return list(entry.vector)
            self._entries.pop(key, None)
            self._stats["expired"] += 1

        task = self._in_flight.get(key)
        if task is None:
            self._stats["misses"] += 1
            task = asyncio.ensure_future(self._fetch(key, normalized, model_id, now))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._finish(key, done))
        else:
            self._stats["joined"] += 1
        vector = await asyncio.shield(task)
        return list(vector)

    async def _fetch(self, key: str, normalized: str, model_id: str, now: datetime) -> tuple[float, ...]:
        self._stats["provider_calls"] += 1
        try:
            vector = await asyncio.wait_for(
                self._provider.embed(normalized, model_id),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self._stats["provider_failures"] += 1
            logger.warning("embedding_timeout", extra={"model_id": model_id})
            raise EmbeddingProviderError("embedding provider timed out") from exc
        except Exception:
            self._stats["provider_failures"] += 1
            raise
        stored = tuple(float(value) for value in vector)
        self._store(key, stored, now)
        return stored

    def _finish(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            self._in_flight.pop(key, None)
        if not task.cancelled():
            # Mark the exception retrieved when every waiter has gone away.
            task.exception()

    def _store(self, key: str, vector: tuple[float, ...], now: datetime) -> None:
        self._entries[key] = _CacheEntry(vector=vector, expires_at=now + self._ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats["evicted"] += 1

    def peek(self, text: str, model_id: Optional[str] = None, now: Optional[datetime] = None) -> Optional[list[float]]:
        """Cached vector without touching the provider or the stats."""
        key = cache_key(text, model_id or self.default_model_id)
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= resolve_now(None, now):
            return None
        return list(entry.vector)

    def invalidate(self, text: str, model_id: Optional[str] = None) -> bool:
        return self._entries.pop(cache_key(text, model_id or self.default_model_id), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        return {
            **self._stats,
            "in_flight": len(self._in_flight),
            "size": len(self._entries),
        }


__all__ = [
    "EmbeddingCache",
    "normalize_text",
    "text_hash",
    "cache_key",
]
