import asyncio
from datetime import timedelta

import pytest

from conftest import FakeEmbeddingProvider, T0, run
from ragcore.errors import EmbeddingProviderError, ValidationIssue
from ragcore.services.embedding_cache import EmbeddingCache, cache_key, normalize_text


def test_normalize_text_is_documented_form():
    assert normalize_text("  Hello\t\nWORLD  ") == "hello world"
    assert normalize_text("Café") == "café"
    assert cache_key("Hello World", "m") == cache_key("  hello   world ", "m")
    assert cache_key("Hello World", "m") != cache_key("Hello World", "other-model")


def test_single_flight_concurrent_misses_share_one_provider_call():
    provider = FakeEmbeddingProvider(delay=0.05)
    cache = EmbeddingCache(provider, ttl_seconds=60)

    async def scenario():
        variants = ["Hello World", "hello world", "  HELLO   world "]
        return await asyncio.gather(
            *(cache.get(variants[i % len(variants)], "m", now=T0) for i in range(20))
        )

    vectors = run(scenario())

    assert provider.calls == 1
    assert all(vector == vectors[0] for vector in vectors)
    stats = cache.stats()
    assert stats["misses"] == 1
    assert stats["joined"] == 19
    assert stats["in_flight"] == 0


def test_unrelated_keys_do_not_wait_on_each_other():
    provider = FakeEmbeddingProvider(delay=0.01)
    cache = EmbeddingCache(provider, ttl_seconds=60)

    async def scenario():
        await asyncio.gather(cache.get("alpha", "m", now=T0), cache.get("beta", "m", now=T0))

    run(scenario())
    assert provider.calls == 2


def test_failure_reaches_every_waiter_and_is_not_cached():
    provider = FakeEmbeddingProvider(delay=0.02, fail=True)
    cache = EmbeddingCache(provider, ttl_seconds=60)

    async def scenario():
        return await asyncio.gather(
            *(cache.get("query text", "m", now=T0) for _ in range(5)),
            return_exceptions=True,
        )

    results = run(scenario())
    assert provider.calls == 1
    assert all(isinstance(result, EmbeddingProviderError) for result in results)
    assert cache.stats()["size"] == 0

    provider.fail = False
    vector = run(cache.get("query text", "m", now=T0))
    assert provider.calls == 2
    assert vector


def test_hit_does_not_call_provider_and_ttl_expires():
    provider = FakeEmbeddingProvider()
    cache = EmbeddingCache(provider, ttl_seconds=60)

    run(cache.get("capital of France", "m", now=T0))
    run(cache.get("Capital  of france", "m", now=T0 + timedelta(seconds=59)))
    assert provider.calls == 1

    run(cache.get("capital of France", "m", now=T0 + timedelta(seconds=61)))
    assert provider.calls == 2
    assert cache.stats()["expired"] == 1


def test_lru_bound_evicts_oldest_entry():
    provider = FakeEmbeddingProvider()
    cache = EmbeddingCache(provider, ttl_seconds=60, max_entries=2)

    async def scenario():
        await cache.get("one", "m", now=T0)
        await cache.get("two", "m", now=T0)
        await cache.get("one", "m", now=T0)
        await cache.get("three", "m", now=T0)

    run(scenario())
    assert cache.peek("one", "m", now=T0) is not None
    assert cache.peek("two", "m", now=T0) is None
    assert cache.stats()["evicted"] == 1
    assert cache.invalidate("One", "m")
    assert cache.peek("one", "m", now=T0) is None


def test_empty_text_is_rejected_before_provider():
    provider = FakeEmbeddingProvider()
    cache = EmbeddingCache(provider)

    with pytest.raises(ValidationIssue):
        run(cache.get("   ", "m", now=T0))
    assert provider.calls == 0


def test_provider_receives_normalized_text():
    provider = FakeEmbeddingProvider()
    cache = EmbeddingCache(provider)

    run(cache.get("  Mixed   CASE text ", "m", now=T0))
    assert provider.texts == ["mixed case text"]


def test_timeout_becomes_provider_error():
    provider = FakeEmbeddingProvider(delay=0.5)
    cache = EmbeddingCache(provider, timeout_seconds=0.01)

    with pytest.raises(EmbeddingProviderError):
        run(cache.get("slow", "m", now=T0))
    assert cache.stats()["provider_failures"] == 1
