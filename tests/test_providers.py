import json

import httpx
import pytest

from conftest import run
from ragcore.errors import EmbeddingProviderError, VectorIndexError
from ragcore.providers.completion import OpenAICompletionProvider
from ragcore.providers.embedding import OpenAIEmbeddingProvider
from ragcore.providers.resilience import BreakerState, CircuitBreaker, RetryableError, call_with_retries
from ragcore.providers.vector_index import InMemoryVectorIndex, SqlVectorIndex, rank_matches


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_openai_embedding_posts_model_and_input():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    provider = OpenAIEmbeddingProvider(api_key="sk-test", base_url="https://llm.test/v1", client=_client(handler))

    vector = run(provider.embed("capital of france", "text-embedding-3-small"))

    assert vector == [0.1, 0.2, 0.3]
    assert seen["url"] == "https://llm.test/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"model": "text-embedding-3-small", "input": "capital of france"}


def test_embedding_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "bad"})

    provider = OpenAIEmbeddingProvider(api_key="sk-test", base_url="https://llm.test/v1", client=_client(handler))

    with pytest.raises(EmbeddingProviderError):
        run(provider.embed("hello", "m"))
    assert len(calls) == 1


def test_completion_parses_message_content():
    def handler(request):
        body = json.loads(request.content)
        assert body["messages"][-1] == {"role": "user", "content": "prompt text"}
        assert body["stream"] is False
        return httpx.Response(200, json={"choices": [{"message": {"content": "Paris."}}]})

    provider = OpenAICompletionProvider(api_key="sk-test", base_url="https://llm.test/v1", client=_client(handler))

    assert run(provider.complete("prompt text")) == "Paris."


def test_completion_stream_yields_server_sent_deltas():
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Par"}}]},
        {"choices": [{"delta": {"content": "is."}}]},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"

    def handler(request):
        return httpx.Response(200, content=body.encode("utf-8"), headers={"Content-Type": "text/event-stream"})

    provider = OpenAICompletionProvider(api_key="sk-test", base_url="https://llm.test/v1", client=_client(handler))

    async def collect():
        return [fragment async for fragment in provider.stream("prompt")]

    assert run(collect()) == ["Par", "is."]
    assert provider.breaker.snapshot().failures == 0


def test_retries_then_succeeds():
    breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=60)
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RetryableError("status 503")
        return "ok"

    result = run(
        call_with_retries(flaky, breaker=breaker, error_cls=EmbeddingProviderError, retry_max=2, backoff_seconds=0, jitter_seconds=0)
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert breaker.snapshot().state is BreakerState.closed


def test_breaker_opens_after_repeated_failures_and_fails_fast():
    breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=60)
    attempts = []

    async def down():
        attempts.append(1)
        raise RetryableError("status 503")

    for _ in range(2):
        with pytest.raises(EmbeddingProviderError):
            run(call_with_retries(down, breaker=breaker, error_cls=EmbeddingProviderError, retry_max=0, backoff_seconds=0, jitter_seconds=0))
    assert breaker.snapshot().state is BreakerState.open

    with pytest.raises(EmbeddingProviderError):
        run(call_with_retries(down, breaker=breaker, error_cls=EmbeddingProviderError, retry_max=0))
    assert len(attempts) == 2
    assert 0 < breaker.snapshot().retry_after_seconds <= 60


def test_breaker_lets_one_trial_through_after_cooldown():
    clock = [100.0]
    breaker = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=30, clock=lambda: clock[0])

    breaker.record_failure("status 503")
    snapshot = breaker.snapshot()
    assert (snapshot.state, snapshot.failures, snapshot.retry_after_seconds) == (BreakerState.open, 1, 30.0)
    assert snapshot.last_error == "status 503"
    assert not breaker.allow()

    clock[0] += 30
    assert breaker.snapshot().state is BreakerState.half_open
    assert breaker.allow()
    assert not breaker.allow()

    breaker.record_failure("status 503")
    clock[0] += 30
    assert breaker.allow()
    breaker.record_success()
    assert breaker.snapshot().state is BreakerState.closed
    assert breaker.allow()


def test_rank_matches_orders_by_score_then_id():
    candidates = [
        ("b", [1.0, 0.0], {}),
        ("a", [1.0, 0.0], {}),
        ("c", [0.0, 1.0], {}),
    ]

    assert [match.id for match in rank_matches([1.0, 0.0], candidates, 3)] == ["a", "b", "c"]
    with pytest.raises(VectorIndexError):
        rank_matches([1.0, 0.0, 0.0], candidates, 3)


def test_in_memory_index_filters_before_top_k():
    index = InMemoryVectorIndex()

    async def scenario():
        await index.upsert("ns", "near", [1.0, 0.0], {"owner_id": "u2"})
        await index.upsert("ns", "far", [0.0, 1.0], {"owner_id": "u1"})
        return await index.query("ns", [1.0, 0.0], 1, filter={"owner_id": ["u1"]})

    assert [match.id for match in run(scenario())] == ["far"]


def test_sql_index_round_trip(db):
    index = SqlVectorIndex()

    async def scenario():
        await index.upsert("knowledge", "k1", [1.0, 0.0], {"owner_id": "u1"})
        await index.upsert("knowledge", "k2", [0.6, 0.8], {"owner_id": "u1"})
        await index.upsert("memory", "m1", [1.0, 0.0], {"conversation_id": "c1"})
        first = await index.query("knowledge", [1.0, 0.0], 5)
        await index.delete("knowledge", ["k1"])
        second = await index.query("knowledge", [1.0, 0.0], 5)
        return first, second

    first, second = run(scenario())

    assert [match.id for match in first] == ["k1", "k2"]
    assert first[0].metadata == {"owner_id": "u1"}
    assert [match.id for match in second] == ["k2"]
