import pytest

from conftest import Services, T0, at, run
from ragcore.db import get_session
from ragcore.errors import EmbeddingProviderError, ValidationIssue, VectorIndexError
from ragcore.models import KnowledgeItem, VectorReconciliationTask
from ragcore.services.chunking import Chunker
from ragcore.services.knowledge_store import KNOWLEDGE_NAMESPACE, REINDEX_REASON, KnowledgeStore, chunk_vector_id


def _knowledge_ids(ranked):
    return {item.metadata.get("knowledge_item_id") for item in ranked.items if item.source == "knowledge"}


def test_create_indexes_each_chunk_with_typed_metadata(services):
    store = KnowledgeStore(services.cache, services.index, Chunker("fixed", 40, 10))
    content = "Paris is the capital of France. Berlin is the capital of Germany."
    item = run(store.create("user-1", content, title="Capitals", now=T0))

    expected_chunks = Chunker("fixed", 40, 10).split(content)
    assert item.chunk_count == len(expected_chunks) == 2
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 2

    matches = run(services.index.query(KNOWLEDGE_NAMESPACE, [1.0] * 2048, 10))
    metadata = {match.id: match.metadata for match in matches}
    first = metadata[chunk_vector_id(item.id, 0)]
    assert set(first) == {"owner_id", "knowledge_item_id", "chunk_index", "title", "text", "updated_at"}
    assert first["owner_id"] == "user-1"
    assert first["text"] == expected_chunks[0]


def test_empty_content_writes_no_vectors(services):
    item = run(services.knowledge.create("user-1", "   ", now=T0))

    assert item.chunk_count == 0
    assert services.index.upserts == 0
    assert services.embedding.calls == 0


def test_deleted_item_never_appears_in_results(services):
    paris = run(services.knowledge.create("user-1", "Paris is the capital of France.", now=T0))
    run(services.knowledge.create("user-1", "Berlin is the capital of Germany.", now=T0))

    before = run(services.retriever.retrieve("capital of France", "user-1"))
    assert paris.id in _knowledge_ids(before)

    result = run(services.knowledge.delete(paris.id))
    assert result == {"status": "deleted", "id": paris.id, "vector_cleanup": "ok"}

    after = run(services.retriever.retrieve("capital of France", "user-1"))
    assert paris.id not in _knowledge_ids(after)
    assert run(services.knowledge.get(paris.id)) is None


def test_failed_vector_delete_is_recorded_and_still_hidden(services):
    paris = run(services.knowledge.create("user-1", "Paris is the capital of France.", now=T0))
    services.index.fail("delete", KNOWLEDGE_NAMESPACE)

    result = run(services.knowledge.delete(paris.id))
    assert result["status"] == "deleted"
    assert result["vector_cleanup"] == "pending"
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 1

    after = run(services.retriever.retrieve("capital of France", "user-1"))
    assert paris.id not in _knowledge_ids(after)

    db = get_session()
    try:
        tasks = db.query(VectorReconciliationTask).all()
        assert len(tasks) == 1
        assert tasks[0].vector_ids == [chunk_vector_id(paris.id, 0)]
    finally:
        db.close()

    still_failing = run(services.knowledge.reconcile(now=at(1)))
    assert still_failing == {"status": "ok", "resolved": 0, "failed": 1}

    services.index.heal()
    resolved = run(services.knowledge.reconcile(now=at(2)))
    assert resolved == {"status": "ok", "resolved": 1, "failed": 0}
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 0


def test_unchanged_update_is_idempotent(services):
    item = run(services.knowledge.create("user-1", "Paris is the capital of France.", title="Paris", now=T0))
    upserts = services.index.upserts
    calls = services.embedding.calls

    updated = run(services.knowledge.update(item.id, "Paris is the capital of France.", title="Paris", now=at(5)))

    assert services.index.upserts == upserts
    assert services.embedding.calls == calls
    assert updated.updated_at == T0


def test_update_that_shrinks_deletes_surplus_vectors(db):
    services = Services()
    store = KnowledgeStore(services.cache, services.index, Chunker("fixed", 20, 0))
    item = run(store.create("user-1", "a" * 60, now=T0))
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 3

    updated = run(store.update(item.id, "b" * 20, now=at(1)))

    assert updated.chunk_count == 1
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 1


def test_create_rolls_back_when_embedding_fails(services):
    services.embedding.fail = True

    with pytest.raises(EmbeddingProviderError):
        run(services.knowledge.create("user-1", "Paris is the capital of France.", now=T0))

    db = get_session()
    try:
        assert db.query(KnowledgeItem).count() == 0
    finally:
        db.close()


def test_validation_happens_before_any_external_call(services):
    with pytest.raises(ValidationIssue):
        run(services.knowledge.create("", "content", now=T0))
    with pytest.raises(ValidationIssue):
        run(services.knowledge.update("missing-id", "content", now=T0))
    assert services.embedding.calls == 0
    assert run(services.knowledge.delete("missing-id")) == {"status": "not_found", "id": "missing-id"}


def test_list_for_owner_is_scoped(services):
    run(services.knowledge.create("user-1", "first", now=T0))
    run(services.knowledge.create("user-1", "second", now=at(1)))
    run(services.knowledge.create("user-2", "other", now=at(2)))

    items = run(services.knowledge.list_for_owner("user-1"))
    assert [item.content for item in items] == ["second", "first"]


def _indexed_chunks(services, item_id):
    matches = run(services.index.query(KNOWLEDGE_NAMESPACE, [1.0] * 2048, 10))
    return sorted(
        (match.metadata["chunk_index"], match.metadata["text"])
        for match in matches
        if match.metadata["knowledge_item_id"] == item_id
    )


def test_update_failing_midway_restores_previous_chunks(db):
    services = Services()
    store = KnowledgeStore(services.cache, services.index, Chunker("fixed", 20, 0))
    item = run(store.create("user-1", "old text about cats.old text about dogs.", now=T0))
    services.index.fail_after("upsert", KNOWLEDGE_NAMESPACE, 1)

    with pytest.raises(VectorIndexError):
        run(store.update(item.id, "Paris is in France. Lyon is in France.", now=at(1)))

    assert _indexed_chunks(services, item.id) == [(0, "old text about cats."), (1, "old text about dogs.")]
    stored = run(store.get(item.id))
    assert stored.content == "old text about cats.old text about dogs."
    assert stored.updated_at == T0


def test_failed_restore_is_reprojected_by_reconcile(db):
    services = Services()
    store = KnowledgeStore(services.cache, services.index, Chunker("fixed", 20, 0))
    item = run(store.create("user-1", "old text about cats.old text about dogs.", now=T0))
    services.index.fail_after("upsert", KNOWLEDGE_NAMESPACE, 1, once=False)

    with pytest.raises(VectorIndexError):
        run(store.update(item.id, "Paris is in France. Lyon is in France.", now=at(1)))

    db_session = get_session()
    try:
        task = db_session.query(VectorReconciliationTask).one()
        assert task.reason == REINDEX_REASON
        assert task.vector_ids == [chunk_vector_id(item.id, 0)]
    finally:
        db_session.close()

    services.index.heal()
    assert run(store.reconcile(now=at(2))) == {"status": "ok", "resolved": 1, "failed": 0}
    assert _indexed_chunks(services, item.id) == [(0, "old text about cats."), (1, "old text about dogs.")]
