import logging

import pytest

from conftest import T0, at, run
from ragcore.db import DB, get_session
from ragcore.errors import ValidationIssue
from ragcore.models import Embedding, RAGOperation, RetrievedDocument
from ragcore.services.operation_tracker import OperationTracker
from ragcore.services.retriever import RankedContext, RetrievedItem


def _ranked(query="capital of France", latency=12.5, scores=(0.9, 0.4), selected=1, degraded=()):
    items = [
        RetrievedItem(f"knowledge:item-{i}:0", "knowledge", f"chunk {i}", score, recency=0.0,
                      metadata={"namespace": "knowledge", "knowledge_item_id": f"item-{i}", "chunk_index": 0})
        for i, score in enumerate(scores)
    ]
    return RankedContext(
        query=query,
        normalized_query=query.lower(),
        items=items,
        selected=items[:selected],
        degraded_sources=list(degraded),
        embedding_key="key-" + query.lower(),
        model_id="test-model",
        operation_time_ms=latency,
        started_at=T0,
    )


def test_ranked_context_is_written_in_rank_order(db):
    tracker = OperationTracker()

    operation_id = tracker.record_ranked_context(_ranked(), conversation_id="c1", user_id="user-1")

    operation = tracker.get_operation(operation_id)
    assert operation.source == "retriever"
    assert operation.operation_time == 12.5
    assert [(d.rank, d.document_id, d.used) for d in operation.documents] == [
        (0, "knowledge:item-0:0", True),
        (1, "knowledge:item-1:0", False),
    ]
    assert operation.documents[0].metadata_ == {
        "namespace": "knowledge",
        "knowledge_item_id": "item-0",
        "chunk_index": 0,
    }


def test_embedding_anchor_is_reused_for_same_normalized_query(db):
    tracker = OperationTracker()

    first = tracker.get_operation(tracker.record_ranked_context(_ranked()))
    second = tracker.get_operation(tracker.record_ranked_context(_ranked()))

    assert first.embedding_id == second.embedding_id
    session = get_session()
    try:
        assert session.query(Embedding).count() == 1
    finally:
        session.close()


def test_tracking_failure_is_logged_and_swallowed(db, caplog, monkeypatch):
    tracker = OperationTracker()

    def broken_session():
        raise RuntimeError("database went away")

    monkeypatch.setattr(DB, "SessionLocal", broken_session)
    with caplog.at_level(logging.WARNING, logger="ragcore"):
        assert tracker.record_ranked_context(_ranked()) is None
    assert any(record.getMessage() == "tracking_failure" for record in caplog.records)


def test_record_rejects_out_of_order_ranks_without_raising(db):
    tracker = OperationTracker()
    operation = RAGOperation(query="q", source="manual", operation_time=1.0, timestamp=T0)
    documents = [
        RetrievedDocument(rank=1, document_id="a", similarity_score=0.5, content="a", timestamp=T0),
        RetrievedDocument(rank=0, document_id="b", similarity_score=0.4, content="b", timestamp=T0),
    ]

    assert tracker.record(operation, documents) is None

    session = get_session()
    try:
        assert session.query(RAGOperation).count() == 0
    finally:
        session.close()


def test_background_records_are_drained(db):
    tracker = OperationTracker()

    async def scenario():
        tracker.record_in_background(_ranked(query="one"))
        tracker.record_in_background(_ranked(query="two"))
        await tracker.drain()

    run(scenario())
    assert len(tracker.list_operations()) == 2


def test_aggregate_reports_latency_similarity_and_degradation(db):
    tracker = OperationTracker()
    for latency, degraded in [(10.0, ()), (20.0, ()), (30.0, ("memory",)), (40.0, ())]:
        tracker.record_ranked_context(_ranked(latency=latency, degraded=degraded), user_id="user-1")
    tracker.record_ranked_context(_ranked(latency=500.0), user_id="user-2")

    stats = tracker.aggregate(filters={"user_id": "user-1"})

    assert stats["operation_count"] == 4
    assert stats["latency_ms"]["mean"] == pytest.approx(25.0)
    assert stats["latency_ms"]["p50"] == pytest.approx(25.0)
    assert stats["latency_ms"]["p99"] <= 40.0
    assert stats["avg_similarity"] == pytest.approx(0.65)
    assert stats["avg_used_similarity"] == pytest.approx(0.9)
    assert stats["avg_documents_per_operation"] == pytest.approx(2.0)
    assert stats["degraded_operation_count"] == 1
    assert stats["documents_by_source"] == {"knowledge": 8}


def test_aggregate_time_range_and_empty_result(db):
    tracker = OperationTracker()
    tracker.record_ranked_context(_ranked())

    assert tracker.aggregate(time_range=(at(1), None))["operation_count"] == 0
    assert tracker.aggregate(time_range=(T0, at(1)))["operation_count"] == 1
    empty = tracker.aggregate(filters={"user_id": "nobody"})
    assert empty["latency_ms"]["p95"] is None
    assert empty["avg_similarity"] is None

    with pytest.raises(ValidationIssue):
        tracker.aggregate(filters={"query": "x"})


def test_feedback_is_one_per_message_and_feeds_aggregate(services):
    conversation = run(services.memory.create_conversation(owner_id="user-1", now=T0))
    message = run(services.memory.append_message(conversation.id, "assistant", "Paris.", now=T0))
    services.tracker.record_ranked_context(_ranked(), message_id=message.id)

    assert services.tracker.record_feedback(message.id, 1)["status"] == "stored"
    assert services.tracker.record_feedback(message.id, -1, comment="wrong")["status"] == "updated"
    assert services.tracker.aggregate()["avg_feedback_rating"] == pytest.approx(-1.0)

    with pytest.raises(ValidationIssue):
        services.tracker.record_feedback(message.id, 2)
    with pytest.raises(ValidationIssue):
        services.tracker.record_feedback("missing", 1)
