import pytest

from conftest import Services, T0, at, run
from ragcore.db import get_session
from ragcore.errors import RetrievalUnavailable, ValidationIssue
from ragcore.models import RAGOperation
from ragcore.services.knowledge_store import KNOWLEDGE_NAMESPACE
from ragcore.services.memory_manager import MEMORY_NAMESPACE
from ragcore.services.retriever import RetrievedItem, Retriever, assemble_within_budget


def _seed_capitals(services):
    paris = run(services.knowledge.create("user-1", "Paris is the capital of France.", title="France", now=T0))
    berlin = run(services.knowledge.create("user-1", "Berlin is the capital of Germany.", title="Germany", now=T0))
    return paris, berlin


def test_capital_of_france_ranks_paris_first_and_is_recorded(services):
    paris, berlin = _seed_capitals(services)

    ranked = run(services.retriever.retrieve("capital of France", "user-1", top_k=2))

    assert [item.metadata["knowledge_item_id"] for item in ranked.items] == [paris.id, berlin.id]
    assert ranked.items[0].score > ranked.items[1].score
    assert ranked.degraded_sources == []

    operation_id = services.tracker.record_ranked_context(ranked, user_id="user-1")
    operation = services.tracker.get_operation(operation_id)
    assert len(operation.documents) == 2
    assert [d.rank for d in operation.documents] == [0, 1]
    assert [d.document_id for d in operation.documents] == [item.document_id for item in ranked.items]
    assert operation.documents[0].content == "Paris is the capital of France."


def test_ranking_is_deterministic_for_ties(services):
    first = run(services.knowledge.create("user-1", "Identical fact about rivers.", now=T0))
    second = run(services.knowledge.create("user-1", "Identical fact about rivers.", now=at(1)))

    orders = [
        [item.document_id for item in run(services.retriever.retrieve("rivers", "user-1")).items]
        for _ in range(3)
    ]

    assert orders[0] == orders[1] == orders[2]
    # Equal similarity falls back to recency, newest first.
    assert orders[0][0].startswith(f"knowledge:{second.id}")
    assert orders[0][1].startswith(f"knowledge:{first.id}")


def test_source_priority_breaks_cross_source_ties():
    services = Services()
    knowledge_first = Retriever(services.cache, services.index, services.memory, source_priority=("knowledge", "memory"))
    memory_first = Retriever(services.cache, services.index, services.memory, source_priority=("memory", "knowledge"))
    items = [
        RetrievedItem("summary:1", "memory", "m", 0.5, recency=10.0),
        RetrievedItem("knowledge:1:0", "knowledge", "k", 0.5, recency=1.0),
    ]

    assert sorted(items, key=knowledge_first.rank_key)[0].source == "knowledge"
    assert sorted(items, key=memory_first.rank_key)[0].source == "memory"


def test_filters_apply_before_top_k(services):
    items = [
        run(services.knowledge.create("user-1", f"Apples and oranges fact number {i}.", now=at(i)))
        for i in range(5)
    ]
    target = run(services.knowledge.create("user-1", "Completely unrelated text about boats.", now=at(9)))

    ranked = run(
        services.retriever.retrieve(
            "apples and oranges",
            "user-1",
            top_k=1,
            filters={"knowledge_item_id": target.id},
        )
    )

    assert [item.metadata["knowledge_item_id"] for item in ranked.items] == [target.id]
    assert len(items) == 5


def test_results_are_scoped_to_owner(services):
    run(services.knowledge.create("user-2", "Paris is the capital of France.", now=T0))

    ranked = run(services.retriever.retrieve("capital of France", "user-1"))
    assert ranked.items == []

    with pytest.raises(ValidationIssue):
        run(services.retriever.retrieve("capital of France", "user-1", filters={"owner_id": "user-2"}))


def test_unknown_filter_key_is_rejected_before_embedding(services):
    with pytest.raises(ValidationIssue):
        run(services.retriever.retrieve("query", "user-1", filters={"colour": "red"}))
    with pytest.raises(ValidationIssue):
        run(services.retriever.retrieve("   ", "user-1"))
    with pytest.raises(ValidationIssue):
        run(services.retriever.retrieve("query", "user-1", top_k=0))
    assert services.embedding.calls == 0


def test_one_source_down_degrades_result(services):
    _seed_capitals(services)
    conversation = run(services.memory.create_conversation(owner_id="user-1", now=T0))
    services.index.fail("query", MEMORY_NAMESPACE)

    ranked = run(services.retriever.retrieve("capital of France", "user-1", conversation_id=conversation.id))

    assert ranked.degraded_sources == ["memory"]
    assert ranked.degraded
    assert ranked.items


def test_all_sources_down_raises(services):
    conversation = run(services.memory.create_conversation(owner_id="user-1", now=T0))
    services.index.fail("query", MEMORY_NAMESPACE)
    services.index.fail("query", KNOWLEDGE_NAMESPACE)

    with pytest.raises(RetrievalUnavailable) as excinfo:
        run(services.retriever.retrieve("capital of France", "user-1", conversation_id=conversation.id))
    assert set(excinfo.value.sources) == {"knowledge", "memory"}


def test_embedding_outage_is_retrieval_unavailable(services):
    services.embedding.fail = True

    with pytest.raises(RetrievalUnavailable):
        run(services.retriever.retrieve("capital of France", "user-1"))


def test_memory_items_merge_with_knowledge(services):
    _seed_capitals(services)
    conversation = run(services.memory.create_conversation(owner_id="user-1", now=T0))

    async def chat():
        for seq in range(1, 11):
            await services.memory.append_message(
                conversation.id, "user", "we discussed the capital of France at length", now=at(seq)
            )

    run(chat())
    ranked = run(services.retriever.retrieve("capital of France", "user-1", conversation_id=conversation.id))

    assert {item.source for item in ranked.items} == {"knowledge", "memory"}
    memory_item = next(item for item in ranked.items if item.source == "memory")
    assert set(memory_item.metadata) <= {"namespace", "summary_id", "tier", "updated_at"}


def test_char_budget_drops_tail_items():
    items = [
        RetrievedItem("a", "knowledge", "x" * 40, 0.9),
        RetrievedItem("b", "knowledge", "y" * 40, 0.8),
        RetrievedItem("c", "knowledge", "z" * 10, 0.7),
    ]

    assert [item.document_id for item in assemble_within_budget(items, 60)] == ["a"]
    assert [item.document_id for item in assemble_within_budget(items, 100)] == ["a", "b", "c"]


def test_retrieval_does_not_write_operations(services):
    _seed_capitals(services)
    run(services.retriever.retrieve("capital of France", "user-1"))

    db = get_session()
    try:
        assert db.query(RAGOperation).count() == 0
    finally:
        db.close()


def test_another_users_conversation_is_refused_before_embedding(services):
    conversation = run(services.memory.create_conversation(owner_id="alice", now=T0))

    async def chat():
        for seq in range(1, 11):
            await services.memory.append_message(conversation.id, "user", "my secret bank pin is 4321", now=at(seq))

    run(chat())
    calls = services.embedding.calls

    with pytest.raises(ValidationIssue) as excinfo:
        run(services.retriever.retrieve("secret bank pin", "mallory", conversation_id=conversation.id))

    assert excinfo.value.field == "conversation_id"
    assert excinfo.value.error_type == "forbidden"
    assert services.embedding.calls == calls
    own = run(services.retriever.retrieve("secret bank pin", "alice", conversation_id=conversation.id))
    assert [item.source for item in own.items] == ["memory"]


def test_stale_vectors_do_not_crowd_out_live_matches(services):
    paris = run(services.knowledge.create("user-1", "Paris is the capital of France.", now=T0))
    services.index.fail("delete", KNOWLEDGE_NAMESPACE)
    assert run(services.knowledge.delete(paris.id))["vector_cleanup"] == "pending"
    services.index.heal()
    lyon = run(services.knowledge.create("user-1", "Lyon is a large city in France.", now=at(1)))
    assert services.index.count(KNOWLEDGE_NAMESPACE) == 2

    ranked = run(services.retriever.retrieve("capital of France", "user-1", top_k=1))

    assert [item.metadata["knowledge_item_id"] for item in ranked.items] == [lyon.id]
