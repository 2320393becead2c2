import pytest
from sqlalchemy import create_engine, inspect

from conftest import Services, T0, run
from ragcore.db import DB, bind_engine, schema_status, upgrade_schema


@pytest.fixture
def blank_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'migrated.sqlite'}", connect_args={"check_same_thread": False})
    previous_engine, previous_session = DB.engine, DB.SessionLocal
    try:
        yield engine
    finally:
        DB.engine, DB.SessionLocal = previous_engine, previous_session
        engine.dispose()


def test_migrations_build_a_usable_schema(blank_engine, monkeypatch):
    import ragcore.config as config

    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)
    assert schema_status(blank_engine)["up_to_date"] is False

    upgrade_schema(blank_engine)

    status = schema_status(blank_engine)
    assert status["up_to_date"] is True
    assert status["current"] == "0001_initial_schema"
    tables = set(inspect(blank_engine).get_table_names())
    assert {"knowledge_items", "conversation_summaries", "rag_operations", "retrieved_documents"} <= tables

    bind_engine(blank_engine)
    services = Services()
    item = run(services.knowledge.create("user-1", "Paris is the capital of France.", now=T0))
    assert run(services.knowledge.get(item.id)).chunk_count == 1


def test_out_of_date_schema_is_refused_without_auto_migrate(blank_engine, monkeypatch):
    import ragcore.config as config

    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", False)

    with pytest.raises(RuntimeError, match="out of date"):
        upgrade_schema(blank_engine)
