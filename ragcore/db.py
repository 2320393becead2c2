"""
Engine, session factory and schema management.

Services open short-lived sessions through `get_session()`; the process
binds the engine once through `init_db()` (or `bind_engine()` when the
caller already owns an engine, as the tests do).
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import ragcore.config as config

logger = config.logger

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def bind_engine(engine: Engine) -> None:
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return DB.SessionLocal()


def dispose_engine() -> None:
    if DB.engine is not None:
        DB.engine.dispose()


def _alembic_config(engine: Engine):
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(PROJECT_ROOT, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "alembic"))
    url = engine.url.render_as_string(hide_password=False)
    alembic_cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return alembic_cfg


def schema_status(engine: Engine) -> dict:
    """Current and head Alembic revisions for `engine`."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(_alembic_config(engine)).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return {"current": current, "head": head, "up_to_date": current == head}


def upgrade_schema(engine: Engine) -> None:
    """Migrate `engine` to head, or refuse when auto-migration is off."""
    from alembic import command

    status = schema_status(engine)
    if status["up_to_date"]:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema out of date (current={status['current']}, expected={status['head']}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    alembic_cfg = _alembic_config(engine)
    with engine.begin() as conn:
        alembic_cfg.attributes["connection"] = conn
        command.upgrade(alembic_cfg, "head")
    if not schema_status(engine)["up_to_date"]:
        raise RuntimeError("Database migration did not reach expected revision")
    logger.info("schema_migrated", extra={"from_revision": status["current"], "to_revision": status["head"]})


def _ensure_vector_extension(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()


def init_db(database_url: Optional[str] = None) -> Engine:
    """Validate configuration, bind the engine and bring the schema to head."""
    config.validate_and_prepare_config()
    url = database_url or config.DATABASE_URL

    engine_kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **engine_kwargs)
    bind_engine(engine)

    if config.AUTO_CREATE_EXTENSIONS and engine.dialect.name == "postgresql" and config.VECTOR_BACKEND == "pgvector":
        _ensure_vector_extension(engine)

    upgrade_schema(engine)
    logger.info("database_initialized", extra={"dialect": engine.dialect.name})
    return engine


__all__ = [
    "DB",
    "bind_engine",
    "get_session",
    "dispose_engine",
    "schema_status",
    "upgrade_schema",
    "init_db",
]
