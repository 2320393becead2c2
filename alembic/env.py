"""Alembic environment for RAGCore."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

import ragcore.config as ragcore_config
from ragcore.models import Base

config = context.config

# ragcore.db.upgrade_schema passes its own connection; the CLI builds one from the URL.
shared_connection = config.attributes.get("connection")

if config.config_file_name is not None and shared_connection is None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

if shared_connection is None and ragcore_config.DATABASE_URL:
    config.set_main_option("sqlalchemy.url", ragcore_config.DATABASE_URL.replace("%", "%%"))

target_metadata = Base.metadata


def _configure(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    if shared_connection is not None:
        _configure(shared_connection)
        return
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
