"""Initial RAGCore schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import ragcore.config as config


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _vector_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    id_type = sa.String(length=36)

    summary_tier = sa.Enum("short_term", "medium_term", "long_term", name="summary_tier")
    embedding_source = sa.Enum("user_query", "conversation_history", "document", name="embedding_source")

    op.create_table(
        "knowledge_items",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=500)),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(length=64)),
        sa.Column("chunk_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_knowledge_items_owner", "knowledge_items", ["owner_id"])

    op.create_table(
        "vector_reconciliation_tasks",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("knowledge_item_id", id_type, nullable=False),
        sa.Column("namespace", sa.String(length=50), nullable=False, server_default="knowledge"),
        sa.Column("vector_ids", json_type, nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime()),
    )
    op.create_index("ix_vector_reconciliation_tasks_status", "vector_reconciliation_tasks", ["status"])

    op.create_table(
        "system_prompts",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=255)),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "conversations",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=255)),
        sa.Column("system_prompt_id", id_type, sa.ForeignKey("system_prompts.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("last_summarized_at", sa.DateTime()),
        sa.Column("summarized_through_seq", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "messages",
        sa.Column("id", id_type, primary_key=True),
        sa.Column(
            "conversation_id",
            id_type,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
    )
    op.create_index("ix_messages_conversation_seq", "messages", ["conversation_id", "seq"])

    op.create_table(
        "feedback",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("message_id", id_type, sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("message_id", name="uq_feedback_message"),
        sa.CheckConstraint("rating >= -1 AND rating <= 1", name="check_feedback_rating"),
    )

    op.create_table(
        "conversation_summaries",
        sa.Column("id", id_type, primary_key=True),
        sa.Column(
            "conversation_id",
            id_type,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tier", summary_tier, nullable=False),
        sa.Column("start_message_id", id_type),
        sa.Column("end_message_id", id_type),
        sa.Column("start_seq", sa.Integer(), nullable=False),
        sa.Column("end_seq", sa.Integer(), nullable=False),
        sa.Column("embedding_ref", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_accessed", sa.DateTime(), nullable=False),
        sa.Column("promoted_to_id", id_type),
        sa.CheckConstraint("priority >= 1 AND priority <= 10", name="check_summary_priority"),
        sa.CheckConstraint("start_seq <= end_seq", name="check_summary_range"),
        sa.UniqueConstraint("conversation_id", "tier", "start_seq", name="uq_summaries_tier_start"),
    )
    op.create_index(
        "ix_conversation_summaries_conversation_tier",
        "conversation_summaries",
        ["conversation_id", "tier"],
    )

    op.create_table(
        "embeddings",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("text_hash", sa.String(length=64), nullable=False),
        sa.Column("model_id", sa.String(length=100), nullable=False),
        sa.Column("vector_id", sa.String(length=255), nullable=False),
        sa.Column("source", embedding_source, nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("text_hash", "model_id", "source", name="uq_embeddings_text_model_source"),
    )

    op.create_table(
        "rag_operations",
        sa.Column("id", id_type, primary_key=True),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("message_id", id_type, sa.ForeignKey("messages.id", ondelete="SET NULL")),
        sa.Column("conversation_id", id_type),
        sa.Column("user_id", sa.String(length=255)),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("operation_time", sa.Float(), nullable=False),
        sa.Column("embedding_id", id_type, sa.ForeignKey("embeddings.id")),
        sa.Column("degraded_sources", json_type),
    )
    op.create_index("ix_rag_operations_timestamp", "rag_operations", ["timestamp"])
    op.create_index("ix_rag_operations_user", "rag_operations", ["user_id"])
    op.create_index("ix_rag_operations_conversation", "rag_operations", ["conversation_id"])

    op.create_table(
        "retrieved_documents",
        sa.Column("id", id_type, primary_key=True),
        sa.Column(
            "rag_operation_id",
            id_type,
            sa.ForeignKey("rag_operations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("document_id", sa.String(length=255), nullable=False),
        sa.Column("similarity_score", sa.Float(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("source", sa.String(length=50)),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", json_type),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("rag_operation_id", "rank", name="uq_retrieved_documents_rank"),
    )
    op.create_index("ix_retrieved_documents_document", "retrieved_documents", ["document_id"])

    op.create_table(
        "vector_entries",
        sa.Column("namespace", sa.String(length=50), primary_key=True),
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("vector", _vector_type(is_postgres), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("vector_entries")
    op.drop_index("ix_retrieved_documents_document", table_name="retrieved_documents")
    op.drop_table("retrieved_documents")
    op.drop_index("ix_rag_operations_conversation", table_name="rag_operations")
    op.drop_index("ix_rag_operations_user", table_name="rag_operations")
    op.drop_index("ix_rag_operations_timestamp", table_name="rag_operations")
    op.drop_table("rag_operations")
    op.drop_table("embeddings")
    op.drop_index("ix_conversation_summaries_conversation_tier", table_name="conversation_summaries")
    op.drop_table("conversation_summaries")
    op.drop_table("feedback")
    op.drop_index("ix_messages_conversation_seq", table_name="messages")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("system_prompts")
    op.drop_index("ix_vector_reconciliation_tasks_status", table_name="vector_reconciliation_tasks")
    op.drop_table("vector_reconciliation_tasks")
    op.drop_index("ix_knowledge_items_owner", table_name="knowledge_items")
    op.drop_table("knowledge_items")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        sa.Enum(name="embedding_source").drop(bind, checkfirst=True)
        sa.Enum(name="summary_tier").drop(bind, checkfirst=True)
