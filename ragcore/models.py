"""
RAGCore Database Models
SQLite / PostgreSQL (+ optional pgvector) schema
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, Enum, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

import ragcore.config as config

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except ImportError:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    config.DB_BACKEND == "postgres"
    and config.VECTOR_BACKEND == "pgvector"
    and PGVECTOR_AVAILABLE
):
    VECTOR_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    VECTOR_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if config.DB_BACKEND == "postgres" else JSON
ID_TYPE = String(36)


def _uuid_default() -> str:
    return str(uuid.uuid4())


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class SummaryTier(str, PyEnum):
    short_term = "short_term"
    medium_term = "medium_term"
    long_term = "long_term"


class MessageRole(str, PyEnum):
    system = "system"
    user = "user"
    assistant = "assistant"
    function_call = "function_call"
    function = "function"


class EmbeddingSource(str, PyEnum):
    user_query = "user_query"
    conversation_history = "conversation_history"
    document = "document"


TIER_ORDER = (SummaryTier.short_term, SummaryTier.medium_term, SummaryTier.long_term)


# =============================================================================
# Knowledge
# =============================================================================

class KnowledgeItem(Base):
    __tablename__ = "knowledge_items"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(255), nullable=False)
    title = Column(String(500))
    content = Column(Text, nullable=False, default="")
    content_hash = Column(String(64))  # sha256 of content + chunking params + model
    chunk_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_knowledge_items_owner", "owner_id"),
    )


class VectorReconciliationTask(Base):
    """Vector ids left behind by a failed best-effort delete or a failed update restore."""
    __tablename__ = "vector_reconciliation_tasks"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    knowledge_item_id = Column(ID_TYPE, nullable=False)
    namespace = Column(String(50), nullable=False, default="knowledge")
    vector_ids = Column(JSON_TYPE, nullable=False, default=list)
    reason = Column(Text)
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime)

    __table_args__ = (
        Index("ix_vector_reconciliation_tasks_status", "status"),
    )


# =============================================================================
# Conversations
# =============================================================================

class SystemPrompt(Base):
    __tablename__ = "system_prompts"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(255))
    name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(255))
    system_prompt_id = Column(ID_TYPE, ForeignKey("system_prompts.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_summarized_at = Column(DateTime)
    summarized_through_seq = Column(Integer, default=0, nullable=False)

    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.seq",
        cascade="all, delete-orphan",
    )
    system_prompt = relationship("SystemPrompt")


class Message(Base):
    __tablename__ = "messages"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    conversation_id = Column(ID_TYPE, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)  # 1-based conversational order
    role = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
    feedback = relationship("Feedback", back_populates="message", uselist=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
        Index("ix_messages_conversation_seq", "conversation_id", "seq"),
    )


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    message_id = Column(ID_TYPE, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    rating = Column(Integer, nullable=False)  # -1 / 0 / 1
    comment = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    message = relationship("Message", back_populates="feedback")

    __table_args__ = (
        UniqueConstraint("message_id", name="uq_feedback_message"),
        CheckConstraint("rating >= -1 AND rating <= 1", name="check_feedback_rating"),
    )


# =============================================================================
# Summaries
# =============================================================================

class ConversationSummary(Base):
    __tablename__ = "conversation_summaries"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    conversation_id = Column(ID_TYPE, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    tier = Column(Enum(SummaryTier, name="summary_tier"), nullable=False, default=SummaryTier.short_term)
    start_message_id = Column(ID_TYPE)
    end_message_id = Column(ID_TYPE)
    start_seq = Column(Integer, nullable=False)
    end_seq = Column(Integer, nullable=False)
    embedding_ref = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    priority = Column(Integer, default=config.DEFAULT_SUMMARY_PRIORITY, nullable=False)
    last_accessed = Column(DateTime, default=datetime.utcnow, nullable=False)
    promoted_to_id = Column(ID_TYPE)

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 10", name="check_summary_priority"),
        CheckConstraint("start_seq <= end_seq", name="check_summary_range"),
        UniqueConstraint("conversation_id", "tier", "start_seq", name="uq_summaries_tier_start"),
        Index("ix_conversation_summaries_conversation_tier", "conversation_id", "tier"),
    )


# =============================================================================
# Retrieval operations (write-once audit records)
# =============================================================================

class Embedding(Base):
    __tablename__ = "embeddings"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    text = Column(Text, nullable=False)
    text_hash = Column(String(64), nullable=False)
    model_id = Column(String(100), nullable=False)
    vector_id = Column(String(255), nullable=False)  # embedding cache key
    source = Column(Enum(EmbeddingSource, name="embedding_source"), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("text_hash", "model_id", "source", name="uq_embeddings_text_model_source"),
    )


class RAGOperation(Base):
    __tablename__ = "rag_operations"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    query = Column(Text, nullable=False)
    message_id = Column(ID_TYPE, ForeignKey("messages.id", ondelete="SET NULL"))
    conversation_id = Column(ID_TYPE)
    user_id = Column(String(255))
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    source = Column(String(50), nullable=False)
    operation_time = Column(Float, nullable=False)  # milliseconds
    embedding_id = Column(ID_TYPE, ForeignKey("embeddings.id"))
    degraded_sources = Column(JSON_TYPE, default=list)

    documents = relationship(
        "RetrievedDocument",
        back_populates="operation",
        order_by="RetrievedDocument.rank",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_rag_operations_timestamp", "timestamp"),
        Index("ix_rag_operations_user", "user_id"),
        Index("ix_rag_operations_conversation", "conversation_id"),
    )


class RetrievedDocument(Base):
    __tablename__ = "retrieved_documents"

    id = Column(ID_TYPE, primary_key=True, default=_uuid_default)
    rag_operation_id = Column(ID_TYPE, ForeignKey("rag_operations.id", ondelete="CASCADE"), nullable=False)
    rank = Column(Integer, nullable=False)
    document_id = Column(String(255), nullable=False)
    similarity_score = Column(Float, nullable=False)
    content = Column(Text, nullable=False)
    source = Column(String(50))
    used = Column(Boolean, default=False, nullable=False)
    metadata_ = Column("metadata", JSON_TYPE)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    operation = relationship("RAGOperation", back_populates="documents")

    __table_args__ = (
        UniqueConstraint("rag_operation_id", "rank", name="uq_retrieved_documents_rank"),
        Index("ix_retrieved_documents_document", "document_id"),
    )


# =============================================================================
# SQL-backed vector index storage
# =============================================================================

class VectorEntry(Base):
    __tablename__ = "vector_entries"

    namespace = Column(String(50), primary_key=True)
    id = Column(String(255), primary_key=True)
    vector = Column(VECTOR_COLUMN_TYPE, nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


__all__ = [
    "Base",
    "SummaryTier",
    "MessageRole",
    "EmbeddingSource",
    "TIER_ORDER",
    "KnowledgeItem",
    "VectorReconciliationTask",
    "SystemPrompt",
    "Conversation",
    "Message",
    "Feedback",
    "ConversationSummary",
    "Embedding",
    "RAGOperation",
    "RetrievedDocument",
    "VectorEntry",
    "PGVECTOR_AVAILABLE",
]
