"""
Shared configuration for RAGCore.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ragcore")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list(env_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.environ.get(env_name)
    if value is None:
        return default
    items = tuple(item.strip().lower() for item in value.split(",") if item.strip())
    return items or default


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "sqlite").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/ragcore.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Vector index backend: memory | sql | pgvector
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "sql").strip().lower()

# Embedding settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
LOCAL_EMBEDDING_MODEL = os.environ.get("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2")

# Provider retry/backoff
PROVIDER_TIMEOUT_SECONDS = _get_float("PROVIDER_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)

# Embedding cache
EMBEDDING_CACHE_TTL_SECONDS = _get_int("EMBEDDING_CACHE_TTL_SECONDS", 3600)
EMBEDDING_CACHE_MAX_ENTRIES = _get_int("EMBEDDING_CACHE_MAX_ENTRIES", 10000)

# Completion settings
COMPLETION_PROVIDER = os.environ.get("COMPLETION_PROVIDER", "openai").strip().lower()
COMPLETION_MODEL = os.environ.get("COMPLETION_MODEL", "gpt-4o-mini")
COMPLETION_MAX_TOKENS = _get_int("COMPLETION_MAX_TOKENS", 1024)
COMPLETION_TEMPERATURE = _get_float("COMPLETION_TEMPERATURE", 0.2)

# Knowledge chunking
CHUNK_STRATEGY = os.environ.get("CHUNK_STRATEGY", "fixed").strip().lower()
CHUNK_SIZE = _get_int("CHUNK_SIZE", 800)
CHUNK_OVERLAP = _get_int("CHUNK_OVERLAP", 100)

# Conversation summarization
SUMMARIZER = os.environ.get("SUMMARIZER", "completion").strip().lower()
SUMMARY_MESSAGE_THRESHOLD = _get_int("SUMMARY_MESSAGE_THRESHOLD", 10)
SUMMARY_TOKEN_THRESHOLD = _get_int("SUMMARY_TOKEN_THRESHOLD", 0)
SHORT_TERM_SUMMARY_LIMIT = _get_int("SHORT_TERM_SUMMARY_LIMIT", 5)
MEDIUM_TERM_SUMMARY_LIMIT = _get_int("MEDIUM_TERM_SUMMARY_LIMIT", 5)
SUMMARY_RETENTION_MODE = os.environ.get("SUMMARY_RETENTION_MODE", "keep").strip().lower()
SUMMARY_MAX_LENGTH = _get_int("SUMMARY_MAX_LENGTH", 800)
MAX_SUMMARIES_PER_CONVERSATION = _get_int("MAX_SUMMARIES_PER_CONVERSATION", 200)
DEFAULT_SUMMARY_PRIORITY = 1

# Retrieval
RETRIEVAL_TOP_K = _get_int("RETRIEVAL_TOP_K", 8)
RETRIEVAL_SOURCE_PRIORITY = _get_list("RETRIEVAL_SOURCE_PRIORITY", ("knowledge", "memory"))
CONTEXT_CHAR_BUDGET = _get_int("CONTEXT_CHAR_BUDGET", 6000)
MEMORY_CHAR_BUDGET = _get_int("MEMORY_CHAR_BUDGET", 2000)
RECENT_MESSAGE_LIMIT = _get_int("RECENT_MESSAGE_LIMIT", 10)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("RAGCORE_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("RAGCORE_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("RAGCORE_MAX_TEXT_LENGTH", 200000)
MAX_SHORT_TEXT_LENGTH = _get_int("RAGCORE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_TITLE_LENGTH = _get_int("RAGCORE_MAX_TITLE_LENGTH", 500)
MAX_METADATA_BYTES = _get_int("RAGCORE_MAX_METADATA_BYTES", 20000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("RAGCORE_MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Reconciliation of orphaned vectors
RECONCILE_BATCH_LIMIT = _get_int("RECONCILE_BATCH_LIMIT", 50)
RECONCILE_INTERVAL_SECONDS = _get_int("RECONCILE_INTERVAL_SECONDS", 300)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")
    if VECTOR_BACKEND not in {"memory", "sql", "pgvector"}:
        errors.append("VECTOR_BACKEND must be 'memory', 'sql', or 'pgvector'")
    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")
    if EMBEDDING_PROVIDER not in {"openai", "sentence_transformers", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai', 'sentence_transformers', or 'none'")
    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        errors.append("EMBEDDING_PROVIDER=openai requires OPENAI_API_KEY")
    if COMPLETION_PROVIDER not in {"openai", "none"}:
        errors.append("COMPLETION_PROVIDER must be 'openai' or 'none'")
    if SUMMARIZER not in {"completion", "extractive"}:
        errors.append("SUMMARIZER must be 'completion' or 'extractive'")
    if SUMMARIZER == "completion" and COMPLETION_PROVIDER == "none":
        errors.append("SUMMARIZER=completion requires COMPLETION_PROVIDER to be set")
    if SUMMARY_RETENTION_MODE not in {"keep", "purge"}:
        errors.append("SUMMARY_RETENTION_MODE must be 'keep' or 'purge'")
    if CHUNK_STRATEGY not in {"fixed", "sentence"}:
        errors.append("CHUNK_STRATEGY must be 'fixed' or 'sentence'")
    if CHUNK_SIZE <= 0:
        errors.append("CHUNK_SIZE must be positive")
    if CHUNK_OVERLAP < 0 or CHUNK_OVERLAP >= CHUNK_SIZE:
        errors.append("CHUNK_OVERLAP must be >= 0 and smaller than CHUNK_SIZE")
    if SUMMARY_MESSAGE_THRESHOLD <= 0:
        errors.append("SUMMARY_MESSAGE_THRESHOLD must be positive")
    if SHORT_TERM_SUMMARY_LIMIT < 2 or MEDIUM_TERM_SUMMARY_LIMIT < 2:
        errors.append("summary tier limits must be at least 2")
    unknown_sources = set(RETRIEVAL_SOURCE_PRIORITY) - {"knowledge", "memory"}
    if unknown_sources:
        errors.append(f"RETRIEVAL_SOURCE_PRIORITY has unknown sources: {sorted(unknown_sources)}")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if VECTOR_BACKEND == "pgvector":
        from ragcore.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if VECTOR_BACKEND == "memory":
        logger.warning(
            "VECTOR_BACKEND=memory keeps vectors in process; they are lost on restart."
        )

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
