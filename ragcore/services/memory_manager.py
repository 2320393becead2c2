"""
Hierarchical conversation memory.

Messages form an append-only log. Every `threshold` unsummarized messages
become one short_term summary; when a tier holds more unpromoted summaries
than its limit, its oldest run is compacted into one summary of the next
tier (short_term -> medium_term -> long_term). Only unpromoted summaries
are indexed in the `memory` namespace and returned by retrieval.

Writes for one conversation are serialized by a per-conversation lock. The
lock is never held across a summarizer or embedding call: plans are taken
under the lock, the provider runs outside it, and the commit re-checks
that the conversation has not moved on in between.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

import ragcore.config as config
from ragcore.context import RequestContext, resolve_now
from ragcore.db import get_session
from ragcore.errors import ProviderUnavailable, RetrievalUnavailable, ValidationIssue
from ragcore.metadata import CONVERSATION_SUMMARY, build_metadata, to_epoch
from ragcore.models import (
    Conversation,
    ConversationSummary,
    Message,
    SummaryTier,
    SystemPrompt,
)
from ragcore.providers.vector_index import VectorIndex, rank_matches
from ragcore.services.embedding_cache import EmbeddingCache
from ragcore.services.summarizer import Summarizer
from ragcore.validators import (
    validate_budget,
    validate_limit,
    validate_optional_text,
    validate_priority,
    validate_required_text,
    validate_role,
)

logger = config.logger

MEMORY_NAMESPACE = "memory"
SCORE_TIE_PRECISION = 9
PROMOTIONS = (
    (SummaryTier.short_term, SummaryTier.medium_term),
    (SummaryTier.medium_term, SummaryTier.long_term),
)


def summary_vector_id(summary_id: str) -> str:
    return f"summary:{summary_id}"


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


@dataclass(frozen=True)
class MemoryItem:
    id: str
    kind: str  # "summary" | "message"
    content: str
    score: float
    created_at: datetime
    tier: Optional[str] = None
    priority: int = config.DEFAULT_SUMMARY_PRIORITY
    last_accessed: Optional[datetime] = None
    start_seq: Optional[int] = None
    end_seq: Optional[int] = None

    @property
    def document_id(self) -> str:
        return f"{self.kind}:{self.id}"

    def rank_key(self) -> tuple:
        """Similarity desc, then priority desc, then last access desc, then id."""
        accessed = to_epoch(self.last_accessed) or 0.0
        return (-round(self.score, SCORE_TIE_PRECISION), -self.priority, -accessed, self.id)


@dataclass(frozen=True)
class _MessageRow:
    id: str
    seq: int
    role: str
    content: str
    created_at: datetime


@dataclass(frozen=True)
class _SummaryRow:
    id: str
    content: str
    tier: SummaryTier
    start_message_id: Optional[str]
    end_message_id: Optional[str]
    start_seq: int
    end_seq: int
    priority: int
    last_accessed: datetime


@dataclass
class ActiveContext:
    """Bounded per-request view of a conversation."""

    conversation_id: str
    recent_messages: list[Message] = field(default_factory=list)
    memory: list[MemoryItem] = field(default_factory=list)

    def char_count(self) -> int:
        return sum(len(m.content) for m in self.recent_messages) + sum(len(i.content) for i in self.memory)


class ConversationLocks:
    """One asyncio.Lock per conversation id, released when nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._users[conversation_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[conversation_id] -= 1
            if self._users[conversation_id] <= 0:
                self._users.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

    def __len__(self) -> int:
        return len(self._locks)


def select_within_budget(items: Sequence, budget: int, size=lambda item: len(item.content)) -> list:
    """Greedy whole-item selection; an item that does not fit is skipped, never cut."""
    selected = []
    remaining = budget
    for item in items:
        cost = size(item)
        if cost <= remaining:
            selected.append(item)
            remaining -= cost
    return selected


class MemoryManager:
    def __init__(
        self,
        embedding_cache: EmbeddingCache,
        vector_index: VectorIndex,
        summarizer: Summarizer,
        message_threshold: int = config.SUMMARY_MESSAGE_THRESHOLD,
        token_threshold: int = config.SUMMARY_TOKEN_THRESHOLD,
        short_term_limit: int = config.SHORT_TERM_SUMMARY_LIMIT,
        medium_term_limit: int = config.MEDIUM_TERM_SUMMARY_LIMIT,
        retention_mode: str = config.SUMMARY_RETENTION_MODE,
        max_summaries: Optional[int] = config.MAX_SUMMARIES_PER_CONVERSATION,
        model_id: str = config.EMBEDDING_MODEL,
        locks: Optional[ConversationLocks] = None,
    ):
        if message_threshold <= 0:
            raise ValueError("message_threshold must be positive")
        if short_term_limit < 2 or medium_term_limit < 2:
            raise ValueError("tier limits must be at least 2")
        if retention_mode not in {"keep", "purge"}:
            raise ValueError("retention_mode must be 'keep' or 'purge'")
        self._cache = embedding_cache
        self._index = vector_index
        self._summarizer = summarizer
        self.message_threshold = message_threshold
        self.token_threshold = token_threshold
        self._tier_limits = {
            SummaryTier.short_term: short_term_limit,
            SummaryTier.medium_term: medium_term_limit,
        }
        self.retention_mode = retention_mode
        self.max_summaries = max_summaries
        self._model_id = model_id
        self.locks = locks or ConversationLocks()
        self._background: set[asyncio.Future] = set()

    # =========================================================================
    # Conversations and messages
    # =========================================================================

    async def create_system_prompt(self, name: str, content: str, owner_id: Optional[str] = None) -> SystemPrompt:
        validate_required_text(name, "name", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(content, "content", config.MAX_TEXT_LENGTH)
        validate_optional_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)

        def _create() -> SystemPrompt:
            db = get_session()
            try:
                prompt = SystemPrompt(name=name, content=content, owner_id=owner_id)
                db.add(prompt)
                db.commit()
                return prompt
            finally:
                db.close()

        return await asyncio.to_thread(_create)

    async def create_conversation(
        self,
        owner_id: Optional[str] = None,
        system_prompt_id: Optional[str] = None,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> Conversation:
        validate_optional_text(owner_id, "owner_id", config.MAX_SHORT_TEXT_LENGTH)
        now = resolve_now(context, now)

        def _create() -> Conversation:
            db = get_session()
            try:
                if system_prompt_id and db.get(SystemPrompt, system_prompt_id) is None:
                    raise ValidationIssue(
                        f"system prompt not found: {system_prompt_id}",
                        field="system_prompt_id",
                        error_type="not_found",
                    )
                conversation = Conversation(
                    owner_id=owner_id,
                    system_prompt_id=system_prompt_id,
                    created_at=now,
                    updated_at=now,
                )
                db.add(conversation)
                db.commit()
                return conversation
            finally:
                db.close()

        return await asyncio.to_thread(_create)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        def _get() -> Optional[Conversation]:
            db = get_session()
            try:
                return db.get(Conversation, conversation_id)
            finally:
                db.close()

        return await asyncio.to_thread(_get)

    async def authorize(self, conversation_id: str, user_id: Optional[str]) -> Conversation:
        """Load `conversation_id` for `user_id`; an owned conversation refuses everyone else."""
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise ValidationIssue(
                f"conversation not found: {conversation_id}",
                field="conversation_id",
                error_type="not_found",
            )
        if conversation.owner_id is not None and conversation.owner_id != user_id:
            logger.warning(
                "conversation_access_denied",
                extra={"conversation_id": conversation_id, "user_id": user_id},
            )
            raise ValidationIssue(
                "conversation belongs to another user",
                field="conversation_id",
                error_type="forbidden",
            )
        return conversation

    async def get_system_prompt_text(self, conversation_id: str) -> Optional[str]:
        def _get() -> Optional[str]:
            db = get_session()
            try:
                conversation = db.get(Conversation, conversation_id)
                if conversation is None or conversation.system_prompt_id is None:
                    return None
                prompt = db.get(SystemPrompt, conversation.system_prompt_id)
                return prompt.content if prompt else None
            finally:
                db.close()

        return await asyncio.to_thread(_get)

    @staticmethod
    def _append_sync(conversation_id: str, role: str, content: str, now: datetime) -> Message:
        db = get_session()
        try:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise ValidationIssue(
                    f"conversation not found: {conversation_id}",
                    field="conversation_id",
                    error_type="not_found",
                )
            last_seq = (
                db.query(func.max(Message.seq))
                .filter(Message.conversation_id == conversation_id)
                .scalar()
            ) or 0
            message = Message(
                conversation_id=conversation_id,
                seq=last_seq + 1,
                role=role,
                content=content,
                created_at=now,
            )
            db.add(message)
            conversation.updated_at = now
            db.commit()
            return message
        finally:
            db.close()

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
        summarize: bool = True,
    ) -> Message:
        """
        Append one message, then evaluate the summarization trigger.

        A summarizer outage does not fail the append; the trigger is simply
        evaluated again on the next message. With `summarize=False` the
        trigger is left to the caller (see `summarize_in_background`).
        """
        validate_required_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_role(role)
        validate_required_text(content, "content", config.MAX_TEXT_LENGTH)
        now = resolve_now(context, now)

        async with self.locks.hold(conversation_id):
            message = await asyncio.to_thread(self._append_sync, conversation_id, role, content, now)
            batches = await asyncio.to_thread(self._plan_short_term, conversation_id) if summarize else []
        if batches:
            try:
                await self._summarize_batches(conversation_id, batches, now)
            except ProviderUnavailable as exc:
                logger.warning(
                    "summarization_deferred",
                    extra={"conversation_id": conversation_id, "error": str(exc)},
                )
        return message

    async def list_messages(self, conversation_id: str, after_seq: int = 0) -> list[Message]:
        def _list() -> list[Message]:
            db = get_session()
            try:
                return (
                    db.query(Message)
                    .filter(Message.conversation_id == conversation_id, Message.seq > after_seq)
                    .order_by(Message.seq.asc())
                    .all()
                )
            finally:
                db.close()

        return await asyncio.to_thread(_list)

    async def unsummarized_messages(self, conversation_id: str) -> list[Message]:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return []
        return await self.list_messages(conversation_id, after_seq=conversation.summarized_through_seq)

    # =========================================================================
    # Summarization
    # =========================================================================

    def _plan_short_term(self, conversation_id: str) -> list[tuple[int, list[_MessageRow]]]:
        """Batches of unsummarized messages, each paired with the seq it must follow."""
        db = get_session()
        try:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return []
            base_seq = conversation.summarized_through_seq or 0
            rows = [
                _MessageRow(m.id, m.seq, m.role, m.content, m.created_at)
                for m in (
                    db.query(Message)
                    .filter(Message.conversation_id == conversation_id, Message.seq > base_seq)
                    .order_by(Message.seq.asc())
                    .all()
                )
            ]
        finally:
            db.close()

        batches = []
        after_seq = base_seq
        while len(rows) >= self.message_threshold:
            batch, rows = rows[: self.message_threshold], rows[self.message_threshold:]
            batches.append((after_seq, batch))
            after_seq = batch[-1].seq
        if self.token_threshold > 0 and rows:
            if sum(estimate_tokens(row.content) for row in rows) >= self.token_threshold:
                batches.append((after_seq, rows))
        return batches

    @staticmethod
    def _commit_short_term(
        conversation_id: str,
        after_seq: int,
        batch: list[_MessageRow],
        content: str,
        now: datetime,
    ) -> Optional[_SummaryRow]:
        db = get_session()
        try:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None or (conversation.summarized_through_seq or 0) != after_seq:
                return None
            summary = ConversationSummary(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                content=content,
                tier=SummaryTier.short_term,
                start_message_id=batch[0].id,
                end_message_id=batch[-1].id,
                start_seq=batch[0].seq,
                end_seq=batch[-1].seq,
                created_at=now,
                last_accessed=now,
                priority=config.DEFAULT_SUMMARY_PRIORITY,
            )
            db.add(summary)
            conversation.summarized_through_seq = batch[-1].seq
            conversation.last_summarized_at = batch[-1].created_at
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
            return _summary_row(summary)
        finally:
            db.close()

    async def _summarize_batches(
        self,
        conversation_id: str,
        batches: list[tuple[int, list[_MessageRow]]],
        now: datetime,
    ) -> list[ConversationSummary]:
        created = []
        for after_seq, batch in batches:
            lines = [f"{row.role}: {row.content}" for row in batch]
            content = await self._summarizer.summarize_messages(lines)
            if not content.strip():
                content = "\n".join(lines)[: config.SUMMARY_MAX_LENGTH]
            async with self.locks.hold(conversation_id):
                row = await asyncio.to_thread(
                    self._commit_short_term, conversation_id, after_seq, batch, content, now
                )
            if row is None:
                logger.info(
                    "summarization_stale",
                    extra={"conversation_id": conversation_id, "after_seq": after_seq},
                )
                break
            await self._index_summary(conversation_id, row, now)
            created.append(row)
            logger.info(
                "summary_created",
                extra={
                    "conversation_id": conversation_id,
                    "tier": SummaryTier.short_term.value,
                    "start_seq": row.start_seq,
                    "end_seq": row.end_seq,
                },
            )
        if created:
            await self.promote(conversation_id, now=now)
            if self.max_summaries:
                await self.evict(conversation_id, max_summaries=self.max_summaries, now=now)
        return await self._load_summaries([row.id for row in created])

    async def maybe_summarize(
        self,
        conversation_id: str,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> list[ConversationSummary]:
        """Evaluate the trigger explicitly; provider failures propagate."""
        now = resolve_now(context, now)
        async with self.locks.hold(conversation_id):
            batches = await asyncio.to_thread(self._plan_short_term, conversation_id)
        if not batches:
            return []
        return await self._summarize_batches(conversation_id, batches, now)

    async def _summarize_quietly(self, conversation_id: str, now: Optional[datetime]) -> None:
        try:
            await self.maybe_summarize(conversation_id, now=now)
        except ProviderUnavailable as exc:
            logger.warning(
                "summarization_deferred",
                extra={"conversation_id": conversation_id, "error": str(exc)},
            )
        except Exception:
            logger.exception("summarization_failed", extra={"conversation_id": conversation_id})

    def summarize_in_background(self, conversation_id: str, now: Optional[datetime] = None) -> asyncio.Future:
        """Schedule the summarization trigger for `conversation_id` without awaiting it."""
        future = asyncio.ensure_future(self._summarize_quietly(conversation_id, now))
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return future

    async def drain(self) -> None:
        """Wait for scheduled summarization (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _index_summary(self, conversation_id: str, row: _SummaryRow, now: datetime) -> bool:
        vector_id = summary_vector_id(row.id)
        try:
            vector = await self._cache.get(row.content, self._model_id, now=now)
            await self._index.upsert(
                MEMORY_NAMESPACE,
                vector_id,
                vector,
                build_metadata(
                    CONVERSATION_SUMMARY,
                    conversation_id=conversation_id,
                    summary_id=row.id,
                    tier=row.tier.value,
                    start_seq=row.start_seq,
                    end_seq=row.end_seq,
                    text=row.content,
                    updated_at=to_epoch(now),
                ),
            )
        except ProviderUnavailable as exc:
            logger.warning(
                "summary_index_deferred",
                extra={"conversation_id": conversation_id, "summary_id": row.id, "error": str(exc)},
            )
            return False
        await asyncio.to_thread(_set_embedding_ref, row.id, vector_id)
        return True

    async def reindex(self, conversation_id: str, now: Optional[datetime] = None) -> int:
        """Index active summaries whose vector write was deferred."""
        now = resolve_now(None, now)

        def _pending() -> list[_SummaryRow]:
            db = get_session()
            try:
                rows = (
                    db.query(ConversationSummary)
                    .filter(
                        ConversationSummary.conversation_id == conversation_id,
                        ConversationSummary.promoted_to_id.is_(None),
                        ConversationSummary.embedding_ref.is_(None),
                    )
                    .order_by(ConversationSummary.start_seq.asc())
                    .all()
                )
                return [_summary_row(row) for row in rows]
            finally:
                db.close()

        indexed = 0
        for row in await asyncio.to_thread(_pending):
            if await self._index_summary(conversation_id, row, now):
                indexed += 1
        return indexed

    # =========================================================================
    # Promotion
    # =========================================================================

    def _plan_promotion(self, conversation_id: str, tier: SummaryTier) -> list[_SummaryRow]:
        limit = self._tier_limits[tier]
        db = get_session()
        try:
            rows = (
                db.query(ConversationSummary)
                .filter(
                    ConversationSummary.conversation_id == conversation_id,
                    ConversationSummary.tier == tier,
                    ConversationSummary.promoted_to_id.is_(None),
                )
                .order_by(ConversationSummary.start_seq.asc())
                .all()
            )
            if len(rows) <= limit:
                return []
            return [_summary_row(row) for row in rows[:limit]]
        finally:
            db.close()

    def _commit_promotion(
        self,
        conversation_id: str,
        inputs: list[_SummaryRow],
        upper: SummaryTier,
        content: str,
        now: datetime,
    ) -> Optional[_SummaryRow]:
        db = get_session()
        try:
            rows = (
                db.query(ConversationSummary)
                .filter(ConversationSummary.id.in_([row.id for row in inputs]))
                .all()
            )
            if len(rows) != len(inputs) or any(row.promoted_to_id for row in rows):
                return None
            rows.sort(key=lambda row: row.start_seq)
            promoted = ConversationSummary(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                content=content,
                tier=upper,
                start_message_id=rows[0].start_message_id,
                end_message_id=rows[-1].end_message_id,
                start_seq=rows[0].start_seq,
                end_seq=rows[-1].end_seq,
                created_at=now,
                last_accessed=max(row.last_accessed for row in rows),
                priority=max(row.priority for row in rows),
            )
            db.add(promoted)
            for row in rows:
                if self.retention_mode == "purge":
                    db.delete(row)
                else:
                    row.promoted_to_id = promoted.id
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
            return _summary_row(promoted)
        finally:
            db.close()

    async def promote(
        self,
        conversation_id: str,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> list[ConversationSummary]:
        """Compact over-full tiers upward; returns the summaries created."""
        now = resolve_now(context, now)
        created = []
        for lower, upper in PROMOTIONS:
            while True:
                async with self.locks.hold(conversation_id):
                    inputs = await asyncio.to_thread(self._plan_promotion, conversation_id, lower)
                if not inputs:
                    break
                content = await self._summarizer.compact_summaries([row.content for row in inputs])
                if not content.strip():
                    content = "\n".join(row.content for row in inputs)[: config.SUMMARY_MAX_LENGTH]
                async with self.locks.hold(conversation_id):
                    row = await asyncio.to_thread(
                        self._commit_promotion, conversation_id, inputs, upper, content, now
                    )
                if row is None:
                    logger.info("promotion_stale", extra={"conversation_id": conversation_id, "tier": lower.value})
                    break
                await self._delete_vectors(conversation_id, [summary_vector_id(item.id) for item in inputs])
                await self._index_summary(conversation_id, row, now)
                created.append(row)
                logger.info(
                    "summary_promoted",
                    extra={
                        "conversation_id": conversation_id,
                        "from_tier": lower.value,
                        "to_tier": upper.value,
                        "input_count": len(inputs),
                        "start_seq": row.start_seq,
                        "end_seq": row.end_seq,
                    },
                )
        return await self._load_summaries([row.id for row in created])

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search(
        self,
        query_vector: Sequence[float],
        conversation_id: str,
        top_k: int,
    ) -> list[MemoryItem]:
        """Rank active summaries of one conversation against a query vector."""
        try:
            matches = await self._index.query(
                MEMORY_NAMESPACE,
                query_vector,
                top_k,
                filter={"conversation_id": conversation_id},
            )
        except ProviderUnavailable as exc:
            raise RetrievalUnavailable("memory index unavailable", sources=["memory"]) from exc
        scores = {match.metadata.get("summary_id") or match.id.split(":", 1)[-1]: match.score for match in matches}
        if not scores:
            return []

        def _load() -> list[ConversationSummary]:
            db = get_session()
            try:
                return (
                    db.query(ConversationSummary)
                    .filter(
                        ConversationSummary.id.in_(list(scores)),
                        ConversationSummary.conversation_id == conversation_id,
                        ConversationSummary.promoted_to_id.is_(None),
                    )
                    .all()
                )
            finally:
                db.close()

        items = [
            MemoryItem(
                id=row.id,
                kind="summary",
                content=row.content,
                score=scores[row.id],
                created_at=row.created_at,
                tier=row.tier.value,
                priority=row.priority,
                last_accessed=row.last_accessed,
                start_seq=row.start_seq,
                end_seq=row.end_seq,
            )
            for row in await asyncio.to_thread(_load)
        ]
        items.sort(key=MemoryItem.rank_key)
        return items

    async def _score_recent_messages(
        self,
        conversation_id: str,
        query_vector: Sequence[float],
        now: datetime,
    ) -> list[MemoryItem]:
        messages = (await self.unsummarized_messages(conversation_id))[-config.RECENT_MESSAGE_LIMIT:]
        if not messages:
            return []
        vectors = await asyncio.gather(
            *(
                self._cache.get(message.content[: config.MAX_EMBEDDING_TEXT_LENGTH], self._model_id, now=now)
                for message in messages
            )
        )
        matches = rank_matches(
            query_vector,
            [(message.id, vector, {}) for message, vector in zip(messages, vectors)],
            top_k=len(messages),
        )
        by_id = {message.id: message for message in messages}
        return [
            MemoryItem(
                id=match.id,
                kind="message",
                content=f"{by_id[match.id].role}: {by_id[match.id].content}",
                score=match.score,
                created_at=by_id[match.id].created_at,
                last_accessed=by_id[match.id].created_at,
                start_seq=by_id[match.id].seq,
                end_seq=by_id[match.id].seq,
            )
            for match in matches
        ]

    async def retrieve_relevant_memory(
        self,
        query: str,
        conversation_id: str,
        budget: int,
        now: Optional[datetime] = None,
        include_recent_messages: bool = False,
        top_k: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> list[MemoryItem]:
        """
        Memory items most relevant to `query`, whole items only, within `budget` characters.

        Selected summaries have `last_accessed` set to `now`.
        """
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        validate_required_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_budget(budget, "budget")
        if top_k is not None:
            validate_limit(top_k, "top_k", config.MAX_RESULT_LIMIT)
        now = resolve_now(context, now)

        query_vector = await self._cache.get(query, self._model_id, now=now)
        items = await self.search(query_vector, conversation_id, top_k or config.MAX_RESULT_LIMIT)
        if include_recent_messages:
            items.extend(await self._score_recent_messages(conversation_id, query_vector, now))
            items.sort(key=MemoryItem.rank_key)
        selected = select_within_budget(items, budget)
        await self.touch([item.id for item in selected if item.kind == "summary"], now=now)
        return selected

    async def touch(self, summary_ids: Sequence[str], now: Optional[datetime] = None) -> int:
        if not summary_ids:
            return 0
        now = resolve_now(None, now)

        def _touch() -> int:
            db = get_session()
            try:
                updated = (
                    db.query(ConversationSummary)
                    .filter(ConversationSummary.id.in_(list(summary_ids)))
                    .update({ConversationSummary.last_accessed: now}, synchronize_session=False)
                )
                db.commit()
                return updated or 0
            finally:
                db.close()

        return await asyncio.to_thread(_touch)

    async def build_active_context(
        self,
        conversation_id: str,
        budget: int = config.CONTEXT_CHAR_BUDGET,
        query: Optional[str] = None,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> ActiveContext:
        """
        Recent unsummarized turns (newest first, up to half the budget) plus
        memory: relevant summaries when a query is given, otherwise the
        active summaries in conversational order.
        """
        validate_budget(budget, "budget")
        now = resolve_now(context, now)
        unsummarized = (await self.unsummarized_messages(conversation_id))[-config.RECENT_MESSAGE_LIMIT:]
        # Contiguous tail only; a gap would make the transcript misleading.
        tail: list[Message] = []
        used = 0
        for message in reversed(unsummarized):
            if used + len(message.content) > budget // 2:
                break
            tail.insert(0, message)
            used += len(message.content)
        remaining = budget - used

        if query:
            memory = await self.retrieve_relevant_memory(query, conversation_id, remaining, now=now)
        else:
            active = await self.list_summaries(conversation_id, active_only=True)
            chronological = [
                MemoryItem(
                    id=row.id,
                    kind="summary",
                    content=row.content,
                    score=0.0,
                    created_at=row.created_at,
                    tier=row.tier.value,
                    priority=row.priority,
                    last_accessed=row.last_accessed,
                    start_seq=row.start_seq,
                    end_seq=row.end_seq,
                )
                for row in active
            ]
            newest_first = list(reversed(chronological))
            keep = {item.id for item in select_within_budget(newest_first, remaining)}
            memory = [item for item in chronological if item.id in keep]
        return ActiveContext(conversation_id=conversation_id, recent_messages=tail, memory=memory)

    # =========================================================================
    # Priority and eviction
    # =========================================================================

    async def set_priority(self, summary_id: str, priority: int) -> ConversationSummary:
        validate_priority(priority)

        def _set() -> ConversationSummary:
            db = get_session()
            try:
                summary = db.get(ConversationSummary, summary_id)
                if summary is None:
                    raise ValidationIssue(
                        f"summary not found: {summary_id}",
                        field="summary_id",
                        error_type="not_found",
                    )
                summary.priority = priority
                db.commit()
                return summary
            finally:
                db.close()

        return await asyncio.to_thread(_set)

    async def list_summaries(
        self,
        conversation_id: str,
        tier: Optional[SummaryTier] = None,
        active_only: bool = False,
    ) -> list[ConversationSummary]:
        def _list() -> list[ConversationSummary]:
            db = get_session()
            try:
                query = db.query(ConversationSummary).filter(
                    ConversationSummary.conversation_id == conversation_id
                )
                if tier is not None:
                    query = query.filter(ConversationSummary.tier == tier)
                if active_only:
                    query = query.filter(ConversationSummary.promoted_to_id.is_(None))
                return query.order_by(ConversationSummary.start_seq.asc(), ConversationSummary.tier.asc()).all()
            finally:
                db.close()

        return await asyncio.to_thread(_list)

    @staticmethod
    def eviction_order(summaries: Sequence[ConversationSummary]) -> list[ConversationSummary]:
        """Lowest priority first, then least recently accessed, then oldest."""
        return sorted(
            summaries,
            key=lambda row: (row.priority, row.last_accessed, row.created_at, row.id),
        )

    async def evict(
        self,
        conversation_id: str,
        max_summaries: Optional[int] = None,
        char_budget: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """
        Drop summaries until the conversation fits `max_summaries` rows and
        `char_budget` characters of active summaries. The most recent
        short_term summary is never dropped.
        """
        if max_summaries is not None:
            validate_budget(max_summaries, "max_summaries")
        if char_budget is not None:
            validate_budget(char_budget, "char_budget")
        if max_summaries is None and char_budget is None:
            return []

        def _evict() -> list[str]:
            db = get_session()
            try:
                rows = (
                    db.query(ConversationSummary)
                    .filter(ConversationSummary.conversation_id == conversation_id)
                    .all()
                )
                short_terms = [row for row in rows if row.tier == SummaryTier.short_term]
                protected = max(short_terms, key=lambda row: row.end_seq).id if short_terms else None
                count = len(rows)
                active_chars = sum(len(row.content) for row in rows if row.promoted_to_id is None)
                evicted = []
                for row in self.eviction_order(rows):
                    over_count = max_summaries is not None and count > max_summaries
                    over_chars = char_budget is not None and active_chars > char_budget
                    if not (over_count or over_chars):
                        break
                    if row.id == protected:
                        continue
                    if over_chars and not over_count and row.promoted_to_id is not None:
                        continue
                    db.delete(row)
                    evicted.append(row.id)
                    count -= 1
                    if row.promoted_to_id is None:
                        active_chars -= len(row.content)
                db.commit()
                return evicted
            finally:
                db.close()

        async with self.locks.hold(conversation_id):
            evicted = await asyncio.to_thread(_evict)
        if evicted:
            await self._delete_vectors(conversation_id, [summary_vector_id(item) for item in evicted])
            logger.info(
                "summaries_evicted",
                extra={"conversation_id": conversation_id, "count": len(evicted)},
            )
        return evicted

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _delete_vectors(self, conversation_id: str, vector_ids: list[str]) -> None:
        if not vector_ids:
            return
        try:
            await self._index.delete(MEMORY_NAMESPACE, vector_ids)
        except ProviderUnavailable as exc:
            # Stale summary vectors are filtered out at read time.
            logger.warning(
                "memory_vector_delete_failed",
                extra={"conversation_id": conversation_id, "vector_count": len(vector_ids), "error": str(exc)},
            )

    @staticmethod
    async def _load_summaries(summary_ids: list[str]) -> list[ConversationSummary]:
        if not summary_ids:
            return []

        def _load() -> list[ConversationSummary]:
            db = get_session()
            try:
                rows = db.query(ConversationSummary).filter(ConversationSummary.id.in_(summary_ids)).all()
                order = {summary_id: index for index, summary_id in enumerate(summary_ids)}
                return sorted(rows, key=lambda row: order[row.id])
            finally:
                db.close()

        return await asyncio.to_thread(_load)


def _summary_row(summary: ConversationSummary) -> _SummaryRow:
    return _SummaryRow(
        id=summary.id,
        content=summary.content,
        tier=SummaryTier(summary.tier),
        start_message_id=summary.start_message_id,
        end_message_id=summary.end_message_id,
        start_seq=summary.start_seq,
        end_seq=summary.end_seq,
        priority=summary.priority,
        last_accessed=summary.last_accessed,
    )


def _set_embedding_ref(summary_id: str, vector_id: str) -> None:
    db = get_session()
    try:
        summary = db.get(ConversationSummary, summary_id)
        if summary is not None:
            summary.embedding_ref = vector_id
            db.commit()
    finally:
        db.close()


__all__ = [
    "MemoryManager",
    "MemoryItem",
    "ActiveContext",
    "ConversationLocks",
    "MEMORY_NAMESPACE",
    "select_within_budget",
    "summary_vector_id",
]
