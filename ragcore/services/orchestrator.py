"""
Answer a user query with retrieved context.

Flow per request: append the user message, retrieve, build the prompt,
call the completion provider under the deadline, append the assistant
message, then record the retrieval operation and evaluate the
summarization trigger without waiting for either.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

import ragcore.config as config
from ragcore.context import RequestContext, resolve_timeout
from ragcore.errors import CompletionProviderError, ValidationIssue
from ragcore.models import Message
from ragcore.providers.completion import CompletionProvider
from ragcore.services.memory_manager import MemoryManager
from ragcore.services.operation_tracker import OperationTracker
from ragcore.services.retriever import KNOWLEDGE_SOURCE, MEMORY_SOURCE, RankedContext, Retriever
from ragcore.validators import validate_required_text

logger = config.logger

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer using the provided context when it is relevant. "
    "If the context does not contain the answer, say so."
)


@dataclass
class AnswerResult:
    answer: str
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    context: RankedContext

    @property
    def degraded_sources(self) -> list[str]:
        return list(self.context.degraded_sources)

    @property
    def degraded(self) -> bool:
        return self.context.degraded


def build_prompt(
    query: str,
    ranked: RankedContext,
    recent: Sequence[Message],
    system_prompt: Optional[str] = None,
) -> str:
    sections = [(system_prompt or DEFAULT_SYSTEM_PROMPT).strip()]
    if ranked.degraded_sources:
        sections.append(
            "Note: some context sources were unavailable for this answer: "
            + ", ".join(ranked.degraded_sources)
            + "."
        )
    knowledge = ranked.selected_from(KNOWLEDGE_SOURCE)
    if knowledge:
        lines = ["Relevant knowledge:"]
        for index, item in enumerate(knowledge, start=1):
            title = item.metadata.get("title")
            prefix = f"[{index}] ({title}) " if title else f"[{index}] "
            lines.append(prefix + item.content)
        sections.append("\n".join(lines))
    memory = ranked.selected_from(MEMORY_SOURCE)
    if memory:
        sections.append("\n".join(["Conversation memory:"] + [f"- {item.content}" for item in memory]))
    if recent:
        sections.append("\n".join(["Recent conversation:"] + [f"{m.role}: {m.content}" for m in recent]))
    sections.append(f"User question: {query}")
    return "\n\n".join(sections)


class CompletionOrchestrator:
    def __init__(
        self,
        retriever: Retriever,
        memory: MemoryManager,
        completion: CompletionProvider,
        tracker: OperationTracker,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
        recent_char_budget: int = config.MEMORY_CHAR_BUDGET,
    ):
        self._retriever = retriever
        self._memory = memory
        self._completion = completion
        self._tracker = tracker
        self._timeout_seconds = timeout_seconds
        self._recent_char_budget = recent_char_budget

    async def _recent_turns(self, conversation_id: str, exclude_id: str) -> list[Message]:
        messages = [
            message
            for message in await self._memory.unsummarized_messages(conversation_id)
            if message.id != exclude_id
        ][-config.RECENT_MESSAGE_LIMIT:]
        tail: list[Message] = []
        used = 0
        for message in reversed(messages):
            if used + len(message.content) > self._recent_char_budget:
                break
            tail.insert(0, message)
            used += len(message.content)
        return tail

    async def _prepare(
        self,
        query: str,
        user_id: str,
        conversation_id: str,
        context: RequestContext,
    ) -> tuple[Message, RankedContext, str]:
        await self._memory.authorize(conversation_id, user_id)
        user_message = await self._memory.append_message(
            conversation_id, "user", query, now=context.now, context=context, summarize=False
        )
        ranked = await self._retriever.retrieve(
            query,
            user_id,
            conversation_id=conversation_id,
            context=context,
        )
        recent = await self._recent_turns(conversation_id, user_message.id)
        system_prompt = await self._memory.get_system_prompt_text(conversation_id)
        return user_message, ranked, build_prompt(query, ranked, recent, system_prompt)

    @staticmethod
    def _context(user_id: str, deadline: Optional[float], now: Optional[datetime]) -> RequestContext:
        return RequestContext(user_id=user_id, deadline=deadline, now=now)

    def _finish(self, ranked: RankedContext, message_id: str, conversation_id: str, context: RequestContext) -> None:
        """Record the operation and evaluate the summarization trigger, both off the request path."""
        self._tracker.record_in_background(ranked, message_id, conversation_id, context.user_id)
        self._memory.summarize_in_background(conversation_id, now=context.now)

    def _validate(self, query: str, user_id: str, conversation_id: str, options: Optional[dict]) -> None:
        validate_required_text(query, "query", config.MAX_QUERY_LENGTH)
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(conversation_id, "conversation_id", config.MAX_SHORT_TEXT_LENGTH)
        if options is not None and not isinstance(options, dict):
            raise ValidationIssue("options must be a dict", field="options", error_type="invalid_type")

    async def answer(
        self,
        query: str,
        user_id: str,
        conversation_id: str,
        options: Optional[dict] = None,
        deadline: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AnswerResult:
        """
        Answer `query` in `conversation_id`.

        `deadline` is a `time.monotonic()` instant bounding every provider
        call. `RetrievalUnavailable` propagates when no source answered.
        A completion that fails, times out or is cancelled still has its
        retrieval recorded before the error propagates.
        """
        self._validate(query, user_id, conversation_id, options)
        context = self._context(user_id, deadline, now)
        started = time.perf_counter()
        user_message, ranked, prompt = await self._prepare(query, user_id, conversation_id, context)

        try:
            text = await asyncio.wait_for(
                self._completion.complete(prompt, options),
                timeout=resolve_timeout(self._timeout_seconds, context),
            )
        except asyncio.TimeoutError as exc:
            self._finish(ranked, user_message.id, conversation_id, context)
            logger.warning("completion_timeout", extra={"conversation_id": conversation_id})
            raise CompletionProviderError("completion timed out") from exc
        except BaseException:
            self._finish(ranked, user_message.id, conversation_id, context)
            raise
        if not text or not text.strip():
            self._finish(ranked, user_message.id, conversation_id, context)
            raise CompletionProviderError("completion returned no text")

        assistant = await self._memory.append_message(
            conversation_id, "assistant", text, now=context.now, context=context, summarize=False
        )
        self._finish(ranked, assistant.id, conversation_id, context)
        logger.info(
            "answer_complete",
            extra={
                "conversation_id": conversation_id,
                "degraded_sources": ranked.degraded_sources,
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )
        return AnswerResult(
            answer=text,
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            assistant_message_id=assistant.id,
            context=ranked,
        )

    async def stream_answer(
        self,
        query: str,
        user_id: str,
        conversation_id: str,
        options: Optional[dict] = None,
        deadline: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AsyncIterator[str]:
        """Like `answer`, yielding completion fragments unchanged as they arrive."""
        self._validate(query, user_id, conversation_id, options)
        context = self._context(user_id, deadline, now)
        user_message, ranked, prompt = await self._prepare(query, user_id, conversation_id, context)

        fragments: list[str] = []
        stream = self._completion.stream(prompt, options).__aiter__()
        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(
                        stream.__anext__(),
                        timeout=resolve_timeout(self._timeout_seconds, context),
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    raise CompletionProviderError("completion stream timed out") from exc
                fragments.append(fragment)
                yield fragment
        except BaseException:
            self._finish(ranked, user_message.id, conversation_id, context)
            raise
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()

        text = "".join(fragments)
        if not text.strip():
            self._finish(ranked, user_message.id, conversation_id, context)
            return
        assistant = await self._memory.append_message(
            conversation_id, "assistant", text, now=context.now, context=context, summarize=False
        )
        self._finish(ranked, assistant.id, conversation_id, context)


__all__ = ["CompletionOrchestrator", "AnswerResult", "build_prompt", "DEFAULT_SYSTEM_PROMPT"]
