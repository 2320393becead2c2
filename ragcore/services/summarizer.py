"""
Summarizers used by the memory manager.

`CompletionSummarizer` asks the completion provider; `ExtractiveSummarizer`
needs no provider and keeps a bounded excerpt of each input.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Sequence

import ragcore.config as config
from ragcore.errors import CompletionProviderError
from ragcore.providers.completion import CompletionProvider

logger = config.logger

MESSAGE_SUMMARY_PROMPT = """Summarize the following conversation excerpt for long-term memory.

Keep facts, decisions, user preferences, open questions and names. Drop
greetings and filler. Write at most {max_length} characters of plain prose.

Conversation:
{transcript}

Summary:"""

SUMMARY_COMPACTION_PROMPT = """Combine the following consecutive conversation summaries into one
more abstract summary. Preserve durable facts, decisions and preferences;
drop details that only mattered in the moment. Write at most {max_length}
characters of plain prose.

Summaries (oldest first):
{transcript}

Combined summary:"""


class Summarizer(Protocol):
    async def summarize_messages(self, lines: Sequence[str]) -> str:
        ...

    async def compact_summaries(self, summaries: Sequence[str]) -> str:
        ...


def _clip(text: str, max_length: int) -> str:
    text = text.strip()
    return text[:max_length]


class ExtractiveSummarizer:
    def __init__(self, max_length: int = config.SUMMARY_MAX_LENGTH):
        self.max_length = max_length

    def extract(self, parts: Sequence[str]) -> str:
        parts = [part.strip() for part in parts if part and part.strip()]
        if not parts:
            return ""
        share = max(1, self.max_length // len(parts))
        clipped = [part if len(part) <= share else part[: max(1, share - 3)] + "..." for part in parts]
        return _clip("\n".join(clipped), self.max_length)

    async def summarize_messages(self, lines: Sequence[str]) -> str:
        return self.extract(lines)

    async def compact_summaries(self, summaries: Sequence[str]) -> str:
        return self.extract(summaries)


class CompletionSummarizer:
    def __init__(
        self,
        provider: CompletionProvider,
        max_length: int = config.SUMMARY_MAX_LENGTH,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
        fallback: Optional[ExtractiveSummarizer] = None,
    ):
        self._provider = provider
        self.max_length = max_length
        self._timeout_seconds = timeout_seconds
        self._fallback = fallback

    async def _complete(self, prompt: str, parts: Sequence[str]) -> str:
        try:
            text = await asyncio.wait_for(
                self._provider.complete(prompt, {"max_tokens": max(64, self.max_length // 3)}),
                timeout=self._timeout_seconds,
            )
        except (CompletionProviderError, asyncio.TimeoutError) as exc:
            if self._fallback is None:
                if isinstance(exc, asyncio.TimeoutError):
                    raise CompletionProviderError("summarization timed out") from exc
                raise
            logger.warning("summarizer_fallback", extra={"reason": exc.__class__.__name__})
            return self._fallback.extract(parts)
        return _clip(text, self.max_length)

    async def summarize_messages(self, lines: Sequence[str]) -> str:
        prompt = MESSAGE_SUMMARY_PROMPT.format(max_length=self.max_length, transcript="\n".join(lines))
        return await self._complete(prompt, lines)

    async def compact_summaries(self, summaries: Sequence[str]) -> str:
        transcript = "\n\n".join(f"[{index + 1}] {text}" for index, text in enumerate(summaries))
        prompt = SUMMARY_COMPACTION_PROMPT.format(max_length=self.max_length, transcript=transcript)
        return await self._complete(prompt, summaries)


def build_summarizer(
    provider: Optional[CompletionProvider] = None,
    name: Optional[str] = None,
) -> Summarizer:
    name = name or config.SUMMARIZER
    if name == "extractive" or provider is None:
        return ExtractiveSummarizer()
    if name == "completion":
        return CompletionSummarizer(provider, fallback=ExtractiveSummarizer())
    raise RuntimeError(f"Unknown summarizer: {name}")
