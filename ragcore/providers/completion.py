"""
Completion provider adapters.
"""

from __future__ import annotations

import json
from typing import AsyncIterator, Optional, Protocol

import httpx

import ragcore.config as config
from ragcore.errors import CompletionProviderError
from ragcore.providers.resilience import CircuitBreaker, RetryableError, call_with_retries

logger = config.logger

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class CompletionProvider(Protocol):
    async def complete(self, prompt: str, options: Optional[dict] = None) -> str:
        ...

    def stream(self, prompt: str, options: Optional[dict] = None) -> AsyncIterator[str]:
        ...


def _request_body(model: str, prompt: str, options: Optional[dict], stream: bool) -> dict:
    options = options or {}
    messages = [{"role": "user", "content": prompt}]
    system = options.get("system")
    if system:
        messages.insert(0, {"role": "system", "content": system})
    return {
        "model": options.get("model", model),
        "messages": messages,
        "max_tokens": options.get("max_tokens", config.COMPLETION_MAX_TOKENS),
        "temperature": options.get("temperature", config.COMPLETION_TEMPERATURE),
        "stream": stream,
    }


class OpenAICompletionProvider:
    """OpenAI-compatible /chat/completions endpoint over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = config.OPENAI_API_KEY,
        base_url: str = config.OPENAI_BASE_URL,
        model: str = config.COMPLETION_MODEL,
        timeout_seconds: float = config.PROVIDER_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self.breaker = breaker or CircuitBreaker(
            "completion",
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, prompt: str, options: Optional[dict]) -> str:
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                headers=self._headers(),
                json=_request_body(self._model, prompt, options, stream=False),
            )
        except httpx.RequestError as exc:
            raise RetryableError(f"request error: {exc.__class__.__name__}") from exc
        if response.status_code in RETRYABLE_STATUS:
            raise RetryableError(f"status {response.status_code}")
        if response.status_code >= 400:
            raise CompletionProviderError(f"completion provider returned status {response.status_code}")
        data = response.json()
        return data["choices"][0]["message"]["content"] or ""

    async def complete(self, prompt: str, options: Optional[dict] = None) -> str:
        return await call_with_retries(
            lambda: self._post(prompt, options),
            breaker=self.breaker,
            error_cls=CompletionProviderError,
        )

    async def stream(self, prompt: str, options: Optional[dict] = None) -> AsyncIterator[str]:
        """Yield text fragments from a server-sent-events stream. No retries mid-stream."""
        if not self.breaker.allow():
            raise CompletionProviderError("completion unavailable: circuit breaker open")
        body = _request_body(self._model, prompt, options, stream=True)
        try:
            async with self._client.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                headers=self._headers(),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    self.breaker.record_failure(f"status {response.status_code}")
                    raise CompletionProviderError(
                        f"completion provider returned status {response.status_code}"
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        break
                    chunk = json.loads(payload)
                    delta = chunk["choices"][0].get("delta", {}).get("content")
                    if delta:
                        yield delta
        except httpx.RequestError as exc:
            self.breaker.record_failure(exc.__class__.__name__)
            raise CompletionProviderError("completion stream interrupted") from exc
        self.breaker.record_success()

    async def aclose(self) -> None:
        await self._client.aclose()


class DisabledCompletionProvider:
    async def complete(self, prompt: str, options: Optional[dict] = None) -> str:
        raise CompletionProviderError("completion provider disabled")

    async def stream(self, prompt: str, options: Optional[dict] = None) -> AsyncIterator[str]:
        raise CompletionProviderError("completion provider disabled")
        yield ""  # pragma: no cover
