"""
Retry/backoff and circuit breaking for external provider calls.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import ragcore.config as config

logger = config.logger

T = TypeVar("T")


class BreakerState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    provider: str
    state: BreakerState
    failures: int
    retry_after_seconds: float
    last_error: Optional[str] = None


class CircuitBreaker:
    """
    Fail fast while a provider is down.

    `failure_threshold` consecutive failures open the breaker for
    `cooldown_seconds`. Once the cooldown has passed, a single trial call is
    let through and the cooldown restarts; its success closes the breaker and
    its failure keeps it open.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None

    def _state(self, now: float) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.closed
        if now - self._opened_at < self.cooldown_seconds:
            return BreakerState.open
        return BreakerState.half_open

    def allow(self) -> bool:
        """Whether a call may go out now."""
        with self._lock:
            now = self._clock()
            state = self._state(now)
            if state is BreakerState.half_open:
                self._opened_at = now
                logger.info("provider_circuit_trial", extra={"provider": self.name})
                return True
            return state is BreakerState.closed

    def record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info("provider_circuit_closed", extra={"provider": self.name})
            self._failures = 0
            self._opened_at = None

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._failures += 1
            self._last_error = error
            if self._failures >= self.failure_threshold:
                if self._opened_at is None:
                    logger.warning(
                        "provider_circuit_opened",
                        extra={"provider": self.name, "failures": self._failures, "error": error},
                    )
                self._opened_at = self._clock()

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            now = self._clock()
            state = self._state(now)
            retry_after = 0.0
            if state is BreakerState.open:
                retry_after = round(self._opened_at + self.cooldown_seconds - now, 3)
            return BreakerSnapshot(
                provider=self.name,
                state=state,
                failures=self._failures,
                retry_after_seconds=retry_after,
                last_error=self._last_error,
            )


class RetryableError(Exception):
    """A provider response worth retrying (rate limit, 5xx, transport error)."""


def backoff_delay(attempt: int, base_seconds: float, jitter_seconds: float) -> float:
    return base_seconds * (2 ** attempt) + random.uniform(0, jitter_seconds)


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    breaker: CircuitBreaker,
    error_cls: type[Exception],
    retry_max: int = config.EMBEDDING_RETRY_MAX,
    backoff_seconds: float = config.EMBEDDING_RETRY_BACKOFF_SECONDS,
    jitter_seconds: float = config.EMBEDDING_RETRY_JITTER_SECONDS,
) -> T:
    """
    Run `call` with exponential backoff on RetryableError.

    Non-retryable failures and exhausted retries trip the breaker and surface
    as `error_cls`. An open breaker fails fast without calling the provider.
    """
    if not breaker.allow():
        logger.warning("provider_circuit_open", extra={"provider": breaker.name})
        raise error_cls(f"{breaker.name} unavailable: circuit breaker open")
    for attempt in range(retry_max + 1):
        try:
            result = await call()
        except RetryableError as exc:
            if attempt >= retry_max:
                breaker.record_failure(str(exc))
                logger.warning("provider_unavailable", extra={"provider": breaker.name, "attempts": attempt + 1})
                raise error_cls(f"{breaker.name} unavailable: {exc}") from exc
            await asyncio.sleep(backoff_delay(attempt, backoff_seconds, jitter_seconds))
            continue
        except error_cls as exc:
            breaker.record_failure(str(exc))
            raise
        breaker.record_success()
        return result
    raise error_cls(f"{breaker.name} unavailable")
