"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import contextvars
import time
import uuid


@dataclass(frozen=True)
class RequestContext:
    """Caller-supplied request values. `deadline` is a time.monotonic() instant."""

    user_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    deadline: Optional[float] = None
    now: Optional[datetime] = None

    def remaining_seconds(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


_CURRENT_REQUEST_CONTEXT: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "ragcore_request_context",
    default=None,
)


def get_current_request_context() -> Optional[RequestContext]:
    return _CURRENT_REQUEST_CONTEXT.get()


def set_current_request_context(context: Optional[RequestContext]) -> contextvars.Token:
    return _CURRENT_REQUEST_CONTEXT.set(context)


def reset_current_request_context(token: contextvars.Token) -> None:
    _CURRENT_REQUEST_CONTEXT.reset(token)


def resolve_now(context: Optional[RequestContext] = None, now: Optional[datetime] = None) -> datetime:
    """Explicit `now` wins, then the request's pinned time, then the wall clock."""
    if now is not None:
        return now
    context = context or get_current_request_context()
    if context is not None and context.now is not None:
        return context.now
    return datetime.utcnow()


def resolve_timeout(default_seconds: float, context: Optional[RequestContext] = None) -> float:
    """Per-call timeout, tightened by the request deadline when there is one."""
    context = context or get_current_request_context()
    remaining = context.remaining_seconds() if context is not None else None
    if remaining is None:
        return default_seconds
    return min(default_seconds, remaining)


__all__ = [
    "RequestContext",
    "get_current_request_context",
    "set_current_request_context",
    "reset_current_request_context",
    "resolve_now",
    "resolve_timeout",
]
