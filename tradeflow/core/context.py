"""Task-scoped context helpers."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

import structlog


_correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str) -> Token:
    """Bind the correlation identifier to the current context."""
    return _correlation_id_ctx.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id_ctx.get()


def reset_correlation_id(token: Token) -> None:
    _correlation_id_ctx.reset(token)


@contextmanager
def analysis_log_context(analysis_id: str, **extra: str) -> Iterator[None]:
    """Bind an analysis id (and correlation id) to every log line in the block."""
    token = set_correlation_id(analysis_id)
    structlog.contextvars.bind_contextvars(analysis_id=analysis_id, **extra)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("analysis_id", *extra.keys())
        reset_correlation_id(token)
