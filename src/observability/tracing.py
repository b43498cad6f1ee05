"""Correlation identifiers shared by request handlers and orchestrator cycles."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final
from uuid import uuid4

from src.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY: Final[str] = "correlation_id"
CORRELATION_HEADER: Final[str] = "X-Correlation-ID"


def new_correlation_id() -> str:
    return uuid4().hex


@contextmanager
def correlation_scope(existing_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id to log entries until the block exits.

    An id received from an upstream caller is reused so that the
    orchestrator's log lines and the server's log lines can be joined.
    """

    correlation_id = existing_id or new_correlation_id()
    bind_context(**{CORRELATION_ID_KEY: correlation_id})
    try:
        yield correlation_id
    finally:
        unbind_context(CORRELATION_ID_KEY)


__all__ = [
    "CORRELATION_HEADER",
    "CORRELATION_ID_KEY",
    "correlation_scope",
    "new_correlation_id",
]
