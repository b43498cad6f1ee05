"""Exponential backoff for rate-limit signals seen by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Final

DEFAULT_BACKOFF_BASE_SECONDS: Final[float] = 5.0
DEFAULT_BACKOFF_MAX_SECONDS: Final[float] = 60.0


def backoff_delay(
    attempt: int,
    *,
    base: float = DEFAULT_BACKOFF_BASE_SECONDS,
    ceiling: float = DEFAULT_BACKOFF_MAX_SECONDS,
    server_hint: float | None = None,
) -> float:
    """Delay before retrying after the ``attempt``-th consecutive rate limit.

    A positive server hint always wins over the computed schedule.
    """

    if attempt < 1:
        raise ValueError("attempt must be at least 1")
    if server_hint is not None and server_hint > 0:
        return float(server_hint)
    return min(base * (2 ** (attempt - 1)), ceiling)


@dataclass
class BackoffPolicy:
    """Tracks consecutive rate limits and yields the next wait."""

    base: float = DEFAULT_BACKOFF_BASE_SECONDS
    ceiling: float = DEFAULT_BACKOFF_MAX_SECONDS
    consecutive: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be positive")
        if self.ceiling < self.base:
            raise ValueError("ceiling must not be below base")

    def next_delay(self, server_hint: float | None = None) -> float:
        self.consecutive += 1
        return backoff_delay(
            self.consecutive,
            base=self.base,
            ceiling=self.ceiling,
            server_hint=server_hint,
        )

    def reset(self) -> None:
        self.consecutive = 0


__all__ = [
    "DEFAULT_BACKOFF_BASE_SECONDS",
    "DEFAULT_BACKOFF_MAX_SECONDS",
    "BackoffPolicy",
    "backoff_delay",
]
