"""Adaptive batch size for ``/process-media`` calls."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BatchSizer:
    """Grow the batch slowly on success, drop to the minimum on pressure.

    After a rate limit or timeout the sizer stays at the minimum until
    ``recovery_successes`` calls in a row have succeeded; growth then
    resumes one step per ``growth_streak`` successes.
    """

    min_size: int = 1
    max_size: int = 5
    growth_streak: int = 3
    recovery_successes: int = 5
    current: int = field(init=False)
    success_streak: int = field(default=0, init=False)
    recovery_remaining: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.min_size < 1:
            raise ValueError("min_size must be at least 1")
        if self.max_size < self.min_size:
            raise ValueError("max_size must not be below min_size")
        if self.growth_streak < 1:
            raise ValueError("growth_streak must be at least 1")
        self.current = self.min_size

    @property
    def in_recovery(self) -> bool:
        return self.recovery_remaining > 0

    def record_success(self) -> int:
        """Register a successful call and return the next size."""

        if self.in_recovery:
            self.recovery_remaining -= 1
            return self.current

        self.success_streak += 1
        if self.success_streak >= self.growth_streak and self.current < self.max_size:
            self.current += 1
            self.success_streak = 0
        return self.current

    def record_pressure(self) -> int:
        """Register a rate limit or timeout and return the next size."""

        self.current = self.min_size
        self.success_streak = 0
        self.recovery_remaining = self.recovery_successes
        return self.current


__all__ = ["BatchSizer"]
