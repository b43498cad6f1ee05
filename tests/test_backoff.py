"""Tests for rate-limit backoff."""

import pytest

from src.services.backoff import BackoffPolicy, backoff_delay


class TestBackoffDelay:
    def test_doubles_from_base(self) -> None:
        assert [backoff_delay(n, base=5, ceiling=60) for n in range(1, 6)] == [
            5,
            10,
            20,
            40,
            60,
        ]

    def test_capped_at_ceiling(self) -> None:
        assert backoff_delay(10, base=5, ceiling=60) == 60

    def test_server_hint_wins(self) -> None:
        assert backoff_delay(1, base=5, ceiling=60, server_hint=90) == 90
        assert backoff_delay(4, base=5, ceiling=60, server_hint=3) == 3

    def test_non_positive_hint_is_ignored(self) -> None:
        assert backoff_delay(2, base=5, ceiling=60, server_hint=0) == 10

    def test_attempt_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            backoff_delay(0)


class TestBackoffPolicy:
    def test_tracks_consecutive_rate_limits(self) -> None:
        policy = BackoffPolicy(base=2, ceiling=10)
        assert [policy.next_delay() for _ in range(4)] == [2, 4, 8, 10]

        policy.reset()
        assert policy.next_delay() == 2

    def test_invalid_configuration(self) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(base=0)
        with pytest.raises(ValueError):
            BackoffPolicy(base=10, ceiling=5)
