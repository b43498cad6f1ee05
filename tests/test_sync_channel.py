"""Tests for the sync channel use case."""

import asyncio
import threading
from unittest.mock import Mock

import pytest

from src.config.settings import Settings
from src.domain.exceptions import ValidationError
from src.domain.models import MediaKind, MediaStatus, SyncMode
from src.domain.protocols import RepositoryProtocol
from src.use_cases.sync_channel import sync_channel_use_case

CHANNEL = "-1001234567890"


def _sync(source, repo, settings, **kwargs):
    return asyncio.run(
        sync_channel_use_case(
            kwargs.pop("channel_id", CHANNEL),
            source=source,
            repository=repo,
            settings=settings,
            **kwargs,
        )
    )


class TestSyncChannel:
    def test_requires_channel(self, source, repo: RepositoryProtocol, settings: Settings) -> None:
        with pytest.raises(ValidationError):
            _sync(source, repo, settings, channel_id=None)

    def test_rejects_negative_streak(
        self, source, repo: RepositoryProtocol, settings: Settings
    ) -> None:
        with pytest.raises(ValidationError):
            _sync(source, repo, settings, forward_empty_streak=-1)

    def test_first_sync_of_empty_store(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        source.add(make_message(101))
        source.add(make_message(102, kind=MediaKind.PHOTO, mime_type="image/jpeg"))
        source.add(make_message(103))

        result = _sync(source, repo, settings)

        assert result.mode is SyncMode.BACKFILL
        assert result.synced == 3
        assert result.new_media == 1
        assert result.has_new_messages
        assert not result.gap
        assert result.cursor.earliest == 101
        assert result.cursor.latest == 103
        by_id = {m.external_message_id: m for m in result.messages}
        assert by_id[102].media_status is MediaStatus.PENDING
        assert by_id[101].media_status is MediaStatus.NONE

    def test_forward_cursor_never_decreases(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        for external_id in (1, 2, 3):
            source.add(make_message(external_id))
        _sync(source, repo, settings)

        latest_values = []
        for external_id in (4, 5):
            source.add(make_message(external_id))
            result = _sync(source, repo, settings)
            assert result.mode is SyncMode.FORWARD
            latest_values.append(result.cursor.latest)

        idle = _sync(source, repo, settings)
        assert not idle.has_new_messages
        latest_values.append(idle.cursor.latest)
        assert latest_values == sorted(latest_values)
        assert latest_values[-1] == 5

    def test_backfill_cursor_never_increases(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        settings = settings.model_copy(update={"backfill_window": 2})
        for external_id in range(10, 20):
            source.add(make_message(external_id))

        earliest_values = []
        for _ in range(4):
            result = _sync(source, repo, settings, forced_mode=SyncMode.BACKFILL)
            earliest_values.append(result.cursor.earliest)

        assert earliest_values == sorted(earliest_values, reverse=True)
        assert earliest_values == [18, 16, 14, 12]

    def test_service_only_batch_still_advances(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        source.add(make_message(1))
        _sync(source, repo, settings)
        for external_id in (2, 3, 4):
            source.add(make_message(external_id, text=None))

        result = _sync(source, repo, settings)

        assert result.synced == 3
        assert result.cursor.latest == 4
        follow_up = _sync(source, repo, settings)
        assert follow_up.synced == 0

    def test_gap_switches_to_backfill_after_empty_forward_streak(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        for external_id in (40, 41, 50, 52, 53):
            source.add(make_message(external_id))
        # Seed only the newest ids so the store has a hole at 51.
        for external_id in (50, 52, 53):
            repo.upsert_message(make_message(external_id), MediaStatus.NONE)

        first = _sync(source, repo, settings, forward_empty_streak=0)
        second = _sync(source, repo, settings, forward_empty_streak=1)
        third = _sync(source, repo, settings, forward_empty_streak=2)

        assert first.mode is SyncMode.FORWARD and first.synced == 0 and first.gap
        assert second.mode is SyncMode.FORWARD and second.synced == 0
        assert third.mode is SyncMode.BACKFILL
        assert [m.external_message_id for m in third.messages] == [41, 40]

    def test_repository_work_runs_off_the_event_loop_thread(
        self, source, repo: RepositoryProtocol, settings: Settings, make_message
    ) -> None:
        source.add(make_message(101))
        loop_thread = threading.get_ident()
        calling_threads: list[int] = []
        tracked_repo = Mock(wraps=repo)

        def _tracking(name: str):
            real = getattr(repo, name)

            def _call(*args, **kwargs):
                calling_threads.append(threading.get_ident())
                return real(*args, **kwargs)

            return _call

        for name in ("get_cursor", "upsert_message", "get_messages_by_ids"):
            getattr(tracked_repo, name).side_effect = _tracking(name)

        result = _sync(source, tracked_repo, settings)

        assert result.synced == 1
        assert calling_threads
        assert loop_thread not in calling_threads
