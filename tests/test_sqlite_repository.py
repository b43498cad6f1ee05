"""Tests for the SQLite message and media store."""

import sqlite3
import threading
from datetime import timedelta

import pytest

from src.adapters.sqlite_repository import SQLiteRepository
from src.domain.exceptions import InvalidTransitionError
from src.domain.models import MediaKind, MediaObject, MediaStatus
from src.domain.protocols import RepositoryProtocol

CHANNEL = "-1001234567890"


def _media_object(message_id: int, key: str = "media/a.jpg") -> MediaObject:
    return MediaObject(
        message_id=message_id,
        blob_key=key,
        file_type="jpg",
        file_size=2048,
        mime_type="image/jpeg",
    )


class TestUpsert:
    def test_upsert_is_idempotent(self, repo: RepositoryProtocol, make_message) -> None:
        first = repo.upsert_message(make_message(101, text="v1"), MediaStatus.NONE)
        second = repo.upsert_message(make_message(101, text="v2"), MediaStatus.NONE)

        assert first == second
        stored = repo.get_message(first)
        assert stored is not None
        assert stored.text == "v2"
        assert repo.get_cursor(CHANNEL).count == 1

    def test_same_id_in_other_channel_is_separate(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        a = repo.upsert_message(make_message(7), MediaStatus.NONE)
        b = repo.upsert_message(make_message(7, channel_id="@other"), MediaStatus.NONE)
        assert a != b

    def test_upsert_does_not_regress_completed(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        message = make_message(102, kind=MediaKind.PHOTO)
        row_id = repo.upsert_message(message, MediaStatus.PENDING)
        assert repo.claim_media(row_id)
        assert repo.complete_media(row_id, _media_object(row_id))

        repo.upsert_message(message, MediaStatus.PENDING)

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_status is MediaStatus.COMPLETED
        assert stored.media_key == "media/a.jpg"

    def test_upsert_promotes_none_to_pending(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(make_message(5), MediaStatus.NONE)
        repo.upsert_message(make_message(5, kind=MediaKind.PHOTO), MediaStatus.PENDING)

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_status is MediaStatus.PENDING
        assert stored.media_type == "photo"

    def test_concurrent_upserts_leave_one_row(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        errors: list[Exception] = []
        ids: list[int] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            try:
                row_id = repo.upsert_message(
                    make_message(500, text=f"t{n}"), MediaStatus.NONE
                )
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
                return
            with lock:
                ids.append(row_id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(set(ids)) == 1
        assert repo.get_cursor(CHANNEL).count == 1


class TestCursor:
    def test_empty_channel(self, repo: RepositoryProtocol) -> None:
        assert repo.get_cursor(CHANNEL).is_empty

    def test_ordering_is_numeric_not_lexicographic(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        for external_id in (9, 10, 100, 99):
            repo.upsert_message(make_message(external_id), MediaStatus.NONE)

        cursor = repo.get_cursor(CHANNEL)
        assert cursor.earliest == 9
        assert cursor.latest == 100
        assert cursor.count == 4

    def test_ids_beyond_64_bits(self, repo: RepositoryProtocol, make_message) -> None:
        big = 2**70
        repo.upsert_message(make_message(big), MediaStatus.NONE)
        repo.upsert_message(make_message(big + 1), MediaStatus.NONE)

        cursor = repo.get_cursor(CHANNEL)
        assert cursor.earliest == big
        assert cursor.latest == big + 1


class TestMediaQueue:
    def test_selects_pending_before_failed_newest_first(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        old = repo.upsert_message(make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING)
        new = repo.upsert_message(make_message(2, kind=MediaKind.PHOTO), MediaStatus.PENDING)
        failed = repo.upsert_message(
            make_message(3, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert repo.claim_media(failed)
        assert repo.fail_media(failed, "boom")

        first = repo.select_next_media(CHANNEL, max_attempts=3)
        assert first is not None and first.id == new

        assert repo.claim_media(new)
        assert repo.claim_media(old)
        after = repo.select_next_media(CHANNEL, max_attempts=3)
        assert after is not None and after.id == failed

    def test_failed_rows_stop_after_max_attempts(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        for _ in range(2):
            assert repo.claim_media(row_id)
            assert repo.fail_media(row_id, "boom")

        assert repo.count_remaining_media(CHANNEL, max_attempts=3) == 1
        assert repo.count_remaining_media(CHANNEL, max_attempts=2) == 0
        assert repo.select_next_media(CHANNEL, max_attempts=2) is None

    def test_queue_spans_channels_without_filter(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        repo.upsert_message(make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING)
        other = repo.upsert_message(
            make_message(2, channel_id="-1009999", kind=MediaKind.PHOTO),
            MediaStatus.PENDING,
        )

        assert repo.count_remaining_media(None, max_attempts=3) == 2
        assert repo.count_remaining_media("-1009999", max_attempts=3) == 1
        picked = repo.select_next_media(None, max_attempts=3)
        assert picked is not None and picked.id == other

    def test_claim_is_exclusive(self, repo: RepositoryProtocol, make_message) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert repo.claim_media(row_id)
        assert not repo.claim_media(row_id)
        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_attempts == 1

    def test_release_restores_status_and_attempts(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert repo.claim_media(row_id)
        assert repo.release_media_claim(row_id, MediaStatus.PENDING)

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_status is MediaStatus.PENDING
        assert stored.media_attempts == 0

    def test_release_refuses_non_selectable_status(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert repo.claim_media(row_id)
        with pytest.raises(InvalidTransitionError):
            repo.release_media_claim(row_id, MediaStatus.COMPLETED)

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_status is MediaStatus.PROCESSING

    def test_complete_requires_processing(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert not repo.complete_media(row_id, _media_object(row_id))

        assert repo.claim_media(row_id)
        assert repo.complete_media(row_id, _media_object(row_id))
        assert not repo.complete_media(row_id, _media_object(row_id, "media/b.jpg"))

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_key == "media/a.jpg"
        assert stored.media is not None
        assert stored.media.file_size == 2048
        assert repo.get_media_object(row_id) is not None

    def test_terminal_skip_is_never_reselected(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.VIDEO), MediaStatus.PENDING
        )
        assert repo.skip_media(row_id, MediaStatus.SKIPPED_TYPE, "video not approved")
        assert repo.select_next_media(CHANNEL, max_attempts=3) is None
        assert not repo.claim_media(row_id)

    def test_skip_rejects_non_skip_status(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        with pytest.raises(ValueError):
            repo.skip_media(row_id, MediaStatus.FAILED, "nope")


class TestListingAndStats:
    def test_list_messages_newest_first_with_pagination(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        for external_id in range(1, 6):
            repo.upsert_message(make_message(external_id), MediaStatus.NONE)

        page = repo.list_messages(CHANNEL, limit=2, offset=0)
        assert [m.external_message_id for m in page.messages] == [5, 4]
        assert page.total == 5
        assert page.page == 1
        assert page.has_more

        last = repo.list_messages(CHANNEL, limit=2, offset=4)
        assert [m.external_message_id for m in last.messages] == [1]
        assert not last.has_more

    def test_count_by_status(self, repo: RepositoryProtocol, make_message) -> None:
        repo.upsert_message(make_message(1), MediaStatus.NONE)
        repo.upsert_message(make_message(2, kind=MediaKind.PHOTO), MediaStatus.PENDING)

        counts = repo.count_by_status(CHANNEL)
        assert counts["none"] == 1
        assert counts["pending"] == 1
        assert counts["completed"] == 0


class TestResetStuckMedia:
    def test_stale_processing_returns_to_pending(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        row_id = repo.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        assert repo.claim_media(row_id)

        assert repo.reset_stuck_media(timedelta(minutes=15)) == 0
        assert repo.reset_stuck_media(timedelta(seconds=-1)) == 1

        stored = repo.get_message(row_id)
        assert stored is not None
        assert stored.media_status is MediaStatus.PENDING

    def test_repairs_key_status_mismatch(self, settings, make_message) -> None:
        repository = SQLiteRepository(settings.db_path)
        keyed = repository.upsert_message(
            make_message(1, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        keyless = repository.upsert_message(
            make_message(2, kind=MediaKind.PHOTO), MediaStatus.PENDING
        )
        with sqlite3.connect(settings.db_path) as conn:
            conn.execute(
                "UPDATE messages SET media_key = 'media/x.jpg' WHERE id = ?", (keyed,)
            )
            conn.execute(
                "UPDATE messages SET media_status = 'completed' WHERE id = ?", (keyless,)
            )

        assert repository.reset_stuck_media(timedelta(minutes=15)) == 2

        repaired_keyed = repository.get_message(keyed)
        repaired_keyless = repository.get_message(keyless)
        assert repaired_keyed is not None and repaired_keyless is not None
        assert repaired_keyed.media_status is MediaStatus.COMPLETED
        assert repaired_keyless.media_status is MediaStatus.PENDING

    def test_schema_creation_is_repeatable(self, settings) -> None:
        SQLiteRepository(settings.db_path)
        SQLiteRepository(settings.db_path)
