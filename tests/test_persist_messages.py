"""Tests for the message persister."""

from unittest.mock import Mock

from src.domain.exceptions import RepositoryError
from src.domain.models import SERVICE_MESSAGE_PLACEHOLDER, MediaKind, MediaStatus
from src.domain.protocols import RepositoryProtocol
from src.use_cases.persist_messages import MessagePersister

CHANNEL = "-1001234567890"


class TestInitialStatus:
    def test_media_is_queued(self, repo: RepositoryProtocol, make_message) -> None:
        persister = MessagePersister(repo)
        assert (
            persister.initial_status_for(make_message(1, kind=MediaKind.PHOTO))
            is MediaStatus.PENDING
        )

    def test_link_previews_are_not_queued(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        persister = MessagePersister(repo, ["webpage"])
        assert (
            persister.initial_status_for(make_message(1, kind=MediaKind.WEBPAGE))
            is MediaStatus.NONE
        )

    def test_text_only_has_no_media(self, repo: RepositoryProtocol, make_message) -> None:
        assert MessagePersister(repo).initial_status_for(make_message(1)) is MediaStatus.NONE


class TestPersist:
    def test_persists_window_and_counts_media(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        result = MessagePersister(repo).persist(
            [
                make_message(101),
                make_message(102, kind=MediaKind.PHOTO, mime_type="image/jpeg"),
                make_message(103),
            ]
        )

        assert result.saved == 3
        assert result.new_media == 1
        assert result.errors == []
        assert [m.external_message_id for m in result.messages] == [101, 102, 103]
        assert result.messages[1].media_status is MediaStatus.PENDING

    def test_service_events_get_placeholder_text(
        self, repo: RepositoryProtocol, make_message
    ) -> None:
        result = MessagePersister(repo).persist(
            [make_message(7, text=None), make_message(8, text="   ")]
        )

        assert result.saved == 2
        assert all(m.text == SERVICE_MESSAGE_PLACEHOLDER for m in result.messages)
        assert repo.get_cursor(CHANNEL).latest == 8

    def test_stops_at_first_storage_error(self, make_message) -> None:
        repository = Mock()
        repository.upsert_message.side_effect = [1, RepositoryError("disk full"), 3]
        repository.get_messages_by_ids.return_value = []

        result = MessagePersister(repository).persist(
            [make_message(1), make_message(2), make_message(3)]
        )

        assert result.saved == 1
        assert len(result.errors) == 1
        assert "disk full" in result.errors[0]
        assert repository.upsert_message.call_count == 2
        repository.get_messages_by_ids.assert_called_once_with([1])
