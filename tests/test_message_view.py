"""Tests for the client-side message view."""

from datetime import datetime, timedelta

import pytz

from src.domain.api_models import MediaResultPayload, MessagePayload
from src.domain.models import MediaStatus, OutcomeKind
from src.services.message_view import MessageView

CHANNEL = "-1001234567890"
BASE = datetime(2025, 10, 10, 10, 0, tzinfo=pytz.UTC)


def _payload(
    external_id: int,
    *,
    text: str | None = "hi",
    group_id: str | None = None,
    status: MediaStatus = MediaStatus.NONE,
) -> MessagePayload:
    return MessagePayload(
        id=external_id,
        external_message_id=str(external_id),
        channel_id=CHANNEL,
        text=text,
        date=BASE + timedelta(minutes=external_id),
        group_id=group_id,
        media_status=status,
    )


class TestMerge:
    def test_messages_are_newest_first(self) -> None:
        view = MessageView()
        view.merge_messages([_payload(1), _payload(3)])
        view.merge_messages([_payload(2)])

        assert [m.external_message_id for m in view.messages()] == ["3", "2", "1"]

    def test_merge_replaces_existing_rows(self) -> None:
        view = MessageView()
        assert view.merge_messages([_payload(1, text="old")]) == 1
        assert view.merge_messages([_payload(1, text="new")]) == 0

        assert len(view) == 1
        message = view.get(CHANNEL, "1")
        assert message is not None and message.text == "new"


class TestApplyOutcomes:
    def test_completed_outcome_sets_key_and_url(self) -> None:
        view = MessageView(media_base_url="https://cdn.example/media/")
        view.merge_messages([_payload(102, status=MediaStatus.PENDING)])

        updated = view.apply_outcomes(
            [
                MediaResultPayload(
                    message_id=102,
                    external_message_id="102",
                    channel_id=CHANNEL,
                    status=MediaStatus.COMPLETED,
                    outcome=OutcomeKind.COMPLETED,
                    media_key="media/x_102_1.jpg",
                    media_type="photo",
                )
            ]
        )

        assert updated == 1
        message = view.get(CHANNEL, "102")
        assert message is not None
        assert message.media_status is MediaStatus.COMPLETED
        assert message.media_key == "media/x_102_1.jpg"
        assert message.media_url == "https://cdn.example/media/media/x_102_1.jpg"

    def test_unknown_messages_are_ignored(self) -> None:
        view = MessageView()
        result = MediaResultPayload(
            message_id=1,
            external_message_id="999",
            channel_id=CHANNEL,
            status=MediaStatus.FAILED,
            outcome=OutcomeKind.FAILED,
            reason="boom",
        )
        assert view.apply_outcomes([result]) == 0


class TestGroupAlbums:
    def test_album_master_is_first_member_with_text(self) -> None:
        view = MessageView()
        view.merge_messages(
            [
                _payload(10, text=None, group_id="g1"),
                _payload(11, text="caption", group_id="g1"),
                _payload(12, text=None, group_id="g1"),
                _payload(13, text="solo"),
            ]
        )

        albums = view.group_albums()

        assert len(albums) == 2
        solo, album = albums
        assert solo.master.external_message_id == "13"
        assert len(solo.members) == 1
        assert album.group_id == "g1"
        assert album.master.external_message_id == "11"
        assert [m.external_message_id for m in album.members] == ["12", "11", "10"]

    def test_album_without_text_uses_first_member(self) -> None:
        view = MessageView()
        view.merge_messages(
            [_payload(1, text=None, group_id="g"), _payload(2, text=None, group_id="g")]
        )
        (album,) = view.group_albums()
        assert album.master.external_message_id == "2"
