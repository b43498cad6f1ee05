"""Client-side view of archived messages kept in step with API results.

The orchestrator merges ``/sync`` messages and ``/process-media`` outcomes
into this view as soon as each call returns, so a consumer sees new rows and
finished media without re-reading ``/messages``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from src.domain.api_models import (
    MediaResultPayload,
    MessagePayload,
    build_media_url,
)
from src.domain.external_ids import parse_external_id

MessageKey = tuple[str, str]


def _key(channel_id: str, external_message_id: str) -> MessageKey:
    return channel_id, external_message_id


def _newest_first(message: MessagePayload) -> tuple[float, int]:
    return (
        -message.date.timestamp(),
        -parse_external_id(message.external_message_id),
    )


@dataclass(frozen=True)
class AlbumGroup:
    """Messages displayed together; ``master`` carries the caption."""

    master: MessagePayload
    members: tuple[MessagePayload, ...]

    @property
    def group_id(self) -> str | None:
        return self.master.group_id


@dataclass
class MessageView:
    media_base_url: str = "/media"
    _messages: dict[MessageKey, MessagePayload] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, channel_id: str, external_message_id: str) -> MessagePayload | None:
        return self._messages.get(_key(channel_id, external_message_id))

    def messages(self) -> list[MessagePayload]:
        """All messages, newest first."""
        return sorted(self._messages.values(), key=_newest_first)

    def merge_messages(self, incoming: list[MessagePayload]) -> int:
        """Insert or replace messages; returns how many were not seen before."""
        added = 0
        for message in incoming:
            key = _key(message.channel_id, message.external_message_id)
            if key not in self._messages:
                added += 1
            self._messages[key] = message
        return added

    def apply_outcomes(self, results: list[MediaResultPayload]) -> int:
        """Reflect per-item media outcomes; returns how many rows changed."""
        updated = 0
        for result in results:
            key = _key(result.channel_id, result.external_message_id)
            current = self._messages.get(key)
            if current is None:
                continue
            media_url = result.media_url or build_media_url(
                self.media_base_url, result.media_key
            )
            self._messages[key] = current.model_copy(
                update={
                    "media_status": result.status,
                    "media_key": result.media_key,
                    "media_url": media_url,
                    "media_type": result.media_type or current.media_type,
                    "error_message": result.reason,
                }
            )
            updated += 1
        return updated

    def group_albums(self) -> list[AlbumGroup]:
        """Group messages sharing a group id, newest group first.

        Messages without a group id form single-member groups. The master of
        an album is its first member (newest first) that has text, falling
        back to the first member.
        """
        groups: list[list[MessagePayload]] = []
        by_group: dict[tuple[str, str], list[MessagePayload]] = {}
        for message in self.messages():
            if message.group_id is None:
                groups.append([message])
                continue
            group_key = (message.channel_id, message.group_id)
            members = by_group.get(group_key)
            if members is None:
                members = []
                by_group[group_key] = members
                groups.append(members)
            members.append(message)

        albums: list[AlbumGroup] = []
        for members in groups:
            master = next((m for m in members if (m.text or "").strip()), members[0])
            albums.append(AlbumGroup(master=master, members=tuple(members)))
        return albums


__all__ = ["AlbumGroup", "MessageView"]
