"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytz

from src.adapters.blob_store import LocalBlobStore
from src.adapters.repository_factory import create_repository
from src.config.settings import Settings
from src.domain.exceptions import NotFoundError
from src.domain.models import (
    BlobObject,
    MediaKind,
    RemoteMedia,
    RemoteMessage,
    SyncMode,
)
from src.domain.protocols import RepositoryProtocol

CHANNEL_ID = "-1001234567890"
BASE_DATE = datetime(2025, 10, 10, 10, 0, tzinfo=pytz.UTC)
PHOTO_BYTES = b"\xff\xd8\xff" + b"x" * 2048

MessageFactory = Callable[..., RemoteMessage]


class FakeMessageSource:
    """In-memory message source that behaves like a Telegram channel."""

    def __init__(self) -> None:
        self.messages: dict[tuple[str, int], RemoteMessage] = {}
        self.payloads: dict[tuple[str, int], bytes] = {}
        self.fetch_calls: list[tuple[str, SyncMode, int | None, int]] = []
        self.download_calls: list[int] = []
        self.fetch_error: Exception | None = None
        self.download_error: Exception | None = None
        self.closed = False

    def add(self, message: RemoteMessage, payload: bytes | None = None) -> None:
        key = (message.channel_id, message.external_id)
        self.messages[key] = message
        if payload is not None:
            self.payloads[key] = payload

    def remove(self, channel_id: str, external_id: int) -> None:
        self.messages.pop((channel_id, external_id), None)

    async def fetch_window(
        self,
        channel_id: str,
        mode: SyncMode,
        boundary: int | None,
        limit: int,
    ) -> list[RemoteMessage]:
        self.fetch_calls.append((channel_id, mode, boundary, limit))
        if self.fetch_error is not None:
            raise self.fetch_error
        ids = sorted(eid for (cid, eid) in self.messages if cid == channel_id)
        if mode is SyncMode.FORWARD:
            selected = [eid for eid in ids if eid > (boundary or 0)]
        else:
            selected = [
                eid for eid in reversed(ids) if boundary is None or eid < boundary
            ]
        return [self.messages[(channel_id, eid)] for eid in selected[:limit]]

    async def get_message(
        self, channel_id: str, external_id: int
    ) -> RemoteMessage | None:
        return self.messages.get((channel_id, external_id))

    async def download_media(self, message: RemoteMessage, timeout: float) -> bytes:
        self.download_calls.append(message.external_id)
        if self.download_error is not None:
            raise self.download_error
        return self.payloads.get((message.channel_id, message.external_id), b"")

    async def close(self) -> None:
        self.closed = True


class InMemoryBlobStore:
    """Blob store keeping objects in a dict."""

    def __init__(self) -> None:
        self.objects: dict[str, BlobObject] = {}
        self.put_error: Exception | None = None

    def put(self, key: str, data: bytes, content_type: str) -> None:
        if self.put_error is not None:
            raise self.put_error
        self.objects[key] = BlobObject(key=key, data=data, content_type=content_type)

    def get(self, key: str) -> BlobObject:
        if key not in self.objects:
            raise NotFoundError(f"Blob {key} not found")
        return self.objects[key]

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with a temporary database and no real pacing delays."""

    return Settings().model_copy(
        update={
            "db_path": str(tmp_path / "archiver.sqlite"),
            "blob_backend": "local",
            "blob_local_dir": str(tmp_path / "media"),
            "public_media_base_url": "/media",
            "target_channel_id": None,
            "forward_window": 50,
            "backfill_window": 25,
            "backfill_after_empty_forward": 2,
            "sync_cooldown_seconds": 0.0,
            "approved_media_kinds": ["photo", "image"],
            "ingest_excluded_media_kinds": ["webpage"],
            "media_min_bytes": 100,
            "media_max_bytes": 20 * 1024 * 1024,
            "media_download_timeout_seconds": 5.0,
            "max_media_attempts": 3,
        }
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    """Provide a repository backed by a temporary SQLite file."""

    repository = create_repository(settings)
    yield repository

    db_path = Path(settings.db_path)
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def source() -> FakeMessageSource:
    return FakeMessageSource()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def local_blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def make_message() -> MessageFactory:
    """Factory for remote messages; ``kind`` attaches media of that kind."""

    def _make(
        external_id: int,
        *,
        channel_id: str = CHANNEL_ID,
        text: str | None = "hello",
        kind: MediaKind | None = None,
        mime_type: str | None = None,
        size: int | None = None,
        group_id: str | None = None,
        date: datetime | None = None,
    ) -> RemoteMessage:
        media = None
        if kind is not None:
            media = RemoteMedia(kind=kind, mime_type=mime_type, size=size)
        return RemoteMessage(
            external_id=external_id,
            channel_id=channel_id,
            date=date or BASE_DATE + timedelta(minutes=external_id % 10_000),
            text=text,
            group_id=group_id,
            media=media,
        )

    return _make
