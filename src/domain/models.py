"""Domain models for the channel archiver.

All models use Pydantic v2 for validation and serialization. External
message ids are plain ``int`` values validated through
:mod:`src.domain.external_ids`, so floats never sneak in.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from src.domain.external_ids import id_span, parse_external_id

SERVICE_MESSAGE_PLACEHOLDER = "[service message]"


class MediaStatus(str, Enum):
    """Lifecycle stage of a message attachment."""

    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_TYPE = "skipped_type"
    SKIPPED_LARGE = "skipped_large"
    SKIPPED = "skipped"


class SyncMode(str, Enum):
    """Direction of a sync pull."""

    FORWARD = "forward"
    BACKFILL = "backfill"


class MediaKind(str, Enum):
    """Kind of media attached to a remote message."""

    PHOTO = "photo"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    STICKER = "sticker"
    ANIMATION = "animation"
    DOCUMENT = "document"
    WEBPAGE = "webpage"
    POLL = "poll"
    GEO = "geo"
    CONTACT = "contact"
    OTHER = "other"


class OutcomeKind(str, Enum):
    """How a media fetch attempt ended.

    ``skipped`` is permanent and policy based; ``failed`` is retryable.
    """

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class RemoteMedia(BaseModel):
    """Media descriptor as reported by the external source."""

    kind: MediaKind = Field(..., description="Media kind")
    mime_type: str | None = Field(default=None, description="MIME type if known")
    size: int | None = Field(default=None, description="Size in bytes if known")


class RemoteMessage(BaseModel):
    """Message as returned by the external source, adapter neutral."""

    external_id: int = Field(..., description="External message id")
    channel_id: str = Field(..., description="Channel identifier")
    date: datetime = Field(..., description="Message date as UTC datetime")
    text: str | None = Field(default=None, description="Message text")
    group_id: str | None = Field(default=None, description="Album group id")
    media: RemoteMedia | None = Field(default=None, description="Attached media")

    _raw: Any = PrivateAttr(default=None)

    @field_validator("external_id", mode="before")
    @classmethod
    def _validate_external_id(cls, value: Any) -> int:
        return parse_external_id(value)

    @property
    def raw(self) -> Any:
        """Provider object the adapter needs to download media later."""
        return self._raw

    def with_raw(self, raw: Any) -> "RemoteMessage":
        self._raw = raw
        return self

    @property
    def is_service_event(self) -> bool:
        """True when the message carries neither text nor media."""
        return not (self.text or "").strip() and self.media is None


class MediaObject(BaseModel):
    """Stored blob belonging to one message."""

    message_id: int = Field(..., description="Owning message row id")
    blob_key: str = Field(..., description="Key in blob storage")
    file_type: str = Field(..., description="File extension, e.g. jpg")
    file_size: int = Field(..., description="Size in bytes")
    mime_type: str = Field(..., description="MIME type")
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class ArchivedMessage(BaseModel):
    """Persisted message row."""

    id: int = Field(..., description="Internal row id")
    external_message_id: int = Field(..., description="External message id")
    channel_id: str = Field(..., description="Channel identifier")
    text: str | None = Field(default=None)
    date: datetime = Field(..., description="Message date as UTC datetime")
    group_id: str | None = Field(default=None)
    media_status: MediaStatus = Field(default=MediaStatus.NONE)
    media_type: str | None = Field(default=None)
    media_key: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    media_attempts: int = Field(default=0)
    created_at: datetime | None = Field(default=None)
    media: MediaObject | None = Field(default=None, description="Joined media row")

    @field_validator("external_message_id", mode="before")
    @classmethod
    def _validate_external_id(cls, value: Any) -> int:
        return parse_external_id(value)


class Cursor(BaseModel):
    """Sync position derived from the stored id range of one channel."""

    model_config = ConfigDict(frozen=True)

    earliest: int | None = None
    latest: int | None = None
    count: int = 0

    @property
    def is_empty(self) -> bool:
        return self.count == 0 or self.earliest is None or self.latest is None

    @property
    def is_contiguous(self) -> bool:
        """Every id between earliest and latest is stored."""
        if self.is_empty:
            return True
        assert self.earliest is not None and self.latest is not None
        return self.count == id_span(self.earliest, self.latest)

    @property
    def has_gap(self) -> bool:
        """Older history may exist below ``earliest`` and the range has holes."""
        if self.is_empty:
            return False
        assert self.earliest is not None
        return self.earliest > 1 and not self.is_contiguous


class SyncPlan(BaseModel):
    """What the next pull will do, decided before any external call."""

    model_config = ConfigDict(frozen=True)

    mode: SyncMode
    boundary: int | None = Field(
        default=None, description="Exclusive id boundary; None pulls the newest window"
    )
    window: int = Field(..., gt=0)
    cursor: Cursor


class PersistResult(BaseModel):
    """Outcome of persisting one pulled window."""

    saved: int = 0
    new_media: int = 0
    messages: list[ArchivedMessage] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Result of one sync invocation."""

    channel_id: str
    mode: SyncMode
    boundary: int | None = None
    pulled: int = 0
    synced: int = 0
    new_media: int = 0
    has_new_messages: bool = False
    gap: bool = False
    cursor: Cursor = Field(default_factory=Cursor)
    messages: list[ArchivedMessage] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class MediaOutcome(BaseModel):
    """Per-item result of one media fetch attempt."""

    message_id: int
    external_message_id: int
    channel_id: str
    status: MediaStatus
    kind: OutcomeKind
    media_key: str | None = None
    media_type: str | None = None
    reason: str | None = None


class ProcessMediaResult(BaseModel):
    """Result of a batch of media fetch attempts."""

    outcomes: list[MediaOutcome] = Field(default_factory=list)
    remaining: int = 0
    rate_limited: bool = Field(
        default=False, description="The batch stopped on a provider rate limit"
    )
    retry_after: int | None = Field(default=None, description="Provider wait hint")
    credential_error: str | None = Field(
        default=None, description="The batch stopped because the session is invalid"
    )

    @property
    def processed(self) -> int:
        return len(self.outcomes)


class MessagePage(BaseModel):
    """One page of archived messages."""

    messages: list[ArchivedMessage] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def page(self) -> int:
        return self.offset // self.limit + 1 if self.limit else 1

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class BlobObject(BaseModel):
    """Bytes read back from blob storage."""

    key: str
    data: bytes
    content_type: str = "application/octet-stream"
