"""Wire models for the HTTP contract.

Shared by the FastAPI server (response models) and the httpx client used by
the batch orchestrator. JSON keys are camelCase; external ids travel as
decimal strings so no JSON consumer ever parses them as floats.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.domain.external_ids import format_external_id
from src.domain.models import (
    ArchivedMessage,
    Cursor,
    MediaOutcome,
    MediaStatus,
    OutcomeKind,
    SyncMode,
)

T = TypeVar("T")


def build_media_url(base_url: str, media_key: str | None) -> str | None:
    """Public URL of a stored blob, or None when there is no key."""
    if not media_key:
        return None
    return f"{base_url.rstrip('/')}/{media_key.lstrip('/')}"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CursorPayload(WireModel):
    earliest: str | None = None
    latest: str | None = None
    count: int = 0

    @classmethod
    def from_domain(cls, cursor: Cursor) -> "CursorPayload":
        return cls(
            earliest=None if cursor.earliest is None else format_external_id(cursor.earliest),
            latest=None if cursor.latest is None else format_external_id(cursor.latest),
            count=cursor.count,
        )


class MediaPayload(WireModel):
    file_type: str
    file_size: int
    mime_type: str


class MessagePayload(WireModel):
    id: int
    external_message_id: str
    channel_id: str
    text: str | None = None
    date: datetime
    group_id: str | None = None
    media_status: MediaStatus = MediaStatus.NONE
    media_type: str | None = None
    media_key: str | None = None
    media_url: str | None = None
    error_message: str | None = None
    media: MediaPayload | None = None

    @classmethod
    def from_domain(
        cls, message: ArchivedMessage, media_base_url: str
    ) -> "MessagePayload":
        media = None
        if message.media is not None:
            media = MediaPayload(
                file_type=message.media.file_type,
                file_size=message.media.file_size,
                mime_type=message.media.mime_type,
            )
        return cls(
            id=message.id,
            external_message_id=format_external_id(message.external_message_id),
            channel_id=message.channel_id,
            text=message.text,
            date=message.date,
            group_id=message.group_id,
            media_status=message.media_status,
            media_type=message.media_type,
            media_key=message.media_key,
            media_url=build_media_url(media_base_url, message.media_key),
            error_message=message.error_message,
            media=media,
        )


class SyncResponse(WireModel):
    success: bool = True
    synced: int = 0
    media: int = Field(default=0, description="Newly pending media items")
    has_new_messages: bool = False
    mode: SyncMode = SyncMode.FORWARD
    gap: bool = False
    cursor: CursorPayload = Field(default_factory=CursorPayload)
    messages: list[MessagePayload] = Field(default_factory=list)
    suggested_cooldown_seconds: float | None = None
    message: str = ""
    error: str | None = None


class MediaResultPayload(WireModel):
    message_id: int
    external_message_id: str
    channel_id: str
    status: MediaStatus
    outcome: OutcomeKind
    media_key: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    reason: str | None = None

    @classmethod
    def from_domain(
        cls, outcome: MediaOutcome, media_base_url: str
    ) -> "MediaResultPayload":
        return cls(
            message_id=outcome.message_id,
            external_message_id=format_external_id(outcome.external_message_id),
            channel_id=outcome.channel_id,
            status=outcome.status,
            outcome=outcome.kind,
            media_key=outcome.media_key,
            media_type=outcome.media_type,
            media_url=build_media_url(media_base_url, outcome.media_key),
            reason=outcome.reason,
        )


class ProcessMediaResponse(WireModel):
    success: bool = True
    processed: int = 0
    remaining: int = 0
    results: list[MediaResultPayload] = Field(default_factory=list)
    retry_after_seconds: int | None = None
    error: str | None = None


class PaginationPayload(WireModel):
    total: int
    page: int
    limit: int
    has_more: bool


class MessagesResponse(WireModel):
    success: bool = True
    messages: list[MessagePayload] = Field(default_factory=list)
    pagination: PaginationPayload


class StatsResponse(WireModel):
    success: bool = True
    channel_id: str | None = None
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class MaintenanceResponse(WireModel):
    success: bool = True
    repaired: int = 0


class ErrorResponse(WireModel):
    success: bool = False
    error: str
    retry_after_seconds: int | None = None


class ApiCallStatus(str, Enum):
    """Discriminant of an HTTP call as seen by the orchestrator."""

    OK = "ok"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    CREDENTIALS = "credentials"
    FAILED = "failed"


@dataclass(frozen=True)
class ApiCall(Generic[T]):
    """Tagged result of one HTTP call.

    ``payload`` is set for OK (and, when the server sent one, for
    RATE_LIMITED or CREDENTIALS so partial media results are not lost).
    """

    status: ApiCallStatus
    payload: T | None = None
    retry_after: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is ApiCallStatus.OK

    @classmethod
    def success(cls, payload: T) -> "ApiCall[T]":
        return cls(status=ApiCallStatus.OK, payload=payload)

    @classmethod
    def rate_limited(
        cls, retry_after: float | None, payload: T | None = None
    ) -> "ApiCall[T]":
        return cls(
            status=ApiCallStatus.RATE_LIMITED,
            payload=payload,
            retry_after=retry_after,
            error="rate limited",
        )

    @classmethod
    def timeout(cls, error: str = "request timed out") -> "ApiCall[T]":
        return cls(status=ApiCallStatus.TIMEOUT, error=error)

    @classmethod
    def credentials(cls, error: str, payload: T | None = None) -> "ApiCall[T]":
        return cls(status=ApiCallStatus.CREDENTIALS, payload=payload, error=error)

    @classmethod
    def failed(cls, error: str) -> "ApiCall[T]":
        return cls(status=ApiCallStatus.FAILED, error=error)
