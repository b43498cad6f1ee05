"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from datetime import timedelta
from typing import Protocol

from src.domain.api_models import ApiCall, ProcessMediaResponse, SyncResponse
from src.domain.models import (
    ArchivedMessage,
    BlobObject,
    Cursor,
    MediaObject,
    MediaStatus,
    MessagePage,
    RemoteMessage,
    SyncMode,
)


class MessageSourceProtocol(Protocol):
    """External message service (Telegram) as seen by the pipeline."""

    async def fetch_window(
        self,
        channel_id: str,
        mode: SyncMode,
        boundary: int | None,
        limit: int,
    ) -> list[RemoteMessage]:
        """Fetch up to ``limit`` messages beyond ``boundary``.

        Args:
            channel_id: Channel identifier
            mode: FORWARD returns ids above boundary ascending; BACKFILL
                returns ids below boundary descending
            boundary: Exclusive boundary id, or None for the newest window
            limit: Window cap

        Returns:
            Messages in source order

        Raises:
            RateLimitError: Provider asked us to slow down
            CredentialError: Session is not authorised
            PullError: Any other provider or network failure
        """
        ...

    async def get_message(
        self, channel_id: str, external_id: int
    ) -> RemoteMessage | None:
        """Resolve one message, or None when it no longer exists."""
        ...

    async def download_media(self, message: RemoteMessage, timeout: float) -> bytes:
        """Download the media of ``message`` within ``timeout`` seconds.

        Raises:
            DownloadTimeoutError: Download did not finish in time
            RateLimitError: Provider asked us to slow down
        """
        ...

    async def close(self) -> None:
        """Release the provider connection."""
        ...


class BlobStoreProtocol(Protocol):
    """Keyed object storage for downloaded media."""

    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``.

        Raises:
            BlobStoreError: On write failure
        """
        ...

    def get(self, key: str) -> BlobObject:
        """Read an object back.

        Raises:
            NotFoundError: If the key does not exist
            BlobStoreError: On read failure
        """
        ...

    def delete(self, key: str) -> None:
        """Remove an object; missing keys are ignored."""
        ...


class RepositoryProtocol(Protocol):
    """Persisted message/media store, the single coordination point."""

    def upsert_message(self, message: RemoteMessage, media_status: MediaStatus) -> int:
        """Insert or update a message by (channel id, external id).

        Args:
            message: Message from the source
            media_status: Status for a new row; an existing ``none`` row
                is raised to ``pending`` when media shows up, other states
                are kept

        Returns:
            Internal row id on both insert and update paths
        """
        ...

    def get_cursor(self, channel_id: str) -> Cursor:
        """Compute earliest/latest/count for a channel."""
        ...

    def get_message(self, message_id: int) -> ArchivedMessage | None:
        """Fetch one row by internal id."""
        ...

    def get_messages_by_ids(self, message_ids: list[int]) -> list[ArchivedMessage]:
        """Fetch rows by internal id, preserving the requested order."""
        ...

    def select_next_media(
        self, channel_id: str | None, max_attempts: int
    ) -> ArchivedMessage | None:
        """Pick the next pending (first) or retryable failed row, newest first."""
        ...

    def claim_media(self, message_id: int) -> bool:
        """Move a pending/failed row to processing; False if someone else won."""
        ...

    def release_media_claim(self, message_id: int, status: MediaStatus) -> bool:
        """Return a processing row to ``status`` without counting a failure."""
        ...

    def complete_media(self, message_id: int, media: MediaObject) -> bool:
        """Mark completed, set media_key and store the media object."""
        ...

    def fail_media(self, message_id: int, reason: str) -> bool:
        """Mark failed with a reason; completed rows are left untouched."""
        ...

    def skip_media(self, message_id: int, status: MediaStatus, reason: str) -> bool:
        """Mark one of the skipped_* statuses."""
        ...

    def count_remaining_media(self, channel_id: str | None, max_attempts: int) -> int:
        """Count rows the fetch worker would still select."""
        ...

    def count_by_status(self, channel_id: str | None = None) -> dict[str, int]:
        """Message counts per media status."""
        ...

    def list_messages(self, channel_id: str, limit: int, offset: int) -> MessagePage:
        """Newest-first page of messages joined with media metadata."""
        ...

    def get_media_object(self, message_id: int) -> MediaObject | None:
        """Stored media object for a message, if any."""
        ...

    def reset_stuck_media(self, stale_after: timedelta) -> int:
        """Repair stale claims and key/status mismatches; returns rows changed."""
        ...


class ArchiverApiProtocol(Protocol):
    """HTTP contract as consumed by the batch orchestrator.

    Implementations never raise for transport or status errors; they return
    a tagged :class:`ApiCall` so the orchestrator branches on ``status``.
    """

    def sync(
        self,
        channel_id: str,
        forward_empty_streak: int = 0,
        mode: SyncMode | None = None,
    ) -> ApiCall[SyncResponse]:
        """Trigger one sync invocation."""
        ...

    def process_media(
        self, channel_id: str, size: int
    ) -> ApiCall[ProcessMediaResponse]:
        """Trigger one batch of media fetch attempts."""
        ...
