"""Media fetch worker use case.

Selects one pending (or retryable failed) media row, checks policy, downloads
the bytes under a timeout, uploads them to blob storage and records the
result. Policy rejections are permanent skips; everything else that goes
wrong is a retryable failure.
"""

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import (
    ArchiverError,
    BlobStoreError,
    CredentialError,
    NotFoundError,
    RateLimitError,
    RepositoryError,
    ValidationError,
)
from src.domain.external_ids import format_external_id
from src.domain.media_status import ensure_transition, outcome_kind
from src.domain.models import (
    ArchivedMessage,
    MediaObject,
    MediaOutcome,
    MediaStatus,
    OutcomeKind,
    ProcessMediaResult,
    RemoteMedia,
)
from src.domain.protocols import (
    BlobStoreProtocol,
    MessageSourceProtocol,
    RepositoryProtocol,
)
from src.observability.metrics import (
    MEDIA_DOWNLOAD_SECONDS,
    MEDIA_OUTCOMES_TOTAL,
    RATE_LIMITS_TOTAL,
)

logger = get_logger(__name__)

CLAIMED_ELSEWHERE: Final[str] = "claimed_elsewhere"
DEFAULT_CONTENT_TYPE: Final[str] = "application/octet-stream"

# mime type -> (file extension, stored content type)
_MIME_FILE_TYPES: Final[dict[str, tuple[str, str]]] = {
    "image/jpeg": ("jpg", "image/jpeg"),
    "image/jpg": ("jpg", "image/jpeg"),
    "image/png": ("png", "image/png"),
    "image/webp": ("webp", "image/webp"),
    "image/gif": ("gif", "image/gif"),
    "video/mp4": ("mp4", "video/mp4"),
}

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_\-@.]")


def media_file_type(media: RemoteMedia) -> tuple[str, str]:
    """Extension and content type for a media descriptor."""
    mime_type = (media.mime_type or "").lower()
    if mime_type in _MIME_FILE_TYPES:
        return _MIME_FILE_TYPES[mime_type]
    if media.kind.value == "photo":
        return _MIME_FILE_TYPES["image/jpeg"]
    return "bin", DEFAULT_CONTENT_TYPE


def build_blob_key(
    channel_id: str, external_id: int, extension: str, timestamp_ms: int
) -> str:
    """Key ``media/{channel}_{message}_{timestamp_ms}.{ext}``.

    The timestamp suffix keeps repeated attempts from colliding.
    """
    channel_part = _UNSAFE_KEY_CHARS.sub("_", channel_id)
    return (
        f"media/{channel_part}_{format_external_id(external_id)}_{timestamp_ms}.{extension}"
    )


@dataclass(frozen=True)
class MediaPolicy:
    """Which media the worker downloads."""

    approved_kinds: frozenset[str] = field(
        default_factory=lambda: frozenset({"photo", "image"})
    )
    max_bytes: int = 20 * 1024 * 1024
    min_bytes: int = 100
    download_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaPolicy":
        return cls(
            approved_kinds=frozenset(k.lower() for k in settings.approved_media_kinds),
            max_bytes=settings.media_max_bytes,
            min_bytes=settings.media_min_bytes,
            download_timeout=settings.media_download_timeout_seconds,
        )

    def pre_download_verdict(
        self, media: RemoteMedia
    ) -> tuple[MediaStatus, str] | None:
        """Skip status and reason when policy rejects ``media``, else None."""
        if media.kind.value not in self.approved_kinds:
            return MediaStatus.SKIPPED_TYPE, f"media kind {media.kind.value} not approved"
        if media.size is not None and media.size > self.max_bytes:
            return (
                MediaStatus.SKIPPED_LARGE,
                f"media size {media.size} exceeds {self.max_bytes} bytes",
            )
        return None


class MediaFetchWorker:
    """Processes media rows one at a time."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        source: MessageSourceProtocol,
        blob_store: BlobStoreProtocol,
        policy: MediaPolicy,
        *,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize worker.

        Args:
            repository: Message store
            source: External source used to resolve and download media
            blob_store: Destination for downloaded bytes
            policy: Kind/size policy and download timeout
            max_attempts: Failed rows are re-selected until this many attempts
            clock: Wall clock in seconds, used for blob key suffixes
        """
        self._repository = repository
        self._source = source
        self._blob_store = blob_store
        self._policy = policy
        self._max_attempts = max_attempts
        self._clock = clock

    async def process_batch(self, channel_id: str | None, size: int) -> ProcessMediaResult:
        """Run up to ``size`` fetch cycles.

        A provider rate limit or a credential error ends the batch early; the
        outcomes gathered so far are kept and the result is flagged so the
        caller can back off or re-authenticate.

        Args:
            channel_id: Restrict to one channel, or None for all
            size: Maximum number of items to process

        Returns:
            Per-item outcomes and the remaining work count

        Raises:
            ValidationError: If size is not positive
        """
        if size < 1:
            raise ValidationError("size must be at least 1")

        outcomes: list[MediaOutcome] = []
        rate_limited = False
        retry_after: int | None = None
        credential_error: str | None = None
        for _ in range(size):
            try:
                outcome = await self.process_next(channel_id)
            except RateLimitError as exc:
                rate_limited = True
                retry_after = exc.retry_after
                RATE_LIMITS_TOTAL.labels(component="media_worker").inc()
                break
            except CredentialError as exc:
                credential_error = str(exc)
                logger.error("media_batch_credentials_invalid", error=credential_error)
                break
            if outcome is None:
                break
            outcomes.append(outcome)

        remaining = await asyncio.to_thread(
            self._repository.count_remaining_media, channel_id, self._max_attempts
        )
        logger.info(
            "media_batch_complete",
            channel_id=channel_id,
            requested=size,
            processed=len(outcomes),
            completed=sum(1 for o in outcomes if o.kind is OutcomeKind.COMPLETED),
            skipped=sum(1 for o in outcomes if o.kind is OutcomeKind.SKIPPED),
            failed=sum(1 for o in outcomes if o.kind is OutcomeKind.FAILED),
            remaining=remaining,
            rate_limited=rate_limited,
            credentials_invalid=credential_error is not None,
        )
        return ProcessMediaResult(
            outcomes=outcomes,
            remaining=remaining,
            rate_limited=rate_limited,
            retry_after=retry_after,
            credential_error=credential_error,
        )

    async def process_next(self, channel_id: str | None) -> MediaOutcome | None:
        """Select, claim and process one media row.

        Repository calls run in a worker thread so the event loop stays free
        while SQLite blocks.

        Returns:
            Outcome, or None when no work is left

        Raises:
            RateLimitError: Provider rate limit; the claim is released
            CredentialError: Session invalid; the claim is released
            InvalidTransitionError: The repository offered a row that cannot be claimed
        """
        row = await asyncio.to_thread(
            self._repository.select_next_media, channel_id, self._max_attempts
        )
        if row is None:
            return None
        ensure_transition(row.media_status, MediaStatus.PROCESSING)

        if not await asyncio.to_thread(self._repository.claim_media, row.id):
            logger.info(
                "media_claim_lost",
                message_id=row.id,
                external_message_id=format_external_id(row.external_message_id),
            )
            return await self._outcome_from_row(row.id, row, reason=CLAIMED_ELSEWHERE)

        try:
            outcome = await self._process_claimed(row)
        except (RateLimitError, CredentialError):
            await asyncio.to_thread(
                self._repository.release_media_claim, row.id, row.media_status
            )
            raise
        except ArchiverError as exc:
            outcome = await self._fail(row, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("media_processing_crashed", message_id=row.id)
            outcome = await self._fail(row, f"unexpected error: {exc}")

        MEDIA_OUTCOMES_TOTAL.labels(status=outcome.status.value).inc()
        return outcome

    async def _process_claimed(self, row: ArchivedMessage) -> MediaOutcome:
        remote = await self._source.get_message(row.channel_id, row.external_message_id)
        if remote is None:
            raise NotFoundError(
                f"Message {format_external_id(row.external_message_id)} "
                f"no longer exists in {row.channel_id}"
            )

        media = remote.media
        if media is None:
            return await self._skip(
                row, MediaStatus.SKIPPED, "message no longer carries media"
            )

        verdict = self._policy.pre_download_verdict(media)
        if verdict is not None:
            status, reason = verdict
            return await self._skip(row, status, reason, media_type=media.kind.value)

        started = time.perf_counter()
        data = await self._source.download_media(remote, self._policy.download_timeout)
        MEDIA_DOWNLOAD_SECONDS.observe(time.perf_counter() - started)

        if len(data) < self._policy.min_bytes:
            return await self._fail(
                row,
                f"downloaded payload too small ({len(data)} bytes)",
                media_type=media.kind.value,
            )
        if len(data) > self._policy.max_bytes:
            return await self._skip(
                row,
                MediaStatus.SKIPPED_LARGE,
                f"downloaded size {len(data)} exceeds {self._policy.max_bytes} bytes",
                media_type=media.kind.value,
            )

        extension, content_type = media_file_type(media)
        key = build_blob_key(
            row.channel_id,
            row.external_message_id,
            extension,
            int(self._clock() * 1000),
        )
        await asyncio.to_thread(self._blob_store.put, key, data, content_type)

        media_object = MediaObject(
            message_id=row.id,
            blob_key=key,
            file_type=extension,
            file_size=len(data),
            mime_type=content_type,
        )
        # the uploaded blob must not outlive a row that never references it
        try:
            completed = await asyncio.to_thread(
                self._repository.complete_media, row.id, media_object
            )
        except RepositoryError:
            await self._discard_orphan(key)
            raise
        if not completed:
            await self._discard_orphan(key)
            return await self._outcome_from_row(row.id, row, reason="already_completed")

        logger.info(
            "media_completed",
            message_id=row.id,
            external_message_id=format_external_id(row.external_message_id),
            media_key=key,
            size=len(data),
        )
        return MediaOutcome(
            message_id=row.id,
            external_message_id=row.external_message_id,
            channel_id=row.channel_id,
            status=MediaStatus.COMPLETED,
            kind=OutcomeKind.COMPLETED,
            media_key=key,
            media_type=media.kind.value,
        )

    async def _discard_orphan(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._blob_store.delete, key)
        except BlobStoreError as exc:
            logger.warning("orphan_blob_delete_failed", media_key=key, error=str(exc))

    async def _skip(
        self,
        row: ArchivedMessage,
        status: MediaStatus,
        reason: str,
        *,
        media_type: str | None = None,
    ) -> MediaOutcome:
        logger.info(
            "media_skipped",
            message_id=row.id,
            status=status.value,
            reason=reason,
        )
        if not await asyncio.to_thread(self._repository.skip_media, row.id, status, reason):
            return await self._outcome_from_row(row.id, row, reason=reason)
        return MediaOutcome(
            message_id=row.id,
            external_message_id=row.external_message_id,
            channel_id=row.channel_id,
            status=status,
            kind=OutcomeKind.SKIPPED,
            media_type=media_type or row.media_type,
            reason=reason,
        )

    async def _fail(
        self,
        row: ArchivedMessage,
        reason: str,
        *,
        media_type: str | None = None,
    ) -> MediaOutcome:
        logger.warning(
            "media_failed",
            message_id=row.id,
            external_message_id=format_external_id(row.external_message_id),
            reason=reason,
        )
        if not await asyncio.to_thread(self._repository.fail_media, row.id, reason):
            return await self._outcome_from_row(row.id, row, reason=reason)
        return MediaOutcome(
            message_id=row.id,
            external_message_id=row.external_message_id,
            channel_id=row.channel_id,
            status=MediaStatus.FAILED,
            kind=OutcomeKind.FAILED,
            media_type=media_type or row.media_type,
            reason=reason,
        )

    async def _outcome_from_row(
        self, message_id: int, fallback: ArchivedMessage, *, reason: str
    ) -> MediaOutcome:
        """Report whatever state the row is in now (another writer got there first)."""
        current = (
            await asyncio.to_thread(self._repository.get_message, message_id) or fallback
        )
        kind = outcome_kind(current.media_status)
        if current.media_status in (MediaStatus.PENDING, MediaStatus.PROCESSING):
            kind = OutcomeKind.SKIPPED
        return MediaOutcome(
            message_id=current.id,
            external_message_id=current.external_message_id,
            channel_id=current.channel_id,
            status=current.media_status,
            kind=kind,
            media_key=current.media_key,
            media_type=current.media_type,
            reason=reason,
        )


def create_media_worker(
    settings: Settings,
    *,
    repository: RepositoryProtocol,
    source: MessageSourceProtocol,
    blob_store: BlobStoreProtocol,
) -> MediaFetchWorker:
    return MediaFetchWorker(
        repository,
        source,
        blob_store,
        MediaPolicy.from_settings(settings),
        max_attempts=settings.max_media_attempts,
    )
