"""Sync channel use case.

One bounded unit of work: plan from the stored cursor, pull one window,
persist it. Everything the next invocation needs is in the messages table.
Repository work runs in a worker thread so SQLite never blocks the event loop.
"""

import asyncio

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import ValidationError
from src.domain.models import SyncMode, SyncResult
from src.domain.protocols import MessageSourceProtocol, RepositoryProtocol
from src.observability.metrics import MESSAGES_SYNCED_TOTAL
from src.use_cases.cursor_tracker import CursorTracker
from src.use_cases.persist_messages import MessagePersister
from src.use_cases.pull_messages import MessagePuller

logger = get_logger(__name__)


async def sync_channel_use_case(
    channel_id: str | None,
    *,
    source: MessageSourceProtocol,
    repository: RepositoryProtocol,
    settings: Settings,
    forward_empty_streak: int = 0,
    forced_mode: SyncMode | None = None,
) -> SyncResult:
    """Run one Cursor Tracker + Puller + Persister cycle.

    Args:
        channel_id: Channel to sync
        source: External message source
        repository: Message store
        settings: Window sizes and media policy
        forward_empty_streak: Consecutive empty forward calls reported by
            the caller; feeds the backfill decision
        forced_mode: Skip the mode decision

    Returns:
        SyncResult with counts, the mode used and the stored rows

    Raises:
        ValidationError: If no channel is given
        RateLimitError: Provider rate limit
        CredentialError: Session invalid
        PullError: Provider failure
    """
    if not channel_id:
        raise ValidationError("channelId is required")
    if forward_empty_streak < 0:
        raise ValidationError("forwardEmptyStreak must not be negative")

    tracker = CursorTracker(
        repository,
        forward_window=settings.forward_window,
        backfill_window=settings.backfill_window,
        backfill_after=settings.backfill_after_empty_forward,
    )
    plan = await asyncio.to_thread(
        tracker.plan,
        channel_id,
        forward_empty_streak=forward_empty_streak,
        forced_mode=forced_mode,
    )

    pulled = await MessagePuller(source).pull(channel_id, plan)
    persister = MessagePersister(repository, settings.ingest_excluded_media_kinds)
    persisted = await asyncio.to_thread(persister.persist, pulled)

    cursor_after = await asyncio.to_thread(tracker.current_cursor, channel_id)
    MESSAGES_SYNCED_TOTAL.labels(mode=plan.mode.value).inc(persisted.saved)

    result = SyncResult(
        channel_id=channel_id,
        mode=plan.mode,
        boundary=plan.boundary,
        pulled=len(pulled),
        synced=persisted.saved,
        new_media=persisted.new_media,
        has_new_messages=len(pulled) > 0,
        gap=cursor_after.has_gap,
        cursor=cursor_after,
        messages=persisted.messages,
        errors=persisted.errors,
    )
    logger.info(
        "channel_sync_complete",
        channel_id=channel_id,
        mode=plan.mode.value,
        pulled=result.pulled,
        synced=result.synced,
        new_media=result.new_media,
        gap=result.gap,
        latest=None if cursor_after.latest is None else str(cursor_after.latest),
        earliest=None if cursor_after.earliest is None else str(cursor_after.earliest),
    )
    return result
