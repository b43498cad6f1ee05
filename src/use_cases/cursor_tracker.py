"""Cursor tracker use case.

Derives where the next sync should start from what is already stored. No
mode flag is persisted: the plan is recomputed on every invocation, which
keeps the decision idempotent and safe across crashes.
"""

from typing import Final

from src.config.logging_config import get_logger
from src.domain.models import Cursor, SyncMode, SyncPlan
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)

BACKFILL_AFTER_EMPTY_FORWARD: Final[int] = 2


def select_sync_mode(
    cursor: Cursor,
    forward_empty_streak: int = 0,
    *,
    backfill_after: int = BACKFILL_AFTER_EMPTY_FORWARD,
) -> SyncMode:
    """Choose the pull direction before any external call is made.

    Args:
        cursor: Stored id range of the channel
        forward_empty_streak: Consecutive forward calls that synced nothing,
            as reported by the caller
        backfill_after: Streak length at which a gap triggers backfill

    Returns:
        BACKFILL for an empty store or for a gapped channel whose forward
        side is exhausted, FORWARD otherwise
    """
    if cursor.is_empty:
        return SyncMode.BACKFILL
    if cursor.has_gap and forward_empty_streak >= backfill_after:
        return SyncMode.BACKFILL
    return SyncMode.FORWARD


def plan_sync(
    cursor: Cursor,
    *,
    forward_empty_streak: int = 0,
    forced_mode: SyncMode | None = None,
    forward_window: int = 50,
    backfill_window: int = 25,
    backfill_after: int = BACKFILL_AFTER_EMPTY_FORWARD,
) -> SyncPlan:
    """Turn a cursor into a concrete pull plan.

    Forward pulls start above ``latest``; backfill pulls start below
    ``earliest``. An empty store backfills from the newest message down.
    """
    mode = forced_mode or select_sync_mode(
        cursor, forward_empty_streak, backfill_after=backfill_after
    )
    if mode is SyncMode.FORWARD:
        return SyncPlan(
            mode=mode,
            boundary=cursor.latest if not cursor.is_empty else 0,
            window=forward_window,
            cursor=cursor,
        )
    return SyncPlan(
        mode=mode,
        boundary=cursor.earliest,
        window=backfill_window,
        cursor=cursor,
    )


class CursorTracker:
    """Computes cursors and sync plans for a channel."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        *,
        forward_window: int = 50,
        backfill_window: int = 25,
        backfill_after: int = BACKFILL_AFTER_EMPTY_FORWARD,
    ) -> None:
        self._repository = repository
        self._forward_window = forward_window
        self._backfill_window = backfill_window
        self._backfill_after = backfill_after

    def current_cursor(self, channel_id: str) -> Cursor:
        return self._repository.get_cursor(channel_id)

    def plan(
        self,
        channel_id: str,
        *,
        forward_empty_streak: int = 0,
        forced_mode: SyncMode | None = None,
    ) -> SyncPlan:
        """Compute the cursor and the plan for the next pull.

        Args:
            channel_id: Channel identifier
            forward_empty_streak: Caller-reported empty forward calls
            forced_mode: Override the computed mode

        Returns:
            Plan with mode, exclusive boundary and window cap
        """
        cursor = self.current_cursor(channel_id)
        plan = plan_sync(
            cursor,
            forward_empty_streak=forward_empty_streak,
            forced_mode=forced_mode,
            forward_window=self._forward_window,
            backfill_window=self._backfill_window,
            backfill_after=self._backfill_after,
        )
        logger.info(
            "sync_plan_computed",
            channel_id=channel_id,
            mode=plan.mode.value,
            boundary=None if plan.boundary is None else str(plan.boundary),
            window=plan.window,
            count=cursor.count,
            contiguous=cursor.is_contiguous,
            gap=cursor.has_gap,
            forced=forced_mode is not None,
        )
        return plan
