"""Media status lifecycle.

The transition table below is the single source of truth: repository writes
derive their ``WHERE media_status IN (...)`` guards from it, so a write that
would break the lifecycle simply matches no row.
"""

from __future__ import annotations

from typing import Final

from src.domain.exceptions import InvalidTransitionError
from src.domain.models import MediaStatus, OutcomeKind

SKIP_STATUSES: Final[frozenset[MediaStatus]] = frozenset(
    {MediaStatus.SKIPPED_TYPE, MediaStatus.SKIPPED_LARGE, MediaStatus.SKIPPED}
)

# Statuses the fetch worker may pick up on its own.
SELECTABLE_STATUSES: Final[tuple[MediaStatus, ...]] = (
    MediaStatus.PENDING,
    MediaStatus.FAILED,
)

ALLOWED_TRANSITIONS: Final[dict[MediaStatus, frozenset[MediaStatus]]] = {
    MediaStatus.NONE: frozenset({MediaStatus.PENDING}),
    MediaStatus.PENDING: frozenset({MediaStatus.PROCESSING} | SKIP_STATUSES),
    MediaStatus.FAILED: frozenset({MediaStatus.PROCESSING}),
    # pending/failed: claim released after a rate limit or credential error
    MediaStatus.PROCESSING: frozenset(
        {
            MediaStatus.COMPLETED,
            MediaStatus.FAILED,
            MediaStatus.PENDING,
        }
        | SKIP_STATUSES
    ),
    MediaStatus.COMPLETED: frozenset(),
    MediaStatus.SKIPPED_TYPE: frozenset(),
    MediaStatus.SKIPPED_LARGE: frozenset(),
    MediaStatus.SKIPPED: frozenset(),
}


def can_transition(current: MediaStatus, target: MediaStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: MediaStatus, target: MediaStatus) -> None:
    """Raise unless ``current -> target`` is a legal lifecycle step.

    Raises:
        InvalidTransitionError: If the move is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def sources_for(target: MediaStatus) -> tuple[MediaStatus, ...]:
    """All statuses from which ``target`` may be reached, in enum order."""
    return tuple(
        status for status in MediaStatus if target in ALLOWED_TRANSITIONS[status]
    )


def requires_media_key(status: MediaStatus) -> bool:
    """``media_key`` is set if and only if the status is ``completed``."""
    return status is MediaStatus.COMPLETED


def outcome_kind(status: MediaStatus) -> OutcomeKind:
    """Classify a resulting status for callers counting remaining work."""
    if status is MediaStatus.COMPLETED:
        return OutcomeKind.COMPLETED
    if status in SKIP_STATUSES:
        return OutcomeKind.SKIPPED
    return OutcomeKind.FAILED


def initial_status(has_media: bool, excluded: bool) -> MediaStatus:
    """Status assigned when a message is first ingested."""
    if has_media and not excluded:
        return MediaStatus.PENDING
    return MediaStatus.NONE


__all__ = [
    "ALLOWED_TRANSITIONS",
    "SELECTABLE_STATUSES",
    "SKIP_STATUSES",
    "can_transition",
    "ensure_transition",
    "initial_status",
    "outcome_kind",
    "requires_media_key",
    "sources_for",
]
