"""Message puller use case.

Requests one bounded window from the external source and re-checks the
boundary itself, since the provider's own min/max filtering is not relied
upon to be exact.
"""

from src.config.logging_config import get_logger
from src.domain.models import RemoteMessage, SyncMode, SyncPlan
from src.domain.protocols import MessageSourceProtocol

logger = get_logger(__name__)


def is_beyond_boundary(external_id: int, mode: SyncMode, boundary: int | None) -> bool:
    """True when ``external_id`` lies strictly past the boundary for ``mode``."""
    if boundary is None:
        return True
    if mode is SyncMode.FORWARD:
        return external_id > boundary
    return external_id < boundary


class MessagePuller:
    """Pulls a window of messages according to a :class:`SyncPlan`."""

    def __init__(self, source: MessageSourceProtocol) -> None:
        self._source = source

    async def pull(self, channel_id: str, plan: SyncPlan) -> list[RemoteMessage]:
        """Fetch messages beyond the plan's boundary, in source order.

        Stops at the window cap or at the first message that is not strictly
        beyond the boundary. Service events are kept; the persister turns
        them into placeholder rows.

        Args:
            channel_id: Channel identifier
            plan: Mode, boundary and window cap

        Returns:
            Accepted messages, ascending for forward and descending for backfill

        Raises:
            RateLimitError: Provider rate limit, surfaced without retry
            CredentialError: Session invalid
            PullError: Network or provider failure
        """
        window = await self._source.fetch_window(
            channel_id, plan.mode, plan.boundary, plan.window
        )

        accepted: list[RemoteMessage] = []
        seen: set[int] = set()
        for message in window:
            if len(accepted) >= plan.window:
                break
            if not is_beyond_boundary(message.external_id, plan.mode, plan.boundary):
                logger.warning(
                    "pull_boundary_violation",
                    channel_id=channel_id,
                    mode=plan.mode.value,
                    boundary=str(plan.boundary),
                    message_id=str(message.external_id),
                )
                break
            if message.external_id in seen:
                continue
            seen.add(message.external_id)
            accepted.append(message)

        logger.info(
            "messages_pulled",
            channel_id=channel_id,
            mode=plan.mode.value,
            fetched=len(window),
            accepted=len(accepted),
        )
        return accepted
