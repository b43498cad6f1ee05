"""Message persister use case.

Idempotently upserts pulled messages and assigns their initial media status.
Persisting never triggers a download; the media fetch worker picks pending
rows up in a later invocation.
"""

from collections.abc import Iterable

from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.external_ids import format_external_id
from src.domain.media_status import initial_status
from src.domain.models import (
    SERVICE_MESSAGE_PLACEHOLDER,
    MediaStatus,
    PersistResult,
    RemoteMessage,
)
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


class MessagePersister:
    """Writes pulled messages to the repository."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        excluded_media_kinds: Iterable[str] = ("webpage",),
    ) -> None:
        """Initialize persister.

        Args:
            repository: Message store
            excluded_media_kinds: Kinds recorded as ``media_type`` but never
                queued for download (e.g. link previews)
        """
        self._repository = repository
        self._excluded = frozenset(kind.lower() for kind in excluded_media_kinds)

    def initial_status_for(self, message: RemoteMessage) -> MediaStatus:
        media = message.media
        excluded = media is not None and media.kind.value in self._excluded
        return initial_status(media is not None, excluded)

    def persist_one(self, message: RemoteMessage) -> int:
        """Upsert one message and return its internal row id.

        Service events (no text, no media) are stored with a placeholder
        text so every pulled id lands in the table and the cursor moves on.

        Raises:
            RepositoryError: On storage errors
        """
        if message.is_service_event:
            message = message.model_copy(update={"text": SERVICE_MESSAGE_PLACEHOLDER})
        return self._repository.upsert_message(message, self.initial_status_for(message))

    def persist(self, messages: list[RemoteMessage]) -> PersistResult:
        """Persist a window in source order.

        On a storage error the rest of the window is left for the next call:
        stopping keeps the derived cursor from jumping over the failed id.

        Args:
            messages: Messages in the order the source returned them

        Returns:
            Counts, stored rows (in input order) and any error text
        """
        row_ids: list[int] = []
        new_media = 0
        errors: list[str] = []

        for message in messages:
            try:
                row_id = self.persist_one(message)
            except RepositoryError as e:
                error_msg = (
                    f"Failed to persist message {format_external_id(message.external_id)}"
                    f" of {message.channel_id}: {e}"
                )
                logger.error(
                    "message_persist_failed",
                    channel_id=message.channel_id,
                    message_id=format_external_id(message.external_id),
                    error=str(e),
                )
                errors.append(error_msg)
                break

            row_ids.append(row_id)
            if self.initial_status_for(message) is MediaStatus.PENDING:
                new_media += 1

        stored = self._repository.get_messages_by_ids(row_ids) if row_ids else []
        logger.info(
            "messages_persisted",
            saved=len(row_ids),
            new_media=new_media,
            errors=len(errors),
        )
        return PersistResult(
            saved=len(row_ids),
            new_media=new_media,
            messages=stored,
            errors=errors,
        )
