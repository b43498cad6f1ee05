"""Telegram client adapter using Telethon library.

One instance serves one unit of work: it connects lazily, answers the
pipeline's questions and is closed when the request ends. Telethon errors
are mapped onto the domain taxonomy here so nothing above this module
imports Telethon.
"""

import asyncio
import types
from typing import Any, Final

import pytz
from telethon import TelegramClient as TelegramClientLib
from telethon.errors import (
    ChannelInvalidError,
    ChannelPrivateError,
    FloodWaitError,
    RPCError,
    UnauthorizedError,
)
from telethon.sessions import StringSession
from telethon.tl.types import (
    DocumentAttributeAnimated,
    DocumentAttributeAudio,
    DocumentAttributeSticker,
    DocumentAttributeVideo,
    MessageMediaContact,
    MessageMediaDocument,
    MessageMediaEmpty,
    MessageMediaGeo,
    MessageMediaGeoLive,
    MessageMediaPhoto,
    MessageMediaPoll,
    MessageMediaVenue,
    MessageMediaWebPage,
    PhotoSize,
    PhotoSizeProgressive,
)

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import (
    CredentialError,
    DownloadTimeoutError,
    NotFoundError,
    PullError,
    RateLimitError,
)
from src.domain.models import MediaKind, RemoteMedia, RemoteMessage, SyncMode

logger = get_logger(__name__)

DEFAULT_FLOOD_WAIT_SECONDS: Final[int] = 10
REAUTH_MESSAGE: Final[str] = (
    "Telegram session is not authorised; re-authentication is required"
)


def channel_entity_ref(channel_id: str) -> int | str:
    """Numeric channel ids (e.g. ``-1001234``) resolve as ints, usernames as-is."""
    candidate = channel_id.strip()
    if candidate.lstrip("-").isdigit():
        return int(candidate)
    return candidate


def _largest_photo_size(photo: Any) -> int | None:
    largest: int | None = None
    for size in getattr(photo, "sizes", None) or []:
        if isinstance(size, PhotoSizeProgressive):
            candidate = max(size.sizes, default=0)
        elif isinstance(size, PhotoSize):
            candidate = size.size
        else:
            continue
        if largest is None or candidate > largest:
            largest = candidate
    return largest


def _document_kind(document: Any) -> MediaKind:
    mime_type = getattr(document, "mime_type", None) or ""
    for attribute in getattr(document, "attributes", None) or []:
        if isinstance(attribute, DocumentAttributeSticker):
            return MediaKind.STICKER
        if isinstance(attribute, DocumentAttributeAnimated):
            return MediaKind.ANIMATION
        if isinstance(attribute, DocumentAttributeVideo):
            return MediaKind.VIDEO
        if isinstance(attribute, DocumentAttributeAudio):
            return MediaKind.VOICE if attribute.voice else MediaKind.AUDIO
    if mime_type.startswith("image/"):
        return MediaKind.IMAGE
    return MediaKind.DOCUMENT


def describe_media(media: Any) -> RemoteMedia | None:
    """Translate a Telethon media object into a :class:`RemoteMedia`.

    Returns:
        Media descriptor, or None when the message carries no media
    """
    if media is None or isinstance(media, MessageMediaEmpty):
        return None
    if isinstance(media, MessageMediaPhoto):
        if media.photo is None:
            return None
        return RemoteMedia(
            kind=MediaKind.PHOTO,
            mime_type="image/jpeg",
            size=_largest_photo_size(media.photo),
        )
    if isinstance(media, MessageMediaDocument):
        document = media.document
        if document is None:
            return None
        return RemoteMedia(
            kind=_document_kind(document),
            mime_type=getattr(document, "mime_type", None),
            size=getattr(document, "size", None),
        )
    if isinstance(media, MessageMediaWebPage):
        return RemoteMedia(kind=MediaKind.WEBPAGE)
    if isinstance(media, MessageMediaPoll):
        return RemoteMedia(kind=MediaKind.POLL)
    if isinstance(media, MessageMediaGeo | MessageMediaGeoLive | MessageMediaVenue):
        return RemoteMedia(kind=MediaKind.GEO)
    if isinstance(media, MessageMediaContact):
        return RemoteMedia(kind=MediaKind.CONTACT)
    return RemoteMedia(kind=MediaKind.OTHER)


class TelegramClient:
    """Telegram client adapter using Telethon (user client).

    Args:
        api_id: Telegram API ID (from my.telegram.org)
        api_hash: Telegram API hash (from my.telegram.org)
        session: Serialized StringSession or path to a session file

    Example:
        >>> async with TelegramClient(12345, "abc123", "data/archiver") as client:
        ...     window = await client.fetch_window("-1001234", SyncMode.FORWARD, 100, 50)
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session: str,
        *,
        string_session: bool = False,
    ) -> None:
        self.api_id = api_id
        self.api_hash = api_hash
        self._session = session
        self._string_session = string_session
        self._client: TelegramClientLib | None = None
        self._is_connected = False
        self._entities: dict[str, Any] = {}

    def _get_client(self) -> TelegramClientLib:
        """Get or create the Telethon client instance."""
        if self._client is None:
            session: Any = (
                StringSession(self._session) if self._string_session else self._session
            )
            self._client = TelegramClientLib(session, self.api_id, self.api_hash)
        return self._client

    async def connect(self) -> None:
        """Connect and verify the session is authorised.

        Raises:
            CredentialError: If the session needs (re-)authentication
            PullError: If the connection cannot be established
        """
        if self._is_connected:
            return

        client = self._get_client()
        try:
            await client.connect()
            authorised = await client.is_user_authorized()
        except OSError as exc:
            raise PullError(f"Cannot connect to Telegram: {exc}") from exc

        if not authorised:
            await client.disconnect()
            logger.error("telegram_session_unauthorised")
            raise CredentialError(REAUTH_MESSAGE)

        self._is_connected = True
        logger.debug("telegram_client_connected")

    async def close(self) -> None:
        """Disconnect and drop the Telethon client."""
        if self._client is not None and self._is_connected:
            await self._client.disconnect()
            logger.debug("telegram_client_disconnected")
        self._is_connected = False
        self._client = None
        self._entities.clear()

    async def __aenter__(self) -> "TelegramClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def _resolve_entity(self, channel_id: str) -> Any:
        if channel_id in self._entities:
            return self._entities[channel_id]
        client = self._get_client()
        try:
            entity = await client.get_entity(channel_entity_ref(channel_id))
        except (ValueError, ChannelPrivateError, ChannelInvalidError) as exc:
            raise NotFoundError(f"Channel {channel_id} cannot be resolved: {exc}") from exc
        self._entities[channel_id] = entity
        return entity

    def _translate_error(self, exc: Exception, channel_id: str, operation: str) -> Exception:
        """Map a Telethon/network error onto the domain taxonomy."""
        if isinstance(exc, FloodWaitError):
            wait_seconds = int(getattr(exc, "seconds", DEFAULT_FLOOD_WAIT_SECONDS))
            logger.warning(
                "telegram_flood_wait",
                channel_id=channel_id,
                operation=operation,
                wait_seconds=wait_seconds,
            )
            return RateLimitError(retry_after=wait_seconds)
        if isinstance(exc, UnauthorizedError):
            logger.error("telegram_unauthorised", channel_id=channel_id, error=str(exc))
            return CredentialError(REAUTH_MESSAGE)
        logger.error(
            "telegram_request_failed",
            channel_id=channel_id,
            operation=operation,
            error=str(exc),
        )
        return PullError(f"Telegram {operation} failed for {channel_id}: {exc}")

    async def fetch_window(
        self,
        channel_id: str,
        mode: SyncMode,
        boundary: int | None,
        limit: int,
    ) -> list[RemoteMessage]:
        """Fetch one bounded window of messages.

        Forward windows are ascending above ``boundary``; backfill windows
        are descending below it. A backfill without boundary returns the
        newest messages of the channel.

        Raises:
            RateLimitError: On FloodWait
            CredentialError: If the session is not authorised
            NotFoundError: If the channel cannot be resolved
            PullError: On any other provider error
        """
        await self.connect()
        client = self._get_client()
        entity = await self._resolve_entity(channel_id)

        iter_kwargs: dict[str, Any] = {"limit": limit}
        if mode is SyncMode.FORWARD:
            iter_kwargs["reverse"] = True
            iter_kwargs["min_id"] = boundary or 0
        elif boundary is not None:
            iter_kwargs["max_id"] = boundary

        messages: list[RemoteMessage] = []
        try:
            async for message in client.iter_messages(entity, **iter_kwargs):
                messages.append(self._to_remote_message(message, channel_id))
                if len(messages) >= limit:
                    break
        except (RPCError, OSError) as exc:
            raise self._translate_error(exc, channel_id, "fetch_window") from exc

        logger.debug(
            "telegram_window_fetched",
            channel_id=channel_id,
            mode=mode.value,
            boundary=None if boundary is None else str(boundary),
            fetched=len(messages),
        )
        return messages

    async def get_message(
        self, channel_id: str, external_id: int
    ) -> RemoteMessage | None:
        """Resolve a single message by id; None when it no longer exists."""
        await self.connect()
        client = self._get_client()
        entity = await self._resolve_entity(channel_id)
        try:
            message = await client.get_messages(entity, ids=external_id)
        except (RPCError, OSError) as exc:
            raise self._translate_error(exc, channel_id, "get_message") from exc
        if message is None:
            return None
        return self._to_remote_message(message, channel_id)

    async def download_media(self, message: RemoteMessage, timeout: float) -> bytes:
        """Download the media of a resolved message within ``timeout`` seconds.

        Raises:
            DownloadTimeoutError: If the download outlives the timeout
            RateLimitError: On FloodWait
            CredentialError: If the session is not authorised
            PullError: On any other provider error
        """
        if message.raw is None:
            raise PullError(
                f"Message {message.external_id} was not resolved through Telegram"
            )
        await self.connect()
        client = self._get_client()
        try:
            data = await asyncio.wait_for(
                client.download_media(message.raw, file=bytes), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "telegram_download_timeout",
                channel_id=message.channel_id,
                message_id=str(message.external_id),
                timeout_seconds=timeout,
            )
            raise DownloadTimeoutError(timeout) from exc
        except (RPCError, OSError) as exc:
            raise self._translate_error(exc, message.channel_id, "download_media") from exc
        return data or b""

    def _to_remote_message(self, message: Any, channel_id: str) -> RemoteMessage:
        """Convert a Telethon Message (or MessageService) to a RemoteMessage."""
        message_date = message.date
        if message_date is not None and message_date.tzinfo is None:
            message_date = message_date.replace(tzinfo=pytz.UTC)

        text = getattr(message, "message", None) or None
        grouped_id = getattr(message, "grouped_id", None)

        remote = RemoteMessage(
            external_id=message.id,
            channel_id=channel_id,
            date=message_date,
            text=text,
            group_id=str(grouped_id) if grouped_id is not None else None,
            media=describe_media(getattr(message, "media", None)),
        )
        return remote.with_raw(message)


def create_telegram_client(settings: Settings) -> TelegramClient:
    """Build a client from settings.

    Raises:
        CredentialError: If API credentials or a session are missing
    """
    if not settings.telegram_api_id or not settings.telegram_api_hash:
        raise CredentialError(
            "TELEGRAM_API_ID and TELEGRAM_API_HASH must be configured in .env"
        )

    if settings.telegram_session_string is not None:
        return TelegramClient(
            api_id=settings.telegram_api_id,
            api_hash=settings.telegram_api_hash.get_secret_value(),
            session=settings.telegram_session_string.get_secret_value(),
            string_session=True,
        )
    return TelegramClient(
        api_id=settings.telegram_api_id,
        api_hash=settings.telegram_api_hash.get_secret_value(),
        session=settings.telegram_session_path,
    )
