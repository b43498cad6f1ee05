"""FastAPI application exposing the archiver operations.

Every request is an independent unit of work: it opens its own Telegram
connection (when the endpoint needs one), reads and writes the message store
and closes the connection before the response is sent.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import timedelta
from typing import Annotated, Final

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.adapters.blob_store import create_blob_store
from src.adapters.repository_factory import create_repository
from src.config.logging_config import get_logger
from src.config.settings import Settings, get_settings
from src.domain.api_models import (
    CursorPayload,
    ErrorResponse,
    MaintenanceResponse,
    MediaResultPayload,
    MessagePayload,
    MessagesResponse,
    PaginationPayload,
    ProcessMediaResponse,
    StatsResponse,
    SyncResponse,
)
from src.domain.exceptions import (
    ArchiverError,
    BlobStoreError,
    CredentialError,
    NotFoundError,
    PullError,
    RateLimitError,
    ValidationError,
)
from src.domain.models import SyncMode
from src.domain.protocols import (
    BlobStoreProtocol,
    MessageSourceProtocol,
    RepositoryProtocol,
)
from src.observability.metrics import RATE_LIMITS_TOTAL, render_latest
from src.observability.tracing import CORRELATION_HEADER, correlation_scope
from src.use_cases.process_media import create_media_worker
from src.use_cases.sync_channel import sync_channel_use_case

logger = get_logger(__name__)

SourceFactory = Callable[[Settings], MessageSourceProtocol]

MAX_MEDIA_BATCH_SIZE: Final[int] = 50
MAX_PAGE_SIZE: Final[int] = 200

_STATUS_BY_ERROR: Final[tuple[tuple[type[ArchiverError], int], ...]] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (CredentialError, status.HTTP_401_UNAUTHORIZED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (PullError, status.HTTP_502_BAD_GATEWAY),
    (BlobStoreError, status.HTTP_502_BAD_GATEWAY),
)


def _default_source_factory(settings: Settings) -> MessageSourceProtocol:
    # Telethon is only imported when a request actually needs Telegram.
    from src.adapters.telegram_client import create_telegram_client

    return create_telegram_client(settings)


def status_for_error(exc: ArchiverError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_response(
    status_code: int, error: str, retry_after: int | None = None
) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    body = ErrorResponse(error=error, retry_after_seconds=retry_after)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_repository(request: Request) -> RepositoryProtocol:
    repository: RepositoryProtocol = request.app.state.repository
    return repository


def get_blob_store(request: Request) -> BlobStoreProtocol:
    blob_store: BlobStoreProtocol = request.app.state.blob_store
    return blob_store


async def get_message_source(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> AsyncIterator[MessageSourceProtocol]:
    factory: SourceFactory = request.app.state.source_factory
    source = factory(settings)
    try:
        yield source
    finally:
        await source.close()


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
RepositoryDep = Annotated[RepositoryProtocol, Depends(get_repository)]
BlobStoreDep = Annotated[BlobStoreProtocol, Depends(get_blob_store)]
SourceDep = Annotated[MessageSourceProtocol, Depends(get_message_source)]


def create_app(
    settings: Settings | None = None,
    *,
    repository: RepositoryProtocol | None = None,
    blob_store: BlobStoreProtocol | None = None,
    source_factory: SourceFactory | None = None,
) -> FastAPI:
    """Build the API with its store, blob storage and Telegram factory."""
    settings = settings or get_settings()
    app = FastAPI(title="Channel Archiver API", version="0.1.0")
    app.state.settings = settings
    app.state.repository = repository or create_repository(settings)
    app.state.blob_store = blob_store or create_blob_store(settings)
    app.state.source_factory = source_factory or _default_source_factory

    @app.middleware("http")
    async def bind_correlation_id(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as correlation_id:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response

    @app.exception_handler(ArchiverError)
    async def handle_archiver_error(request: Request, exc: ArchiverError) -> JSONResponse:
        status_code = status_for_error(exc)
        retry_after = exc.retry_after if isinstance(exc, RateLimitError) else None
        if isinstance(exc, RateLimitError):
            RATE_LIMITS_TOTAL.labels(component="api").inc()
        log = logger.warning if status_code < 500 else logger.error
        log(
            "request_failed",
            path=request.url.path,
            status_code=status_code,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(status_code, str(exc), retry_after)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        logger.warning("request_invalid", path=request.url.path, error=details)
        return _error_response(status.HTTP_400_BAD_REQUEST, details)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        payload, content_type = render_latest()
        return Response(content=payload, media_type=content_type)

    @app.post("/sync", response_model=SyncResponse, response_model_exclude_none=True)
    async def sync(
        settings: SettingsDep,
        repository: RepositoryDep,
        source: SourceDep,
        channel_id: Annotated[str | None, Query(alias="channelId")] = None,
        mode: Annotated[SyncMode | None, Query()] = None,
        forward_empty_streak: Annotated[
            int, Query(alias="forwardEmptyStreak", ge=0)
        ] = 0,
    ) -> SyncResponse:
        result = await sync_channel_use_case(
            settings.resolve_channel(channel_id),
            source=source,
            repository=repository,
            settings=settings,
            forward_empty_streak=forward_empty_streak,
            forced_mode=mode,
        )
        base_url = settings.public_media_base_url
        if result.synced:
            message = f"Synced {result.synced} messages ({result.mode.value})"
        else:
            message = f"No new messages ({result.mode.value})"
        return SyncResponse(
            success=True,
            synced=result.synced,
            media=result.new_media,
            has_new_messages=result.has_new_messages,
            mode=result.mode,
            gap=result.gap,
            cursor=CursorPayload.from_domain(result.cursor),
            messages=[MessagePayload.from_domain(m, base_url) for m in result.messages],
            suggested_cooldown_seconds=settings.sync_cooldown_seconds,
            message=message,
            error="; ".join(result.errors) or None,
        )

    @app.post(
        "/process-media",
        response_model=ProcessMediaResponse,
        response_model_exclude_none=True,
    )
    async def process_media(
        settings: SettingsDep,
        repository: RepositoryDep,
        blob_store: BlobStoreDep,
        source: SourceDep,
        channel_id: Annotated[str | None, Query(alias="channelId")] = None,
        size: Annotated[int, Query(ge=1, le=MAX_MEDIA_BATCH_SIZE)] = 1,
    ) -> ProcessMediaResponse | JSONResponse:
        worker = create_media_worker(
            settings, repository=repository, source=source, blob_store=blob_store
        )
        result = await worker.process_batch(settings.resolve_channel(channel_id), size)
        base_url = settings.public_media_base_url
        error: str | None = None
        if result.credential_error is not None:
            error = result.credential_error
        elif result.rate_limited:
            error = "rate limited by Telegram"
        response = ProcessMediaResponse(
            success=error is None,
            processed=result.processed,
            remaining=result.remaining,
            results=[MediaResultPayload.from_domain(o, base_url) for o in result.outcomes],
            retry_after_seconds=result.retry_after,
            error=error,
        )
        if error is None:
            return response

        content = response.model_dump(mode="json", by_alias=True, exclude_none=True)
        if result.credential_error is not None:
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content=content)

        RATE_LIMITS_TOTAL.labels(component="api").inc()
        headers = (
            {"Retry-After": str(result.retry_after)}
            if result.retry_after is not None
            else None
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=content,
            headers=headers,
        )

    @app.get("/messages", response_model=MessagesResponse, response_model_exclude_none=True)
    def list_messages(
        settings: SettingsDep,
        repository: RepositoryDep,
        channel_id: Annotated[str | None, Query(alias="channelId")] = None,
        limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 50,
        offset: Annotated[int, Query(ge=0)] = 0,
    ) -> MessagesResponse:
        if not channel_id or not channel_id.strip():
            raise ValidationError("channelId is required")
        page = repository.list_messages(channel_id.strip(), limit, offset)
        base_url = settings.public_media_base_url
        return MessagesResponse(
            messages=[MessagePayload.from_domain(m, base_url) for m in page.messages],
            pagination=PaginationPayload(
                total=page.total,
                page=page.page,
                limit=page.limit,
                has_more=page.has_more,
            ),
        )

    @app.get("/media/{key:path}")
    def get_media(key: str, blob_store: BlobStoreDep) -> Response:
        blob = blob_store.get(key)
        return Response(content=blob.data, media_type=blob.content_type)

    @app.get("/stats", response_model=StatsResponse)
    def stats(
        repository: RepositoryDep,
        channel_id: Annotated[str | None, Query(alias="channelId")] = None,
    ) -> StatsResponse:
        by_status = repository.count_by_status(channel_id)
        return StatsResponse(
            channel_id=channel_id,
            total=sum(by_status.values()),
            by_status=by_status,
        )

    @app.post("/maintenance/reset-stuck-media", response_model=MaintenanceResponse)
    def reset_stuck_media(
        settings: SettingsDep,
        repository: RepositoryDep,
        stale_minutes: Annotated[int | None, Query(alias="staleMinutes", ge=0)] = None,
    ) -> MaintenanceResponse:
        minutes = (
            stale_minutes
            if stale_minutes is not None
            else settings.stuck_media_after_minutes
        )
        repaired = repository.reset_stuck_media(timedelta(minutes=minutes))
        logger.info("stuck_media_reset", repaired=repaired, stale_minutes=minutes)
        return MaintenanceResponse(repaired=repaired)

    return app


__all__ = [
    "create_app",
    "get_app_settings",
    "get_blob_store",
    "get_message_source",
    "get_repository",
    "status_for_error",
]
