"""Client-side batch orchestrator.

Drives one archive cycle for a channel through the HTTP API: a sync phase
that calls ``/sync`` until the channel is caught up, then a media phase that
calls ``/process-media`` until no work remains. Each phase is a loop over an
immutable progress record; every API call yields a tagged ``ApiCall`` and
the loop branches on its status.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Final, TypeVar

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.api_models import ApiCall, ApiCallStatus, MediaResultPayload
from src.domain.models import OutcomeKind, SyncMode
from src.domain.protocols import ArchiverApiProtocol
from src.observability.metrics import API_CALLS_TOTAL, RATE_LIMITS_TOTAL
from src.observability.tracing import correlation_scope
from src.services.backoff import BackoffPolicy
from src.services.batch_sizing import BatchSizer
from src.services.message_view import MessageView

logger = get_logger(__name__)

WaitCallable = Callable[[float], bool]
EMPTY_SYNC_STOP_STREAK: Final[int] = 2


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REAUTH_REQUIRED = "reauth_required"
    FAILED = "failed"
    LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Loop limits and pacing for one cycle."""

    max_sync_iterations: int = 15
    max_media_batches: int = 200
    media_batch_delay: float = 0.8
    default_sync_cooldown: float = 0.5
    min_batch_size: int = 1
    max_batch_size: int = 5
    batch_growth_streak: int = 3
    recovery_successes: int = 5
    backoff_base: float = 5.0
    backoff_max: float = 60.0
    timeout_retry_limit: int = 3
    timeout_retry_delay: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorConfig:
        return cls(
            max_sync_iterations=settings.max_sync_iterations,
            max_media_batches=settings.max_media_batches,
            media_batch_delay=settings.media_batch_delay_seconds,
            default_sync_cooldown=settings.default_sync_cooldown_seconds,
            min_batch_size=settings.min_batch_size,
            max_batch_size=settings.max_batch_size,
            batch_growth_streak=settings.batch_growth_streak,
            recovery_successes=settings.recovery_successes,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            timeout_retry_limit=settings.timeout_retry_limit,
            timeout_retry_delay=settings.timeout_retry_delay_seconds,
        )


@dataclass(frozen=True)
class SyncProgress:
    calls: int = 0
    synced: int = 0
    empty_streak: int = 0
    forward_empty_streak: int = 0
    timeouts: int = 0
    last_mode: SyncMode | None = None
    finished: bool = False
    status: CycleStatus | None = None
    error: str | None = None

    @property
    def stopped(self) -> bool:
        return self.finished or self.status is not None


@dataclass(frozen=True)
class MediaProgress:
    calls: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    remaining: int | None = None
    timeouts: int = 0
    status: CycleStatus | None = None
    error: str | None = None


P = TypeVar("P", SyncProgress, MediaProgress)


@dataclass(frozen=True)
class CycleReport:
    status: CycleStatus
    synced: int = 0
    media_completed: int = 0
    media_skipped: int = 0
    media_failed: int = 0
    sync_calls: int = 0
    media_calls: int = 0
    error: str | None = None


def _tally(progress: MediaProgress, results: list[MediaResultPayload]) -> MediaProgress:
    return replace(
        progress,
        completed=progress.completed
        + sum(1 for r in results if r.outcome is OutcomeKind.COMPLETED),
        skipped=progress.skipped
        + sum(1 for r in results if r.outcome is OutcomeKind.SKIPPED),
        failed=progress.failed
        + sum(1 for r in results if r.outcome is OutcomeKind.FAILED),
    )


class BatchOrchestrator:
    """Runs sync and media phases against an :class:`ArchiverApiProtocol`."""

    def __init__(
        self,
        api: ArchiverApiProtocol,
        config: OrchestratorConfig | None = None,
        *,
        view: MessageView | None = None,
        cancel_event: threading.Event | None = None,
        wait: WaitCallable | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            api: Archiver HTTP API
            config: Limits and pacing
            view: Local message view updated as results arrive
            cancel_event: Set from another thread to stop the cycle
            wait: Sleep that returns True when cancelled; defaults to
                ``cancel_event.wait`` so cancellation interrupts sleeps
        """
        self._api = api
        self._config = config or OrchestratorConfig()
        self.view = view or MessageView()
        self._cancel_event = cancel_event or threading.Event()
        self._wait = wait or self._cancel_event.wait
        self._backoff = BackoffPolicy(
            base=self._config.backoff_base, ceiling=self._config.backoff_max
        )
        self.sizer = BatchSizer(
            min_size=self._config.min_batch_size,
            max_size=self._config.max_batch_size,
            growth_streak=self._config.batch_growth_streak,
            recovery_successes=self._config.recovery_successes,
        )

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _sleep(self, seconds: float) -> bool:
        """Wait ``seconds``; True means the cycle was cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        return bool(self._wait(seconds)) or self.cancelled

    def _rate_limit_delay(self, call: ApiCall[Any], component: str) -> float:
        RATE_LIMITS_TOTAL.labels(component=component).inc()
        return self._backoff.next_delay(call.retry_after)

    # Sync phase

    def run_sync_phase(self, channel_id: str) -> SyncProgress:
        progress = SyncProgress()
        while not progress.stopped:
            if self.cancelled:
                return replace(progress, status=CycleStatus.CANCELLED)
            if progress.calls >= self._config.max_sync_iterations:
                logger.warning(
                    "sync_iteration_limit_reached",
                    channel_id=channel_id,
                    calls=progress.calls,
                )
                return replace(progress, finished=True)
            progress = self._sync_step(channel_id, progress)
        return progress

    def _sync_step(self, channel_id: str, progress: SyncProgress) -> SyncProgress:
        call = self._api.sync(
            channel_id, forward_empty_streak=progress.forward_empty_streak
        )
        API_CALLS_TOTAL.labels(endpoint="sync", status=call.status.value).inc()
        progress = replace(progress, calls=progress.calls + 1)

        if call.status is ApiCallStatus.OK and call.payload is not None:
            payload = call.payload
            self._backoff.reset()
            self.view.merge_messages(payload.messages)

            empty_streak = progress.empty_streak + 1 if payload.synced == 0 else 0
            forward_empty_streak = progress.forward_empty_streak
            if payload.mode is SyncMode.FORWARD:
                forward_empty_streak = (
                    0 if payload.has_new_messages else forward_empty_streak + 1
                )
            progress = replace(
                progress,
                synced=progress.synced + payload.synced,
                empty_streak=empty_streak,
                forward_empty_streak=forward_empty_streak,
                timeouts=0,
                last_mode=payload.mode,
            )
            logger.info(
                "sync_call_complete",
                channel_id=channel_id,
                mode=payload.mode.value,
                synced=payload.synced,
                gap=payload.gap,
                forward_empty_streak=forward_empty_streak,
            )

            awaiting_backfill = payload.gap and payload.mode is SyncMode.FORWARD
            caught_up = not payload.has_new_messages and (
                not payload.gap or payload.mode is SyncMode.BACKFILL
            )
            exhausted = (
                empty_streak >= EMPTY_SYNC_STOP_STREAK and not awaiting_backfill
            )
            if caught_up or exhausted:
                return replace(progress, finished=True)

            cooldown = payload.suggested_cooldown_seconds
            if cooldown is None:
                cooldown = self._config.default_sync_cooldown
            if self._sleep(cooldown):
                return replace(progress, status=CycleStatus.CANCELLED)
            return progress

        return self._handle_failure(call, progress, component="sync")

    # Media phase

    def run_media_phase(self, channel_id: str) -> MediaProgress:
        progress = MediaProgress()
        while progress.status is None:
            if self.cancelled:
                return replace(progress, status=CycleStatus.CANCELLED)
            if progress.calls >= self._config.max_media_batches:
                logger.warning(
                    "media_batch_limit_reached",
                    channel_id=channel_id,
                    calls=progress.calls,
                    remaining=progress.remaining,
                )
                return replace(progress, status=CycleStatus.LIMIT_REACHED)
            progress = self._media_step(channel_id, progress)
        return progress

    def _media_step(self, channel_id: str, progress: MediaProgress) -> MediaProgress:
        size = self.sizer.current
        call = self._api.process_media(channel_id, size)
        API_CALLS_TOTAL.labels(endpoint="process_media", status=call.status.value).inc()
        progress = replace(progress, calls=progress.calls + 1)

        if call.payload is not None:
            self.view.apply_outcomes(call.payload.results)
            progress = replace(
                _tally(progress, call.payload.results),
                remaining=call.payload.remaining,
            )

        if call.status is ApiCallStatus.OK and call.payload is not None:
            self._backoff.reset()
            next_size = self.sizer.record_success()
            progress = replace(progress, timeouts=0)
            logger.info(
                "media_batch_call_complete",
                channel_id=channel_id,
                size=size,
                processed=call.payload.processed,
                remaining=call.payload.remaining,
                next_size=next_size,
            )
            if call.payload.remaining == 0:
                return replace(progress, status=CycleStatus.COMPLETED)
            if self._sleep(self._config.media_batch_delay):
                return replace(progress, status=CycleStatus.CANCELLED)
            return progress

        if call.status in (ApiCallStatus.RATE_LIMITED, ApiCallStatus.TIMEOUT):
            self.sizer.record_pressure()
        return self._handle_failure(call, progress, component="process_media")

    # Shared failure handling

    def _handle_failure(
        self, call: ApiCall[Any], progress: P, *, component: str
    ) -> P:
        if call.status is ApiCallStatus.RATE_LIMITED:
            delay = self._rate_limit_delay(call, component)
            logger.warning(
                "api_rate_limited",
                endpoint=component,
                retry_after=call.retry_after,
                delay=delay,
            )
            if self._sleep(delay):
                return replace(progress, status=CycleStatus.CANCELLED)
            return progress

        if call.status is ApiCallStatus.TIMEOUT:
            timeouts = progress.timeouts + 1
            if timeouts > self._config.timeout_retry_limit:
                logger.error(
                    "api_timeout_budget_exhausted", endpoint=component, timeouts=timeouts
                )
                return replace(
                    progress,
                    timeouts=timeouts,
                    status=CycleStatus.FAILED,
                    error=f"{component} timed out {timeouts} times in a row",
                )
            logger.warning("api_timeout_retry", endpoint=component, timeouts=timeouts)
            progress = replace(progress, timeouts=timeouts)
            if self._sleep(self._config.timeout_retry_delay):
                return replace(progress, status=CycleStatus.CANCELLED)
            return progress

        if call.status is ApiCallStatus.CREDENTIALS:
            logger.error("api_reauth_required", endpoint=component, error=call.error)
            return replace(
                progress, status=CycleStatus.REAUTH_REQUIRED, error=call.error
            )

        logger.error("api_call_failed", endpoint=component, error=call.error)
        return replace(
            progress,
            status=CycleStatus.FAILED,
            error=call.error or f"{component} failed",
        )

    def run_cycle(self, channel_id: str) -> CycleReport:
        """Sync the channel, then fetch its media."""
        with correlation_scope() as correlation_id:
            logger.info(
                "archive_cycle_started",
                channel_id=channel_id,
                correlation_id=correlation_id,
            )
            sync = self.run_sync_phase(channel_id)
            media = MediaProgress()
            status = sync.status
            error = sync.error
            if status is None:
                media = self.run_media_phase(channel_id)
                status = media.status or CycleStatus.COMPLETED
                error = media.error

            report = CycleReport(
                status=status,
                synced=sync.synced,
                media_completed=media.completed,
                media_skipped=media.skipped,
                media_failed=media.failed,
                sync_calls=sync.calls,
                media_calls=media.calls,
                error=error,
            )
            logger.info(
                "archive_cycle_finished",
                channel_id=channel_id,
                status=report.status.value,
                synced=report.synced,
                media_completed=report.media_completed,
                media_skipped=report.media_skipped,
                media_failed=report.media_failed,
                error=report.error,
            )
            return report


def create_orchestrator(
    api: ArchiverApiProtocol,
    settings: Settings,
    *,
    cancel_event: threading.Event | None = None,
) -> BatchOrchestrator:
    return BatchOrchestrator(
        api,
        OrchestratorConfig.from_settings(settings),
        view=MessageView(media_base_url=settings.public_media_base_url),
        cancel_event=cancel_event,
    )
