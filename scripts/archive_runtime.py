"""Common runtime helpers for archiver scripts."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType

from src.config.logging_config import get_logger, setup_logging
from src.config.settings import Settings

logger = get_logger(__name__)


@dataclass
class ShutdownController:
    """Shutdown flag shared by signal handlers and the cycle loop.

    The wrapped event doubles as the orchestrator's cancel event, so a
    SIGTERM interrupts a backoff wait instead of sitting it out.
    """

    event: threading.Event

    def is_set(self) -> bool:
        return self.event.is_set()

    def wait(self, timeout: float) -> bool:
        return self.event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=sig_name)
        self.event.set()


def create_shutdown_controller() -> ShutdownController:
    return ShutdownController(threading.Event())


def install_signal_handlers(controller: ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def initialize_logging(settings: Settings, *, json_logs: bool | None = None) -> None:
    """Initialize structlog-based logging for scripts."""

    effective_json = settings.json_logs if json_logs is None else json_logs
    setup_logging(log_level=settings.log_level, json_logs=effective_json)
    logger.info(
        "logging_initialized", level=settings.log_level, json_logs=effective_json
    )


def run_cycle_loop(
    *,
    controller: ShutdownController,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], bool],
) -> None:
    """Call ``action`` every ``interval_seconds`` until shutdown.

    ``action`` returns False to stop the loop (e.g. re-authentication is
    needed and further cycles would fail the same way).
    """

    interval_seconds = max(0.1, interval_seconds)
    logger.info(
        "cycle_loop_started", interval_seconds=interval_seconds, run_once=run_once
    )

    iteration = 0
    while not controller.is_set():
        iteration += 1
        keep_going = action()
        if run_once or not keep_going:
            break
        controller.wait(interval_seconds)

    logger.info("cycle_loop_stopped", iterations=iteration)
