"""Run archive cycles (sync, then media) against the archiver API."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import archive_runtime
from src.clients.archiver_api import ArchiverApiClient
from src.config.logging_config import get_logger
from src.config.settings import get_settings
from src.use_cases.batch_orchestrator import CycleStatus, create_orchestrator

logger = get_logger(__name__)

EXIT_REAUTH_REQUIRED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync a Telegram channel and fetch its media through the API"
    )
    parser.add_argument(
        "--channel",
        help="Channel id or @username (defaults to TARGET_CHANNEL_ID)",
    )
    parser.add_argument(
        "--api-url",
        help="Archiver API base URL (defaults to API_BASE_URL)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=300.0,
        help="Seconds to wait between cycles",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    archive_runtime.initialize_logging(settings, json_logs=args.json_logs or None)

    channel_id = settings.resolve_channel(args.channel)
    if channel_id is None:
        logger.error("channel_not_configured")
        print("❌ No channel given: pass --channel or set TARGET_CHANNEL_ID")
        return 1

    controller = archive_runtime.create_shutdown_controller()
    archive_runtime.install_signal_handlers(controller)

    exit_code = 0
    with ArchiverApiClient(
        args.api_url or settings.api_base_url,
        timeout=settings.api_timeout_seconds,
    ) as api:
        orchestrator = create_orchestrator(
            api, settings, cancel_event=controller.event
        )

        def run_one() -> bool:
            nonlocal exit_code
            report = orchestrator.run_cycle(channel_id)
            print(
                f"{report.status.value}: synced={report.synced} "
                f"media completed={report.media_completed} "
                f"skipped={report.media_skipped} failed={report.media_failed}"
            )
            if report.status is CycleStatus.REAUTH_REQUIRED:
                print("❌ Telegram session needs re-authentication")
                exit_code = EXIT_REAUTH_REQUIRED
                return False
            exit_code = 0 if report.status is not CycleStatus.FAILED else 1
            return True

        archive_runtime.run_cycle_loop(
            controller=controller,
            interval_seconds=args.interval_seconds,
            run_once=args.run_once,
            action=run_one,
        )

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
