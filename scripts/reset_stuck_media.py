"""Put media rows stuck in ``processing`` back in the queue.

Also repairs rows whose media key and status disagree. Safe to run while
the API is serving: every repair is a conditional update.
"""

from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import archive_runtime
from src.adapters.repository_factory import create_repository
from src.config.logging_config import get_logger
from src.config.settings import get_settings

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset stuck media rows")
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help="Minutes in processing before a row counts as stuck",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    archive_runtime.initialize_logging(settings)

    minutes = (
        args.stale_minutes
        if args.stale_minutes is not None
        else settings.stuck_media_after_minutes
    )
    repository = create_repository(settings)
    repaired = repository.reset_stuck_media(timedelta(minutes=minutes))
    logger.info("stuck_media_reset", repaired=repaired, stale_minutes=minutes)
    print(f"✅ Repaired {repaired} media rows")
    return 0


if __name__ == "__main__":
    sys.exit(main())
