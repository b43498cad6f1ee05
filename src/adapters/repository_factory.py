"""Factory for creating database repository instances."""

from typing import cast

from src.adapters.sqlite_repository import SQLiteRepository
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


def create_repository(settings: Settings) -> RepositoryProtocol:
    """Create the message/media repository.

    Args:
        settings: Application settings

    Returns:
        SQLite repository at ``settings.db_path``

    Raises:
        RepositoryError: If the database cannot be opened or migrated
    """
    logger.info("repository_sqlite_selected", path=settings.db_path)
    return cast(RepositoryProtocol, SQLiteRepository(db_path=settings.db_path))
