"""Application settings with Pydantic Settings validation.

Secrets (Telegram API hash, session string, blob storage secret) come from
the environment or a ``.env`` file. Everything else has a default here and
may be overridden by ``config/*.yaml``; each YAML file is validated against
``config/schemas/<name>.schema.json`` when such a schema exists. Values set
through the environment always win over YAML.
"""

import json
import os
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.logging_config import get_logger

CONFIG_DIR_ENV: Final[str] = "ARCHIVER_CONFIG_DIR"
DEFAULT_CONFIG_DIR: Final[str] = "config"

FORWARD_WINDOW_DEFAULT: Final[int] = 50
BACKFILL_WINDOW_DEFAULT: Final[int] = 25
MEDIA_MAX_BYTES_DEFAULT: Final[int] = 20 * 1024 * 1024
MEDIA_MIN_BYTES_DEFAULT: Final[int] = 100
MEDIA_DOWNLOAD_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0

logger = cast(Any, get_logger(__name__))

# (yaml section, yaml key) -> settings field
_YAML_FIELD_MAP: Final[dict[tuple[str, str], str]] = {
    ("telegram", "api_id"): "telegram_api_id",
    ("telegram", "session_path"): "telegram_session_path",
    ("telegram", "target_channel_id"): "target_channel_id",
    ("database", "path"): "db_path",
    ("blob_storage", "backend"): "blob_backend",
    ("blob_storage", "endpoint"): "blob_endpoint",
    ("blob_storage", "access_key"): "blob_access_key",
    ("blob_storage", "bucket"): "blob_bucket",
    ("blob_storage", "secure"): "blob_secure",
    ("blob_storage", "local_dir"): "blob_local_dir",
    ("blob_storage", "public_base_url"): "public_media_base_url",
    ("sync", "forward_window"): "forward_window",
    ("sync", "backfill_window"): "backfill_window",
    ("sync", "backfill_after_empty_forward"): "backfill_after_empty_forward",
    ("sync", "suggested_cooldown_seconds"): "sync_cooldown_seconds",
    ("sync", "ingest_excluded_media_kinds"): "ingest_excluded_media_kinds",
    ("media", "approved_kinds"): "approved_media_kinds",
    ("media", "max_bytes"): "media_max_bytes",
    ("media", "min_bytes"): "media_min_bytes",
    ("media", "download_timeout_seconds"): "media_download_timeout_seconds",
    ("media", "max_attempts"): "max_media_attempts",
    ("media", "stuck_after_minutes"): "stuck_media_after_minutes",
    ("orchestrator", "api_base_url"): "api_base_url",
    ("orchestrator", "request_timeout_seconds"): "api_timeout_seconds",
    ("orchestrator", "max_sync_iterations"): "max_sync_iterations",
    ("orchestrator", "max_media_batches"): "max_media_batches",
    ("orchestrator", "media_batch_delay_seconds"): "media_batch_delay_seconds",
    ("orchestrator", "default_sync_cooldown_seconds"): "default_sync_cooldown_seconds",
    ("orchestrator", "min_batch_size"): "min_batch_size",
    ("orchestrator", "max_batch_size"): "max_batch_size",
    ("orchestrator", "batch_growth_streak"): "batch_growth_streak",
    ("orchestrator", "recovery_successes"): "recovery_successes",
    ("orchestrator", "backoff_base_seconds"): "backoff_base_seconds",
    ("orchestrator", "backoff_max_seconds"): "backoff_max_seconds",
    ("orchestrator", "timeout_retry_limit"): "timeout_retry_limit",
    ("orchestrator", "timeout_retry_delay_seconds"): "timeout_retry_delay_seconds",
    ("logging", "level"): "log_level",
    ("logging", "json"): "json_logs",
}


def config_dir() -> Path:
    return Path(os.getenv(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``, recursing into dicts.

    Args:
        base: Base dictionary
        override: Values that take precedence

    Returns:
        Merged dictionary
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_schema(schema_name: str, directory: Path | None = None) -> dict[str, Any]:
    """Load ``<schema_name>.schema.json`` from the schemas directory.

    Returns:
        Schema dictionary, or an empty dict when none is available
    """
    schema_path = (directory or config_dir()) / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    directory: Path | None = None,
) -> None:
    """Validate one YAML document against its JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, directory)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
    except JSONSchemaValidationError as e:
        location = f" (file: {file_path})" if file_path else ""
        raise ValueError(
            f"Config validation failed for {schema_name}{location}: {e.message}"
        ) from e
    logger.debug("config_validation_succeeded", schema=schema_name)


def load_all_configs(directory: Path | None = None) -> dict[str, Any]:
    """Load and merge every ``*.yaml`` file of the config directory.

    ``main.yaml`` is applied first, the rest in alphabetical order, each
    overriding what came before.

    Raises:
        ValueError: If a file fails schema validation
    """
    root = directory or config_dir()
    if not root.is_dir():
        return {}

    files = sorted(root.glob("*.yaml"), key=lambda p: (p.name != "main.yaml", p.name))
    merged: dict[str, Any] = {}
    for path in files:
        try:
            with open(path, encoding="utf-8") as f:
                document = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(path), error=str(e))
            continue

        try:
            validate_config_section(document, path.stem, str(path), root)
        except ValueError as e:
            logger.error("config_validation_failed", path=str(path), error=str(e))
            raise

        merged = deep_merge(merged, document)
        logger.debug("config_file_loaded", path=str(path))

    logger.debug("config_load_complete", file_count=len(files))
    return merged


class Settings(BaseSettings):
    """Archiver settings.

    Secrets are read from the environment / ``.env``; other values fall back
    to YAML and then to the defaults declared below.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    telegram_api_id: int | None = Field(
        default=None, description="Telegram API ID (from .env)"
    )
    telegram_api_hash: SecretStr | None = Field(
        default=None, description="Telegram API hash (from .env)"
    )
    telegram_session_string: SecretStr | None = Field(
        default=None,
        description="Serialized Telethon StringSession; preferred over the session file",
    )
    blob_secret_key: SecretStr | None = Field(
        default=None, description="Blob storage secret key (from .env)"
    )

    # === TELEGRAM ===

    telegram_session_path: str = Field(
        default="data/archiver.session",
        description="Telethon session file used when no session string is set",
    )
    target_channel_id: str | None = Field(
        default=None, description="Channel archived when a request names none"
    )

    # === STORAGE ===

    db_path: str = Field(default="data/archiver.db", description="SQLite file")
    blob_backend: Literal["minio", "local"] = Field(
        default="local", description="Blob storage implementation"
    )
    blob_endpoint: str = Field(default="localhost:9000")
    blob_access_key: str | None = Field(default=None)
    blob_bucket: str = Field(default="archiver-media")
    blob_secure: bool = Field(default=False)
    blob_local_dir: str = Field(default="data/media")
    public_media_base_url: str = Field(
        default="/media", description="Prefix used to build media URLs for clients"
    )

    # === SYNC ===

    forward_window: int = Field(default=FORWARD_WINDOW_DEFAULT, ge=1, le=500)
    backfill_window: int = Field(default=BACKFILL_WINDOW_DEFAULT, ge=1, le=500)
    backfill_after_empty_forward: int = Field(
        default=2,
        ge=1,
        description="Consecutive empty forward calls before backfill is chosen",
    )
    sync_cooldown_seconds: float = Field(
        default=0.2, ge=0.0, description="Cooldown suggested to sync callers"
    )
    ingest_excluded_media_kinds: list[str] = Field(
        default_factory=lambda: ["webpage"],
        description="Media kinds recorded but never queued for download",
    )

    # === MEDIA ===

    approved_media_kinds: list[str] = Field(
        default_factory=lambda: ["photo", "image"],
        description="Media kinds the fetch worker downloads",
    )
    media_max_bytes: int = Field(default=MEDIA_MAX_BYTES_DEFAULT, ge=1)
    media_min_bytes: int = Field(default=MEDIA_MIN_BYTES_DEFAULT, ge=1)
    media_download_timeout_seconds: float = Field(
        default=MEDIA_DOWNLOAD_TIMEOUT_SECONDS_DEFAULT, gt=0
    )
    max_media_attempts: int = Field(
        default=3, ge=1, description="Failed items are re-selected until this many tries"
    )
    stuck_media_after_minutes: int = Field(default=15, ge=1)

    # === ORCHESTRATOR ===

    api_base_url: str = Field(default="http://localhost:8000")
    api_timeout_seconds: float = Field(default=60.0, gt=0)
    max_sync_iterations: int = Field(default=15, ge=1)
    max_media_batches: int = Field(default=200, ge=1)
    media_batch_delay_seconds: float = Field(default=0.8, ge=0.0)
    default_sync_cooldown_seconds: float = Field(default=0.5, ge=0.0)
    min_batch_size: int = Field(default=1, ge=1)
    max_batch_size: int = Field(default=5, ge=1)
    batch_growth_streak: int = Field(default=3, ge=1)
    recovery_successes: int = Field(default=5, ge=0)
    backoff_base_seconds: float = Field(default=5.0, gt=0)
    backoff_max_seconds: float = Field(default=60.0, gt=0)
    timeout_retry_limit: int = Field(default=3, ge=0)
    timeout_retry_delay_seconds: float = Field(default=2.0, ge=0.0)

    # === LOGGING ===

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    @field_validator(
        "telegram_api_hash", "telegram_session_string", "blob_secret_key", mode="before"
    )
    @classmethod
    def _blank_secret_is_none(cls, value: SecretStr | str | None) -> SecretStr | None:
        if value is None:
            return None
        secret_value = (
            value.get_secret_value() if isinstance(value, SecretStr) else str(value)
        )
        if not secret_value.strip():
            return None
        return value if isinstance(value, SecretStr) else SecretStr(secret_value)

    @field_validator("target_channel_id", mode="before")
    @classmethod
    def _normalize_channel(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def __init__(self, **data: Any):
        """Initialize settings, then fill unset fields from YAML."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced values without overriding env-provided ones."""

        explicitly_set = set(self.model_fields_set)
        for (section, key), field_name in _YAML_FIELD_MAP.items():
            section_values = config.get(section) or {}
            value = section_values.get(key)
            if value is None or field_name in explicitly_set:
                continue
            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

    def resolve_channel(self, channel_id: str | None) -> str | None:
        """Explicit channel if given, otherwise the configured target."""
        if channel_id is not None and channel_id.strip():
            return channel_id.strip()
        return self.target_channel_id


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings_cache() -> None:
    global _settings
    _settings = None
