"""Tests for YAML + environment settings loading."""

import json
from pathlib import Path

import pytest

from src.config.settings import (
    CONFIG_DIR_ENV,
    Settings,
    deep_merge,
    load_all_configs,
)

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    directory = tmp_path / "config"
    directory.mkdir()
    monkeypatch.setenv(CONFIG_DIR_ENV, str(directory))
    for name in ("FORWARD_WINDOW", "TARGET_CHANNEL_ID", "TELEGRAM_API_HASH"):
        monkeypatch.delenv(name, raising=False)
    return directory


def test_repository_config_passes_its_schema() -> None:
    config = load_all_configs(REPO_CONFIG_DIR)

    assert config["sync"]["forward_window"] == 50
    assert config["media"]["approved_kinds"] == ["photo", "image"]


def test_defaults_without_config_files(config_dir: Path) -> None:
    settings = Settings()

    assert settings.forward_window == 50
    assert settings.backfill_window == 25
    assert settings.max_media_attempts == 3
    assert settings.blob_backend == "local"


def test_yaml_overrides_defaults(config_dir: Path) -> None:
    (config_dir / "main.yaml").write_text(
        "sync:\n  forward_window: 77\ntelegram:\n  target_channel_id: '@news'\n",
        encoding="utf-8",
    )

    settings = Settings()

    assert settings.forward_window == 77
    assert settings.target_channel_id == "@news"


def test_environment_wins_over_yaml(
    config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (config_dir / "main.yaml").write_text("sync:\n  forward_window: 77\n", encoding="utf-8")
    monkeypatch.setenv("FORWARD_WINDOW", "12")

    assert Settings().forward_window == 12


def test_later_files_override_main(config_dir: Path) -> None:
    (config_dir / "main.yaml").write_text(
        "media:\n  max_attempts: 3\n  min_bytes: 10\n", encoding="utf-8"
    )
    (config_dir / "local.yaml").write_text("media:\n  max_attempts: 7\n", encoding="utf-8")

    settings = Settings()

    assert settings.max_media_attempts == 7
    assert settings.media_min_bytes == 10


def test_schema_violation_is_rejected(config_dir: Path) -> None:
    schemas = config_dir / "schemas"
    schemas.mkdir()
    (schemas / "main.schema.json").write_text(
        json.dumps(
            {
                "type": "object",
                "properties": {
                    "sync": {
                        "type": "object",
                        "properties": {"forward_window": {"type": "integer"}},
                    }
                },
            }
        ),
        encoding="utf-8",
    )
    (config_dir / "main.yaml").write_text(
        "sync:\n  forward_window: lots\n", encoding="utf-8"
    )

    with pytest.raises(ValueError, match="Config validation failed for main"):
        Settings()


def test_blank_secret_is_treated_as_missing(
    config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TELEGRAM_API_HASH", "   ")
    assert Settings().telegram_api_hash is None


def test_resolve_channel(config_dir: Path) -> None:
    settings = Settings(target_channel_id=" -10042 ")

    assert settings.target_channel_id == "-10042"
    assert settings.resolve_channel(None) == "-10042"
    assert settings.resolve_channel("  ") == "-10042"
    assert settings.resolve_channel(" @other ") == "@other"


def test_deep_merge_keeps_sibling_keys() -> None:
    merged = deep_merge(
        {"media": {"min_bytes": 1, "max_bytes": 2}, "sync": {"forward_window": 5}},
        {"media": {"max_bytes": 9}},
    )

    assert merged == {
        "media": {"min_bytes": 1, "max_bytes": 9},
        "sync": {"forward_window": 5},
    }
