from __future__ import annotations

import threading
from types import SimpleNamespace

from scripts import archive_runtime
from src.use_cases.batch_orchestrator import CycleReport, CycleStatus


def _settings(**overrides) -> SimpleNamespace:
    values = {
        "log_level": "INFO",
        "json_logs": False,
        "api_base_url": "http://archiver.local",
        "api_timeout_seconds": 5.0,
        "stuck_media_after_minutes": 15,
        "target_channel_id": None,
    }
    values.update(overrides)
    settings = SimpleNamespace(**values)
    settings.resolve_channel = lambda channel: channel or settings.target_channel_id
    return settings


def _patch_runtime(mocker, module) -> None:
    mocker.patch.object(module.archive_runtime, "initialize_logging")
    mocker.patch.object(
        module.archive_runtime,
        "create_shutdown_controller",
        return_value=archive_runtime.ShutdownController(threading.Event()),
    )
    mocker.patch.object(module.archive_runtime, "install_signal_handlers")


def test_run_archive_cycle_once(mocker) -> None:
    module = __import__("scripts.run_archive_cycle", fromlist=["main"])

    mocker.patch.object(module, "get_settings", return_value=_settings())
    _patch_runtime(mocker, module)
    api = mocker.MagicMock()
    api_cls = mocker.patch.object(module, "ArchiverApiClient")
    api_cls.return_value.__enter__.return_value = api
    orchestrator = mocker.Mock()
    orchestrator.run_cycle.return_value = CycleReport(
        status=CycleStatus.COMPLETED, synced=3, media_completed=1
    )
    create = mocker.patch.object(
        module, "create_orchestrator", return_value=orchestrator
    )

    exit_code = module.main(["--channel", "@news", "--run-once"])

    assert exit_code == 0
    api_cls.assert_called_once_with("http://archiver.local", timeout=5.0)
    create.assert_called_once()
    orchestrator.run_cycle.assert_called_once_with("@news")


def test_run_archive_cycle_reauth_exit_code(mocker) -> None:
    module = __import__("scripts.run_archive_cycle", fromlist=["main"])

    mocker.patch.object(
        module, "get_settings", return_value=_settings(target_channel_id="-100")
    )
    _patch_runtime(mocker, module)
    mocker.patch.object(module, "ArchiverApiClient")
    orchestrator = mocker.Mock()
    orchestrator.run_cycle.return_value = CycleReport(
        status=CycleStatus.REAUTH_REQUIRED, error="session expired"
    )
    mocker.patch.object(module, "create_orchestrator", return_value=orchestrator)

    exit_code = module.main(["--interval-seconds", "0"])

    assert exit_code == module.EXIT_REAUTH_REQUIRED
    orchestrator.run_cycle.assert_called_once_with("-100")


def test_run_archive_cycle_requires_channel(mocker) -> None:
    module = __import__("scripts.run_archive_cycle", fromlist=["main"])

    mocker.patch.object(module, "get_settings", return_value=_settings())
    mocker.patch.object(module.archive_runtime, "initialize_logging")
    api_cls = mocker.patch.object(module, "ArchiverApiClient")

    assert module.main(["--run-once"]) == 1
    api_cls.assert_not_called()


def test_serve_api_runs_uvicorn(mocker) -> None:
    module = __import__("scripts.serve_api", fromlist=["main"])

    settings = _settings()
    mocker.patch.object(module, "get_settings", return_value=settings)
    mocker.patch.object(module.archive_runtime, "initialize_logging")
    app = mocker.Mock()
    mocker.patch.object(module, "create_app", return_value=app)
    run = mocker.patch.object(module.uvicorn, "run")

    assert module.main(["--port", "9001"]) == 0
    module.create_app.assert_called_once_with(settings)
    run.assert_called_once_with(app, host="127.0.0.1", port=9001, log_config=None)


def test_reset_stuck_media_uses_override(mocker) -> None:
    module = __import__("scripts.reset_stuck_media", fromlist=["main"])

    mocker.patch.object(module, "get_settings", return_value=_settings())
    mocker.patch.object(module.archive_runtime, "initialize_logging")
    repository = mocker.Mock()
    repository.reset_stuck_media.return_value = 2
    mocker.patch.object(module, "create_repository", return_value=repository)

    assert module.main(["--stale-minutes", "5"]) == 0
    (stale_after,), _ = repository.reset_stuck_media.call_args
    assert stale_after.total_seconds() == 300


def test_run_cycle_loop_stops_when_action_declines() -> None:
    controller = archive_runtime.create_shutdown_controller()
    calls: list[int] = []

    def action() -> bool:
        calls.append(1)
        return len(calls) < 3

    archive_runtime.run_cycle_loop(
        controller=controller, interval_seconds=0.0, run_once=False, action=action
    )

    assert len(calls) == 3


def test_run_cycle_loop_honours_shutdown() -> None:
    controller = archive_runtime.create_shutdown_controller()
    controller.event.set()
    calls: list[int] = []

    archive_runtime.run_cycle_loop(
        controller=controller,
        interval_seconds=1.0,
        run_once=False,
        action=lambda: calls.append(1) or True,
    )

    assert calls == []
