from __future__ import annotations

import json
import logging

import pytest
import structlog

from tracking_monitor import main as main_module
from tracking_monitor.main import EXIT_FOUND, EXIT_NOT_FOUND, EXIT_UNKNOWN, _level_number, main


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRACKING_MONITOR_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("LOG_FILE", raising=False)
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize(
    ("path", "token", "code", "match"),
    [
        ("/ready", "77-01/2024", EXIT_FOUND, "found"),
        ("/ready", "000000", EXIT_NOT_FOUND, "not_found"),
        ("/broken", "123456", EXIT_UNKNOWN, "unknown"),
    ],
)
def test_check_command(page_server_base_url, monkeypatch, capsys, path, token, code, match) -> None:
    monkeypatch.setenv("PAGE_URL", f"{page_server_base_url}{path}")
    assert main(["--log-level", "WARNING", "check", token]) == code
    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert json.loads(line)["match"] == match


def test_run_without_bot_token_exits_with_error(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TRACKING_DB_PATH", str(tmp_path / "tracking.db"))
    assert main(["run"]) == 2


def test_log_file_receives_output(tmp_path, monkeypatch) -> None:
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("LOG_FILE", str(log_file))
    assert main(["run"]) == 2
    assert "TELEGRAM_BOT_TOKEN not set" in log_file.read_text(encoding="utf-8")


def test_level_number() -> None:
    assert _level_number("debug") == logging.DEBUG
    assert _level_number("nonsense") == logging.INFO
    assert _level_number("") == logging.INFO


def test_build_supervisor_uses_config(store, checker, notifier) -> None:
    config = main_module.MonitorConfig(poll_interval_seconds=5, max_token_length=10)
    sup = main_module.build_supervisor(config, store=store, checker=checker, notifier=notifier)
    assert sup.poll_interval_seconds == 5
    assert sup.max_token_length == 10
