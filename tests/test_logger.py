import logging

import pytest

from scanflow.logger import DEFAULT_LOG_FILE, QUIET_LOGGERS, LevelColourFormatter, get_logging_config


def test_console_only_without_log_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_DIR", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = get_logging_config()

    assert list(config["handlers"]) == ["console"]
    assert config["loggers"][""]["level"] == "DEBUG"
    for name in QUIET_LOGGERS:
        assert config["loggers"][name]["level"] == "WARNING"


def test_file_handler_under_log_dir(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("LOG_DIR", str(log_dir))
    monkeypatch.delenv("LOG_FILE", raising=False)

    config = get_logging_config()

    assert log_dir.is_dir()
    assert config["handlers"]["file"]["filename"] == str(log_dir / DEFAULT_LOG_FILE)
    assert config["loggers"]["scanflow"]["handlers"] == ["console", "file"]


def test_colour_does_not_leak_into_other_handlers() -> None:
    formatter = LevelColourFormatter("%(levelname)s %(message)s")
    record = logging.LogRecord("scanflow", logging.WARNING, __file__, 1, "slow store", None, None)

    assert formatter.format(record) == "\x1b[33mWARNING\x1b[0m slow store"
    assert record.levelname == "WARNING"
