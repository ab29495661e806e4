"""Tests for the package logger configured on import."""

from __future__ import annotations

import logging

import pytest

import pos_ledger


def _console_handler() -> logging.Handler:
    return next(
        handler for handler in pos_ledger.log.handlers if handler.get_name() == pos_ledger.CONSOLE_HANDLER_NAME
    )


@pytest.fixture
def restore_console_level():
    yield
    pos_ledger.set_console_level(logging.WARNING)


def test_logger_is_configured_once():
    handlers = list(pos_ledger.log.handlers)

    assert pos_ledger._configure_logging() is pos_ledger.log
    assert pos_ledger.log.handlers == handlers


def test_set_console_level_changes_stderr_threshold(restore_console_level):
    assert _console_handler().level == logging.WARNING

    pos_ledger.set_console_level(logging.INFO)

    assert _console_handler().level == logging.INFO


def test_log_dir_honours_environment(monkeypatch, tmp_path):
    monkeypatch.setenv(pos_ledger.LOG_DIR_ENV, str(tmp_path / "logs"))

    assert pos_ledger._log_dir() == tmp_path / "logs"


@pytest.mark.parametrize(("raw", "expected"), [("debug", logging.DEBUG), (" Error ", logging.ERROR), ("chatty", logging.INFO)])
def test_file_level_reads_environment(monkeypatch, raw, expected):
    monkeypatch.setenv(pos_ledger.LOG_LEVEL_ENV, raw)

    assert pos_ledger._file_level() == expected


def test_file_handler_failure_falls_back_to_console(monkeypatch, tmp_path, capsys):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    monkeypatch.setenv(pos_ledger.LOG_DIR_ENV, str(blocker))

    assert pos_ledger._file_handler(logging.Formatter()) is None
    assert "unable to initialize log file" in capsys.readouterr().err
