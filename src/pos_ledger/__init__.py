"""Document numbering and stock reconciliation for a point-of-sale workbook.

Importing the package configures the ``pos_ledger`` logger once: a rotating
file under ``.logs/`` in the working directory (``POS_LEDGER_LOG_DIR``
overrides the folder, ``POS_LEDGER_LOG_LEVEL`` the file threshold) and a
stderr handler that only shows warnings unless the CLI runs with
``--verbose``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


__version__ = "0.1.0"

LOG_DIR_ENV = "POS_LEDGER_LOG_DIR"
LOG_LEVEL_ENV = "POS_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "pos_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(threadName)s | %(message)s"
CONSOLE_HANDLER_NAME = "pos_ledger.console"


def _log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.cwd() / ".logs"


def _file_level() -> int:
    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    log_file = _log_dir() / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        # Read-only installs still get console output.
        print(f"Warning: unable to initialize log file at '{log_file}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(_file_level())
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change the threshold of the stderr handler."""

    for handler in log.handlers:
        if handler.get_name() == CONSOLE_HANDLER_NAME:
            handler.setLevel(level)


log = _configure_logging()
log.debug("pos_ledger %s logging to '%s'", __version__, _log_dir())
