"""Diagnostic logging for kamal-dash.

The operator-facing log is the dashboard's log panel. This module only wires
the ``kamal_dash`` logger hierarchy to a rotating file, because the terminal
belongs to the TUI while it runs.
"""
from __future__ import annotations

import logging
from logging import handlers
from pathlib import Path

ROOT_LOGGER_NAME = "kamal_dash"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s"
MAX_BYTES = 1024 * 1024
BACKUP_COUNT = 3

_HANDLER_MARK = "_kdash_handler"


def get_logger() -> logging.Logger:
    return logging.getLogger(ROOT_LOGGER_NAME)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        if getattr(h, _HANDLER_MARK, False):
            logger.removeHandler(h)
            h.close()


def setup_logging(level: str | int = "INFO", path: Path | None = None) -> logging.Logger:
    """Attach a rotating file handler (or a NullHandler when ``path`` is None).

    Safe to call more than once; handlers installed by a previous call are
    replaced. Records never propagate to the root logger.
    """
    logger = get_logger()
    _clear_handlers(logger)
    logger.propagate = False

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    handler: logging.Handler
    if path is None:
        handler = logging.NullHandler()
    else:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = handlers.RotatingFileHandler(
            path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(handler, _HANDLER_MARK, True)
    logger.addHandler(handler)
    return logger
