"""Logging setup for the dev server."""

import logging
import logging.handlers
from pathlib import Path

PACKAGE_LOGGERS = ("chatgroup", "backend")

CONSOLE_FORMAT = "%(levelname)s: %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s.%(funcName)s:%(lineno)d | %(message)s"


def _handlers(log_file: Path | None) -> list[logging.Handler]:
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers: list[logging.Handler] = [console]

    if log_file is not None:
        # 5 backups of 10MB each
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handlers.append(file_handler)
    return handlers


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Attach console (and optionally rotating file) handlers to the package loggers.

    Calling it twice does not add duplicate handlers. Returns the
    `chatgroup` logger.
    """
    handlers = None
    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level.upper())
        if logger.handlers:
            continue
        if handlers is None:
            handlers = _handlers(log_file)
        for handler in handlers:
            logger.addHandler(handler)
    return logging.getLogger(PACKAGE_LOGGERS[0])
