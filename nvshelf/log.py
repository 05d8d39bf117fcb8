"""Package logging: one sink, to a file or the console, set up once."""

from __future__ import annotations

import logging
import os
import sys

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

SEVERITY_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

_LOGGER_NAME = "nvshelf"
_handler: logging.Handler | None = None


def _resolve_level(level) -> int:
    if isinstance(level, str):
        try:
            return SEVERITY_LEVELS[level.lower()]
        except KeyError:
            raise ValueError(f"unknown severity level {level!r}") from None
    if isinstance(level, int) and not isinstance(level, bool):
        return level
    raise TypeError(f"severity level must be a name or an int, got {level!r}")


def get_logger() -> logging.Logger:
    """Return the package logger."""
    return logging.getLogger(_LOGGER_NAME)


def init_log(level="fatal", file_name: str | os.PathLike | None = "output.log") -> bool:
    """Send records at ``level`` and above to ``file_name``, or to stderr if empty.

    Only the first call has an effect; it returns True, later calls False.
    """
    global _handler
    if _handler is not None:
        return False
    severity = _resolve_level(level)
    if file_name:
        handler: logging.Handler = logging.FileHandler(file_name, mode="w")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(severity)
    logger = get_logger()
    logger.setLevel(severity)
    logger.addHandler(handler)
    _handler = handler
    return True


def _reset_log() -> None:
    global _handler
    if _handler is None:
        return
    logger = get_logger()
    logger.removeHandler(_handler)
    _handler.close()
    _handler = None
    logger.setLevel(logging.NOTSET)