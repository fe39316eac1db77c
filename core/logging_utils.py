"""Shared log setup for the pipeline: one UTC console handler on the root logger."""

from __future__ import annotations

import logging
import os
import time
from typing import Iterable

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HANDLER_NAME = "regime-signals-console"

# Transport libraries that log every frame at DEBUG/INFO
NOISY_LOGGERS = ("websockets", "urllib3", "asyncio")


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


def level_from(value: str | int | None) -> int:
    """Map a level name or number to a logging level; None reads LOG_LEVEL."""
    if value is None:
        value = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _pipeline_handler(root: logging.Logger) -> logging.Handler | None:
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return handler
    return None


def setup_logging(level: str | int | None = None) -> logging.Logger:
    """Attach the console handler once and (re)apply the level on every call."""
    root = logging.getLogger()
    resolved = level_from(level)

    handler = _pipeline_handler(root)
    if handler is None:
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(UTCFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)

    handler.setLevel(resolved)
    root.setLevel(resolved)
    return root


def quiet_library_loggers(level: int = logging.WARNING, names: Iterable[str] = NOISY_LOGGERS) -> None:
    for name in names:
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    if _pipeline_handler(logging.getLogger()) is None:
        setup_logging()
    return logging.getLogger(name)
