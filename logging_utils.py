#!/usr/bin/env python3
"""Shared logging helpers for the signal dispatcher."""

from __future__ import annotations

import logging
from typing import Optional

from env_utils import env_str

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def _formatter() -> logging.Formatter:
    return logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)


def _level_from_env(default: int) -> int:
    raw = (env_str("DISPATCH_LOG_LEVEL") or "").upper()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger.

    A handler is attached only when neither the logger nor an ancestor has
    one, so ``dispatcher.gate`` reuses the handlers (and level) of
    ``dispatcher``.
    """
    logger = logging.getLogger(name)
    if not logger.hasHandlers():
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_env(logging.INFO))
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    name: str,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Process-level logging: console plus an optional DEBUG file log.

    Child loggers (``dispatcher.*``) propagate into the handlers installed
    here.
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    console_level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(_level_from_env(console_level) if level is None else level)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(_formatter())
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        logger.addHandler(file_handler)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logger
