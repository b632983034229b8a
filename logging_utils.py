#!/usr/bin/env python3
"""
Logging helpers.

Every component logs under the `autotrader.` namespace with its own console
handler; `add_file_log` attaches a shared file handler to the namespace root
so one trader's whole run lands in a single file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "autotrader"
LOG_FILE_NAME = "trader.log"

_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _formatter() -> logging.Formatter:
    return logging.Formatter(_FORMAT, datefmt=_DATEFMT)


def _env_level(default: int) -> int:
    raw = (env_str("AUTOTRADER_LOG_LEVEL") or "").upper()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger `autotrader.<name>` with a console handler."""
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        logger.addHandler(handler)
    logger.setLevel(_env_level(logging.INFO) if level is None else level)
    return logger


def add_file_log(log_dir: str, verbose: bool = False) -> logging.Handler:
    """Mirror every component logger into `<log_dir>/trader.log`.

    Idempotent per file: a second call for the same directory returns the
    handler that is already attached.
    """
    path = Path(log_dir) / LOG_FILE_NAME
    root = logging.getLogger(ROOT_LOGGER)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path.resolve():
            return handler
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(_formatter())
    root.addHandler(handler)
    return handler
