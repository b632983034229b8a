#!/usr/bin/env python3
"""
Environment access for the trader process.

`.env` beside the modules is loaded once on import. The typed readers treat
an unset variable and a blank one the same way and fall back to the caller's
default when the value does not parse.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from dotenv import load_dotenv


load_dotenv(Path(__file__).parent / ".env")

T = TypeVar("T")

_TRUE = frozenset({"1", "true", "yes", "y", "on"})
_FALSE = frozenset({"0", "false", "no", "n", "off"})


def env_present(name: str) -> bool:
    return bool(str(os.getenv(name) or "").strip())


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return os.environ[name].strip()


def _env_parsed(name: str, default: T, parse: Callable[[str], T]) -> T:
    if not env_present(name):
        return default
    try:
        return parse(os.environ[name].strip())
    except (TypeError, ValueError):
        return default


def _parse_bool(raw: str) -> bool:
    value = raw.lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(raw)


def env_int(name: str, default: int) -> int:
    return _env_parsed(name, default, int)


def env_float(name: str, default: float) -> float:
    return _env_parsed(name, default, float)


def env_bool(name: str, default: bool) -> bool:
    return _env_parsed(name, default, _parse_bool)


def env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    """Comma-separated list; empty items dropped."""
    if not env_present(name):
        return list(default or [])
    return [item.strip() for item in os.environ[name].split(",") if item.strip()]


def _resolve_root() -> Path:
    here = Path(__file__).resolve().parent
    root = Path(env_str("AUTOTRADER_ROOT", str(here)) or str(here)).expanduser()
    return root if root.is_absolute() else (here / root).resolve()


AUTOTRADER_ROOT = str(_resolve_root())
AUTOTRADER_CONFIG_PATH = env_str("AUTOTRADER_CONFIG_PATH", str(Path(AUTOTRADER_ROOT) / "trader.yaml"))
AUTOTRADER_LOG_DIR = env_str("AUTOTRADER_LOG_DIR", str(Path(AUTOTRADER_ROOT) / "decision_logs"))
AUTOTRADER_DB_PATH = env_str("AUTOTRADER_DB_PATH", str(Path(AUTOTRADER_ROOT) / "auto_trader.db"))
