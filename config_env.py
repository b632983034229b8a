#!/usr/bin/env python3
"""
Whitelisted AUTOTRADER_* env overrides for the parsed trader.yaml mapping.

Only identity and plumbing values can come from the environment. Risk knobs
are YAML-only; AUTOTRADER_RISK_* variables are reported once and ignored.
"""

from __future__ import annotations

import os
from copy import deepcopy
from typing import Any, Callable, Dict, Tuple

from env_utils import env_bool, env_float, env_int, env_list, env_present, env_str
from logging_utils import get_logger

LOG = get_logger("config_env")

# env name -> (key under `trader:`, reader)
_ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str, Any], Any]]] = {
    "AUTOTRADER_ID": ("id", env_str),
    "AUTOTRADER_NAME": ("name", env_str),
    "AUTOTRADER_EXCHANGE": ("exchange", env_str),
    "AUTOTRADER_AI_MODEL": ("ai_model", env_str),
    "AUTOTRADER_SCAN_INTERVAL_SECONDS": ("scan_interval_seconds", env_float),
    "AUTOTRADER_INITIAL_BALANCE": ("initial_balance", env_float),
    "AUTOTRADER_BTC_ETH_LEVERAGE": ("btc_eth_leverage", env_int),
    "AUTOTRADER_ALTCOIN_LEVERAGE": ("altcoin_leverage", env_int),
    "AUTOTRADER_CROSS_MARGIN": ("is_cross_margin", env_bool),
    "AUTOTRADER_TRADING_COINS": ("trading_coins", lambda n, d: env_list(n, d if isinstance(d, list) else [])),
    "AUTOTRADER_COIN_POOL_API_URL": ("coin_pool_api_url", env_str),
    "AUTOTRADER_OI_TOP_API_URL": ("oi_top_api_url", env_str),
    "AUTOTRADER_DECISION_LOG_DIR": ("decision_log_dir", env_str),
    "AUTOTRADER_USER_ID": ("user_id", env_str),
}

ALLOWED_ENV_OVERRIDES = frozenset(_ENV_OVERRIDES)

_warned_ignored = False


def _warn_ignored_once() -> None:
    global _warned_ignored
    if _warned_ignored:
        return
    ignored = sorted(n for n in os.environ if n.startswith("AUTOTRADER_RISK_"))
    if ignored:
        LOG.warning(f"Ignoring AUTOTRADER_RISK_* env vars (risk policy is YAML-only): {', '.join(ignored[:12])}")
        _warned_ignored = True


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of config with whitelisted env values applied."""
    cfg = deepcopy(config) if config else {}
    trader = cfg.get("trader")
    if not isinstance(trader, dict):
        trader = {}
    for env_name, (key, read) in _ENV_OVERRIDES.items():
        if not env_present(env_name):
            continue
        trader[key] = read(env_name, trader.get(key))
    if trader:
        cfg["trader"] = trader
    _warn_ignored_once()
    return cfg
