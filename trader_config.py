#!/usr/bin/env python3
"""
Trader configuration.

YAML-first: `trader.yaml` holds the `trader:` block and an optional `risk:`
block; a short whitelist of AUTOTRADER_* env vars may override plumbing
values (see config_env.ALLOWED_ENV_OVERRIDES).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config_env import apply_env_overrides
from env_utils import AUTOTRADER_CONFIG_PATH, AUTOTRADER_LOG_DIR
from errors import ConfigurationError
from exchanges.registry import SUPPORTED_EXCHANGES
from risk_policy import RiskPolicy, is_major_pair
from venues import normalize_venue


DEFAULT_SCAN_INTERVAL_SECONDS = 180.0
DEFAULT_PROMPT_TEMPLATE = "adaptive"


@dataclass
class AutoTraderConfig:
    """Configuration for one trading identity."""
    trader_id: str = "default_trader"
    name: str = "Default Trader"
    ai_model: str = "deepseek"
    exchange: str = "binance"
    scan_interval_seconds: float = DEFAULT_SCAN_INTERVAL_SECONDS
    initial_balance: float = 0.0

    btc_eth_leverage: int = 5
    altcoin_leverage: int = 5

    # Advisory only; forwarded to the decision source as context.
    max_daily_loss: float = 0.0
    max_drawdown: float = 0.0
    stop_trading_minutes: float = 0.0

    is_cross_margin: bool = True
    default_coins: List[str] = field(default_factory=list)
    trading_coins: List[str] = field(default_factory=list)
    coin_pool_api_url: str = ""
    oi_top_api_url: str = ""

    system_prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    custom_prompt: str = ""
    override_base_prompt: bool = False

    decision_log_dir: str = ""
    user_id: str = ""
    # Venue-specific settings handed to the adapter factory untouched.
    exchange_options: Dict[str, Any] = field(default_factory=dict)
    risk: RiskPolicy = field(default_factory=RiskPolicy)

    def __post_init__(self) -> None:
        if not self.trader_id:
            self.trader_id = "default_trader"
        if not self.name:
            self.name = "Default Trader"
        if not self.exchange:
            self.exchange = "binance"
        self.exchange = normalize_venue(self.exchange)
        if not self.system_prompt_template:
            self.system_prompt_template = DEFAULT_PROMPT_TEMPLATE
        if not self.decision_log_dir:
            self.decision_log_dir = str(Path(AUTOTRADER_LOG_DIR or "decision_logs") / self.trader_id)

    def validate(self) -> None:
        """Raise ConfigurationError for settings that make an engine unusable."""
        if self.exchange not in SUPPORTED_EXCHANGES:
            raise ConfigurationError(f"Unsupported exchange: {self.exchange}")
        if self.initial_balance is None or float(self.initial_balance) <= 0:
            raise ConfigurationError(
                "initial_balance must be greater than 0; set it in trader.yaml"
            )
        if float(self.scan_interval_seconds) <= 0:
            raise ConfigurationError(
                f"scan_interval_seconds must be positive (got {self.scan_interval_seconds})"
            )
        if int(self.btc_eth_leverage) <= 0 or int(self.altcoin_leverage) <= 0:
            raise ConfigurationError("leverage settings must be positive integers")

    def leverage_for(self, symbol: str) -> int:
        return int(self.btc_eth_leverage if is_major_pair(symbol) else self.altcoin_leverage)


def config_from_dict(data: Dict[str, Any]) -> AutoTraderConfig:
    """Build a config from the parsed YAML mapping (`trader:` + `risk:`)."""
    trader = dict((data or {}).get("trader") or {})
    risk = RiskPolicy.from_dict(dict((data or {}).get("risk") or {}))
    if "id" in trader:
        trader["trader_id"] = trader.pop("id")
    known = set(AutoTraderConfig.__dataclass_fields__) - {"risk"}
    unknown = sorted(k for k in trader if k not in known)
    if unknown:
        raise ConfigurationError(f"Unknown trader config keys: {', '.join(unknown)}")
    for key in ("default_coins", "trading_coins"):
        if key in trader and isinstance(trader[key], str):
            trader[key] = [c.strip() for c in trader[key].split(",") if c.strip()]
    return AutoTraderConfig(risk=risk, **trader)


def load_config(path: Optional[str] = None) -> AutoTraderConfig:
    """Load trader.yaml (if present), apply env overrides, validate."""
    cfg_path = Path(path or AUTOTRADER_CONFIG_PATH or "trader.yaml")
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            raw = yaml.safe_load(cfg_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {cfg_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{cfg_path} must contain a mapping")
    raw = apply_env_overrides(raw)
    config = config_from_dict(raw)
    config.validate()
    return config
