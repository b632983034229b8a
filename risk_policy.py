#!/usr/bin/env python3
"""
Risk policy knobs for the execution engine.

All thresholds used by the guardrails, the protective stop engine, the
drawdown monitor and the loss-streak breaker live here so a trader config can
tune them without touching the engine. Defaults are the production values.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Tuple


FLOAT_EPSILON = 1e-6
MAJOR_PAIRS = ("BTCUSDT", "ETHUSDT")


@dataclass
class RiskPolicy:
    """Tunable risk parameters (see trader.yaml `risk:` block)."""

    # Entry gates
    min_confidence: int = 80
    float_epsilon: float = FLOAT_EPSILON

    # Mid-term entry filter (15m context)
    entry_rsi_long_max: float = 68.0
    entry_rsi_short_min: float = 32.0
    entry_ema_atr_band: float = 0.6

    # Short-term momentum filter (3m context)
    momentum_rsi_slope_tolerance: float = 0.2

    # Balance / margin sizing
    safety_buffer_floor_usd: float = 0.5
    safety_buffer_pct: float = 0.02
    min_notional_major_usd: float = 60.0
    min_notional_alt_usd: float = 12.0
    small_account_equity_usd: float = 150.0
    soft_cap_multiplier_alt: float = 1.5
    soft_cap_multiplier_major: float = 3.0
    max_risk_fraction_of_available: float = 0.8
    target_risk_pct_of_equity: float = 0.005
    target_risk_floor_usd: float = 0.5
    # Relative band around the target risk before risk_usd is normalised.
    risk_deviation_tolerance: float = 0.5
    taker_fee_rate: float = 0.0004

    # Stop distance sanity (relative to ATR)
    stop_distance_mid_atr_mult: float = 1.5
    stop_distance_price_pct: float = 0.015

    # Auto take-profit ladder (R multiples)
    auto_tp_improvement_tolerance: float = 1e-5
    auto_tp_trailing_r: float = 0.3

    # Auto stop tightening
    auto_sl_adverse_r: float = 0.4
    auto_sl_rsi_short_trigger: float = 55.0
    auto_sl_rsi_long_trigger: float = 45.0
    auto_sl_buffer_price_pct: float = 0.0008
    auto_sl_buffer_r: float = 0.15

    # Loss-streak pause schedule: streak -> minutes (streaks above the last key use it)
    loss_pause_minutes: Dict[int, float] = field(
        default_factory=lambda: {1: 0.0, 2: 45.0, 3: 24 * 60.0, 4: 72 * 60.0}
    )

    # Orchestrator housekeeping
    daily_reset_hours: float = 24.0
    balance_sync_minutes: float = 10.0
    balance_sync_drift_pct: float = 5.0
    performance_window: int = 100
    post_success_delay_seconds: float = 1.0
    monitor_interval_seconds: float = 60.0

    # Venue quantity step overrides by symbol prefix, e.g. {"SOL": 0.01}
    step_size_overrides: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskPolicy":
        """Build from a config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in (data or {}).items() if k in known}
        if "loss_pause_minutes" in kwargs:
            kwargs["loss_pause_minutes"] = {
                int(k): float(v) for k, v in dict(kwargs["loss_pause_minutes"]).items()
            }
        if "step_size_overrides" in kwargs:
            kwargs["step_size_overrides"] = {
                str(k).upper(): float(v) for k, v in dict(kwargs["step_size_overrides"]).items()
            }
        return cls(**kwargs)

    def pause_minutes_for_streak(self, streak: int) -> float:
        """Pause duration (minutes) after `streak` consecutive losses."""
        if streak <= 0 or not self.loss_pause_minutes:
            return 0.0
        ordered = sorted(self.loss_pause_minutes.items())
        minutes = 0.0
        for threshold, value in ordered:
            if streak >= threshold:
                minutes = value
        return float(minutes)


# =============================================================================
# Leverage-banded ROI profile
# =============================================================================

@dataclass(frozen=True)
class RoiProfile:
    """ROI% thresholds for one leverage bucket."""
    breakeven: float
    lock30: float
    lock50: float
    drawdown: float
    floor: float


_ROI_PROFILES: Tuple[Tuple[int, RoiProfile], ...] = (
    (2, RoiProfile(breakeven=6.0, lock30=8.0, lock50=12.0, drawdown=40.0, floor=0.7)),
    (5, RoiProfile(breakeven=3.0, lock30=6.0, lock50=10.0, drawdown=35.0, floor=2.0)),
    (10, RoiProfile(breakeven=2.0, lock30=4.0, lock50=7.0, drawdown=30.0, floor=3.0)),
)
_ROI_PROFILE_HIGH = RoiProfile(breakeven=1.5, lock30=3.0, lock50=5.0, drawdown=25.0, floor=3.5)


def roi_profile_for(leverage: int) -> RoiProfile:
    """Higher leverage buckets lock in gains sooner."""
    for max_leverage, profile in _ROI_PROFILES:
        if leverage <= max_leverage:
            return profile
    return _ROI_PROFILE_HIGH


def is_major_pair(symbol: str) -> bool:
    return str(symbol or "").strip().upper() in MAJOR_PAIRS
