#!/usr/bin/env python3
"""
Pre-trade and pre-update validation.

Stateless functions: every check takes the decision, the data it needs and
the RiskPolicy, and either returns (possibly an adjusted value) or raises
GuardrailRejection / MarketDataUnavailable. Missing indicators fail closed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from decision_models import Decision
from errors import GuardrailRejection, MarketDataUnavailable
from exchanges.base import SIDE_LONG, SIDE_SHORT, PositionSnapshot, normalize_side
from logging_utils import get_logger
from market_data import MarketData
from risk_policy import RiskPolicy, is_major_pair

LOG = get_logger("guardrails")

MIN_STEP_SIZE = 0.000001


# ---------------------------------------------------------------------------
# Entry gates
# ---------------------------------------------------------------------------

def check_confidence(decision: Decision, policy: RiskPolicy) -> None:
    if decision.confidence < policy.min_confidence:
        raise GuardrailRejection(
            f"{decision.symbol}: confidence {decision.confidence} below minimum {policy.min_confidence}"
        )


def check_no_duplicate(symbol: str, side: str, positions: Iterable[PositionSnapshot]) -> None:
    """Reject an open that would stack onto an existing same-side position."""
    side = normalize_side(side)
    for pos in positions:
        if pos.symbol == symbol and pos.side == side and pos.quantity > 0:
            raise GuardrailRejection(
                f"{symbol} already has a {side} position ({pos.quantity:g}); close it before opening again"
            )


def ensure_mid_term_entry_filters(data: Optional[MarketData], direction: str, policy: RiskPolicy) -> None:
    """15m RSI / EMA20 +- k*ATR band filter."""
    if data is None or data.mid_term is None:
        raise MarketDataUnavailable(f"mid-term indicators missing; cannot validate {direction} entry")
    mt = data.mid_term
    if not mt.atr14 or mt.atr14 <= 0 or not mt.ema20 or not mt.rsi7 or mt.rsi7 <= 0:
        raise MarketDataUnavailable(f"mid-term indicators not ready; rejecting {direction} entry")

    price = data.current_price
    band = policy.entry_ema_atr_band * mt.atr14
    direction = normalize_side(direction)
    if direction == SIDE_LONG:
        upper = mt.ema20 + band
        if mt.rsi7 > policy.entry_rsi_long_max:
            raise GuardrailRejection(
                f"mid-term RSI(7)={mt.rsi7:.2f} above {policy.entry_rsi_long_max:g}; not chasing long"
            )
        if price > upper:
            raise GuardrailRejection(
                f"price {price:.4f} above EMA20+{policy.entry_ema_atr_band:g}ATR ({upper:.4f}); not chasing long"
            )
    else:
        lower = mt.ema20 - band
        if mt.rsi7 < policy.entry_rsi_short_min:
            raise GuardrailRejection(
                f"mid-term RSI(7)={mt.rsi7:.2f} below {policy.entry_rsi_short_min:g}; not chasing short"
            )
        if price < lower:
            raise GuardrailRejection(
                f"price {price:.4f} below EMA20-{policy.entry_ema_atr_band:g}ATR ({lower:.4f}); not chasing short"
            )


def ensure_short_term_momentum(data: Optional[MarketData], direction: str, policy: RiskPolicy) -> None:
    """3m MACD sign plus RSI(7) slope confirmation."""
    if data is None or data.current_macd is None:
        raise MarketDataUnavailable(f"short-term MACD missing; cannot validate {direction} momentum")
    series = data.intraday.rsi7_values if data.intraday else []
    if len(series) < 2:
        raise MarketDataUnavailable(f"short-term RSI series not ready; cannot validate {direction} momentum")

    eps = policy.float_epsilon
    macd = float(data.current_macd)
    direction = normalize_side(direction)
    if direction == SIDE_LONG and macd < -eps:
        raise GuardrailRejection(f"short-term MACD={macd:.4f} still negative; momentum not long")
    if direction == SIDE_SHORT and macd > eps:
        raise GuardrailRejection(f"short-term MACD={macd:.4f} still positive; momentum not short")

    prev, last = series[-2], series[-1]
    slope = last - prev
    tol = policy.momentum_rsi_slope_tolerance
    if direction == SIDE_LONG and slope < -tol:
        raise GuardrailRejection(f"short-term RSI not turning up ({prev:.2f} -> {last:.2f})")
    if direction == SIDE_SHORT and slope > tol:
        raise GuardrailRejection(f"short-term RSI not turning down ({prev:.2f} -> {last:.2f})")


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------

def allowed_stop_distance(data: Optional[MarketData], policy: RiskPolicy) -> float:
    """Largest acceptable entry-to-stop distance.

    Max of long-horizon ATR14, k * mid-horizon ATR14 and a percentage of
    price, over whichever of those are available.
    """
    if data is None:
        raise MarketDataUnavailable("market data missing; cannot compute stop distance")
    candidates = []
    if data.longer_term is not None and data.longer_term.atr14 and data.longer_term.atr14 > 0:
        candidates.append(float(data.longer_term.atr14))
    if data.mid_term is not None and data.mid_term.atr14 and data.mid_term.atr14 > 0:
        candidates.append(float(data.mid_term.atr14) * policy.stop_distance_mid_atr_mult)
    if data.current_price > 0:
        candidates.append(data.current_price * policy.stop_distance_price_pct)
    allowed = max(candidates) if candidates else 0.0
    if allowed <= 0:
        raise MarketDataUnavailable("ATR unavailable; cannot compute stop distance")
    return allowed


def _scale(decision: Decision, cap: float, reason: str) -> Decision:
    ratio = cap / decision.position_size_usd
    LOG.info(f"{reason}: {decision.symbol} notional {decision.position_size_usd:.2f} -> {cap:.2f} USDT")
    risk = decision.risk_usd * ratio if decision.risk_usd > 0 else decision.risk_usd
    return replace(decision, position_size_usd=cap, risk_usd=risk)


def ensure_position_fits_balance(
    decision: Decision,
    available: float,
    equity: float,
    data: Optional[MarketData],
    policy: RiskPolicy,
) -> Decision:
    """Validate an open against balance and return the clamped decision.

    Clamps, in order: small-account (1x equity) or soft cap (equity x
    multiplier), then the hard max notional. Each clamp scales risk_usd by
    the same ratio. risk_usd is then capped against available balance and
    normalised toward the equity-based target.
    """
    eps = policy.float_epsilon
    if decision.leverage <= 0:
        raise GuardrailRejection(f"{decision.symbol}: leverage not set; cannot size margin")

    buffer = max(policy.safety_buffer_floor_usd, available * policy.safety_buffer_pct)
    usable = available - buffer
    if usable <= 0:
        raise GuardrailRejection(f"available balance {available:.2f} USDT does not cover fee buffer {buffer:.2f}")

    major = is_major_pair(decision.symbol)
    max_notional = usable * decision.leverage
    min_notional = policy.min_notional_major_usd if major else policy.min_notional_alt_usd
    if max_notional < min_notional:
        raise GuardrailRejection(
            f"balance supports only {max_notional:.2f} USDT notional, below minimum {min_notional:.2f}"
        )
    max_risk = available * policy.max_risk_fraction_of_available

    allowed = allowed_stop_distance(data, policy)
    distance = abs(decision.stop_loss - data.current_price)
    if distance > allowed:
        raise GuardrailRejection(
            f"{decision.symbol}: stop distance {distance:.4f} exceeds allowed {allowed:.4f}"
        )

    adjusted = decision
    if eps < equity < policy.small_account_equity_usd:
        if adjusted.position_size_usd > equity:
            adjusted = _scale(adjusted, equity, f"small-account cap (equity {equity:.2f})")
    elif equity > eps:
        multiplier = policy.soft_cap_multiplier_major if major else policy.soft_cap_multiplier_alt
        soft_cap = equity * multiplier
        if soft_cap > eps and adjusted.position_size_usd > soft_cap:
            adjusted = _scale(adjusted, soft_cap, f"soft cap (equity {equity:.2f} x {multiplier:g})")

    if adjusted.position_size_usd > max_notional:
        adjusted = _scale(adjusted, max_notional, f"hard cap (available {available:.2f})")

    if adjusted.risk_usd > 0 and adjusted.risk_usd > max_risk:
        LOG.warning(f"{decision.symbol}: risk {adjusted.risk_usd:.2f} above {max_risk:.2f}; capping")
        adjusted = replace(adjusted, risk_usd=max_risk)

    if equity > eps:
        target = max(equity * policy.target_risk_pct_of_equity, policy.target_risk_floor_usd)
        if adjusted.risk_usd <= 0:
            adjusted = replace(adjusted, risk_usd=target)
        elif abs(adjusted.risk_usd - target) > target * policy.risk_deviation_tolerance:
            LOG.warning(f"{decision.symbol}: risk {adjusted.risk_usd:.2f} -> {target:.2f} (equity {equity:.2f})")
            adjusted = replace(adjusted, risk_usd=target)

    return adjusted


def ensure_margin_available(notional: float, leverage: int, available: float, policy: RiskPolicy) -> None:
    """Initial margin plus estimated taker fee must fit in available balance."""
    margin = notional / max(int(leverage), 1)
    fee = notional * policy.taker_fee_rate
    required = margin + fee
    if required > available:
        raise GuardrailRejection(
            f"insufficient margin: need {required:.2f} USDT (margin {margin:.2f} + fee {fee:.2f}), "
            f"available {available:.2f}"
        )


# ---------------------------------------------------------------------------
# Quantity steps
# ---------------------------------------------------------------------------

def estimate_step_size(symbol: str, policy: Optional[RiskPolicy] = None) -> float:
    """Venue quantity step by symbol prefix; overrides win, longest prefix first."""
    upper = symbol.upper()
    overrides = policy.step_size_overrides if policy else {}
    for prefix in sorted(overrides, key=len, reverse=True):
        if upper.startswith(prefix):
            return float(overrides[prefix])
    if upper.startswith("BTC"):
        return 0.001
    if upper.startswith("ETH"):
        return 0.01
    return 0.1


def round_quantity(symbol: str, qty: float, policy: Optional[RiskPolicy] = None) -> float:
    """Floor qty to the step grid."""
    step = estimate_step_size(symbol, policy)
    if step <= 0:
        step = MIN_STEP_SIZE
    steps = math.floor(qty / step + 1e-9)
    return round(steps * step, 12)


@dataclass
class PartialCloseSize:
    quantity: float
    step: float
    full: bool


def partial_close_quantity(symbol: str, total: float, percentage: float, policy: RiskPolicy) -> PartialCloseSize:
    """Step-rounded quantity for a percentage close of `total`."""
    eps = policy.float_epsilon
    if percentage <= 0 or percentage > 100:
        raise GuardrailRejection(f"close_percentage must be in (0, 100], got {percentage:.1f}")
    step = estimate_step_size(symbol, policy)
    qty = total * percentage / 100.0
    if qty < step:
        if total <= step + eps:
            return PartialCloseSize(quantity=total, step=step, full=True)
        LOG.warning(f"{symbol}: partial close {qty:.6f} below step {step:g}; using one step")
        qty = step
    qty = round_quantity(symbol, qty, policy)
    if qty <= 0:
        raise GuardrailRejection(f"{symbol}: close quantity rounds to 0 (step {step:g})")
    if total - qty <= step + eps:
        return PartialCloseSize(quantity=total, step=step, full=True)
    return PartialCloseSize(quantity=qty, step=step, full=False)


# ---------------------------------------------------------------------------
# Stop / take-profit direction
# ---------------------------------------------------------------------------

def validate_stop_loss_direction(side: str, new_stop: float, price: float) -> None:
    side = normalize_side(side)
    if new_stop <= 0:
        raise GuardrailRejection(f"invalid stop-loss price {new_stop}")
    if side == SIDE_LONG and new_stop >= price:
        raise GuardrailRejection(f"long stop-loss must be below price (price {price:.4f}, stop {new_stop:.4f})")
    if side == SIDE_SHORT and new_stop <= price:
        raise GuardrailRejection(f"short stop-loss must be above price (price {price:.4f}, stop {new_stop:.4f})")


def validate_take_profit_direction(side: str, new_tp: float, price: float) -> None:
    side = normalize_side(side)
    if new_tp <= 0:
        raise GuardrailRejection(f"invalid take-profit price {new_tp}")
    if side == SIDE_LONG and new_tp <= price:
        raise GuardrailRejection(f"long take-profit must be above price (price {price:.4f}, tp {new_tp:.4f})")
    if side == SIDE_SHORT and new_tp >= price:
        raise GuardrailRejection(f"short take-profit must be below price (price {price:.4f}, tp {new_tp:.4f})")
