#!/usr/bin/env python3
"""
Protective stop / take-profit engine.

Two layers:
- pure candidate generators (ATR-banded and ROI-banded) reduced with
  `pick_tighter_stop` into `ratchet_target`; used by the drawdown monitor
  and after partial closes;
- per-cycle builders that synthesize `update_take_profit` /
  `update_stop_loss` decisions for positions the decision source left alone.

Nothing here talks to the exchange; the executor dispatches the results.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from decision_models import (
    AUTO_SL_TAG,
    AUTO_TP_TAG,
    UPDATE_STOP_LOSS,
    UPDATE_TAKE_PROFIT,
    Decision,
)
from exchanges.base import SIDE_LONG, normalize_side
from logging_utils import get_logger
from market_data import MarketData
from position_cache import PositionStateCache
from risk_policy import FLOAT_EPSILON, RiskPolicy, roi_profile_for

LOG = get_logger("protective_stops")

Candidate = Tuple[float, bool]

MIN_PROTECTION_BUFFER = 0.01


def protection_buffer(mark_price: float, atr: float) -> float:
    """Minimum gap between a protective stop and the live price."""
    buffer = mark_price * 0.0002
    if atr > 0:
        buffer = max(buffer, atr * 0.05)
    return max(buffer, MIN_PROTECTION_BUFFER)


def floating_gain(side: str, entry_price: float, mark_price: float) -> float:
    """Favourable price distance; 0 when the position is under water."""
    if normalize_side(side) == SIDE_LONG:
        return max(mark_price - entry_price, 0.0)
    return max(entry_price - mark_price, 0.0)


def position_roi_pct(side: str, entry_price: float, mark_price: float, leverage: int) -> float:
    if entry_price <= 0:
        return 0.0
    leverage = leverage if leverage > 0 else 1
    move = (mark_price - entry_price) / entry_price
    if normalize_side(side) != SIDE_LONG:
        move = -move
    return move * leverage * 100


def atr_stop_candidate(side: str, entry_price: float, mark_price: float, gain: float, data: Optional[MarketData]) -> Candidate:
    """Breakeven at 1 ATR, entry+0.5 ATR at 1.5 ATR, mark-2.5 ATR at 2 ATR of gain."""
    if data is None or data.mid_term is None or not data.mid_term.atr14 or data.mid_term.atr14 <= 0:
        return 0.0, False
    if gain <= 0:
        return 0.0, False
    atr = float(data.mid_term.atr14)
    is_long = normalize_side(side) == SIDE_LONG

    target = 0.0
    found = False
    if gain >= atr:
        target = entry_price
        found = True
    if gain >= 1.5 * atr:
        target = entry_price + 0.5 * atr if is_long else entry_price - 0.5 * atr
        found = True
    if gain >= 2 * atr:
        target = mark_price - 2.5 * atr if is_long else mark_price + 2.5 * atr
        found = True
    if not found:
        return 0.0, False

    buffer = protection_buffer(mark_price, atr)
    if is_long:
        target = min(target, mark_price - buffer)
    else:
        target = max(target, mark_price + buffer)
    return target, True


def roi_stop_candidate(side: str, entry_price: float, mark_price: float, leverage: int, roi_pct: float, gain: float) -> Candidate:
    """Breakeven, then lock 30% / 50% of the gained distance, with a floor gain."""
    profile = roi_profile_for(leverage)
    if roi_pct < profile.breakeven or gain <= 0:
        return 0.0, False
    leverage = leverage if leverage > 0 else 1
    is_long = normalize_side(side) == SIDE_LONG
    sign = 1.0 if is_long else -1.0

    candidate = entry_price
    if roi_pct >= profile.lock30:
        candidate = entry_price + sign * gain * 0.3
    if roi_pct >= profile.lock50:
        candidate = entry_price + sign * gain * 0.5

    if profile.floor > 0:
        floor_move = (profile.floor / 100.0) / leverage
        if is_long:
            candidate = max(candidate, entry_price * (1 + floor_move))
        else:
            candidate = min(candidate, entry_price * (1 - floor_move))

    buffer = protection_buffer(mark_price, gain)
    if is_long and candidate > mark_price - buffer:
        candidate = mark_price - buffer
    if not is_long and candidate < mark_price + buffer:
        candidate = mark_price + buffer
    return candidate, True


def pick_tighter_stop(side: str, current: float, has_current: bool, candidate: float) -> Candidate:
    """Keep whichever stop is more protective for side."""
    if candidate != candidate:  # NaN
        return current, has_current
    if not has_current:
        return candidate, True
    if normalize_side(side) == SIDE_LONG:
        if candidate > current + FLOAT_EPSILON:
            return candidate, True
    elif candidate < current - FLOAT_EPSILON:
        return candidate, True
    return current, has_current


def ratchet_target(
    side: str,
    entry_price: float,
    mark_price: float,
    leverage: int,
    data: Optional[MarketData],
    current_stop: Optional[float],
) -> Optional[float]:
    """New stop to push, or None when no candidate tightens the current one."""
    gain = floating_gain(side, entry_price, mark_price)
    if gain <= FLOAT_EPSILON:
        return None
    has_stop = current_stop is not None
    target, exists = (current_stop or 0.0), has_stop

    atr_candidate, ok = atr_stop_candidate(side, entry_price, mark_price, gain, data)
    if ok:
        target, exists = pick_tighter_stop(side, target, exists, atr_candidate)

    roi = position_roi_pct(side, entry_price, mark_price, leverage)
    roi_candidate, ok = roi_stop_candidate(side, entry_price, mark_price, leverage, roi, gain)
    if ok:
        target, exists = pick_tighter_stop(side, target, exists, roi_candidate)

    if not exists:
        return None
    if has_stop:
        if normalize_side(side) == SIDE_LONG and target <= current_stop + FLOAT_EPSILON:
            return None
        if normalize_side(side) != SIDE_LONG and target >= current_stop - FLOAT_EPSILON:
            return None
        price = data.current_price if data is not None and data.current_price > 0 else mark_price
        if abs(target - current_stop) < price * 0.0001:
            return None
    return target


# ---------------------------------------------------------------------------
# Per-cycle decision builders
# ---------------------------------------------------------------------------

def _live_price(pos, market: Dict[str, MarketData]) -> float:
    data = market.get(pos.symbol) if market else None
    if data is not None and data.current_price > 0:
        return data.current_price
    return pos.mark_price


def find_position_side(positions: Iterable, symbol: str) -> str:
    for pos in positions:
        if pos.symbol.upper() == symbol.upper() and pos.quantity > 0:
            return normalize_side(pos.side)
    return ""


def build_auto_take_profit_decisions(
    positions: Sequence,
    market: Dict[str, MarketData],
    base: Sequence[Decision],
    cache: PositionStateCache,
    policy: RiskPolicy,
) -> List[Decision]:
    """Trail take-profit outward for positions already beyond 1.5R."""
    existing = set()
    for d in base:
        if d.action != UPDATE_TAKE_PROFIT:
            continue
        side = find_position_side(positions, d.symbol) or SIDE_LONG
        existing.add(f"{d.symbol.upper()}_{side}")

    out: List[Decision] = []
    for pos in positions:
        side = normalize_side(pos.side)
        key = f"{pos.symbol.upper()}_{side}"
        if key in existing:
            continue
        stop = cache.get_stop_loss(pos.symbol, side)
        if stop is None:
            continue

        entry = pos.entry_price
        is_long = side == SIDE_LONG
        risk = entry - stop if is_long else stop - entry
        if risk <= policy.float_epsilon:
            continue

        current = _live_price(pos, market)
        favorable = current - entry if is_long else entry - current
        if favorable <= risk:
            continue

        r_multiple = favorable / risk
        if r_multiple >= 3.0:
            target_multiple = r_multiple + 0.5
        elif r_multiple >= 2.0:
            target_multiple = 3.5
        elif r_multiple >= 1.5:
            target_multiple = 2.5
        else:
            continue

        trail = policy.auto_tp_trailing_r * risk
        if is_long:
            desired = entry + target_multiple * risk
            if desired <= current:
                desired = current + trail
        else:
            desired = entry - target_multiple * risk
            if desired >= current:
                desired = current - trail

        tp = cache.get_take_profit(pos.symbol, side)
        tol = policy.auto_tp_improvement_tolerance
        if tp is not None:
            if is_long and desired <= tp * (1 + tol):
                continue
            if not is_long and desired >= tp * (1 - tol):
                continue

        out.append(Decision(
            symbol=pos.symbol,
            action=UPDATE_TAKE_PROFIT,
            new_take_profit=desired,
            reasoning=f"{AUTO_TP_TAG} floating {r_multiple:.2f}R, trailing take-profit",
        ))
        existing.add(key)
    if out:
        LOG.info(f"Synthesized {len(out)} take-profit update(s)")
    return out


def build_auto_stop_loss_decisions(
    positions: Sequence,
    market: Dict[str, MarketData],
    base: Sequence[Decision],
    cache: PositionStateCache,
    policy: RiskPolicy,
) -> List[Decision]:
    """Tighten stops on positions whose structure or momentum has failed."""
    if not positions:
        return []
    existing = {d.symbol.upper() for d in base if d.action == UPDATE_STOP_LOSS}

    out: List[Decision] = []
    for pos in positions:
        side = normalize_side(pos.side)
        key = pos.symbol.upper()
        if key in existing:
            continue
        stop = cache.get_stop_loss(pos.symbol, side)
        if not stop:
            continue

        entry = pos.entry_price
        current = _live_price(pos, market)
        is_long = side == SIDE_LONG
        if is_long:
            risk, adverse = entry - stop, entry - current
        else:
            risk, adverse = stop - entry, current - entry
        if risk <= policy.float_epsilon:
            continue

        data = market.get(pos.symbol) if market else None
        rsi = 0.0
        if data is not None and data.mid_term is not None and data.mid_term.rsi7:
            rsi = float(data.mid_term.rsi7)

        adverse_hit = adverse >= policy.auto_sl_adverse_r * risk
        if is_long:
            trigger = current < entry or adverse_hit or (0 < rsi <= policy.auto_sl_rsi_long_trigger)
        else:
            trigger = current > entry or adverse_hit or rsi >= policy.auto_sl_rsi_short_trigger
        if not trigger:
            continue

        buffer = max(current * policy.auto_sl_buffer_price_pct, risk * policy.auto_sl_buffer_r)
        eps = policy.float_epsilon
        if is_long:
            new_stop = current - buffer
            if new_stop <= stop:
                new_stop = stop + buffer * 0.5
            if new_stop >= current:
                new_stop = current - buffer
            if new_stop <= stop + eps:
                continue
        else:
            new_stop = current + buffer
            if new_stop >= stop:
                new_stop = stop - buffer * 0.5
            if new_stop <= current:
                new_stop = current + buffer
            if new_stop >= stop - eps:
                continue

        out.append(Decision(
            symbol=pos.symbol,
            action=UPDATE_STOP_LOSS,
            new_stop_loss=new_stop,
            reasoning=f"{AUTO_SL_TAG} structure/momentum failed, tightening stop",
        ))
        existing.add(key)
    if out:
        LOG.info(f"Synthesized {len(out)} stop-loss tightening(s)")
    return out
