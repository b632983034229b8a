#!/usr/bin/env python3
"""Entry filters, sizing clamps, step rounding and stop/TP direction checks."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import guardrails
from decision_models import OPEN_LONG, Decision
from errors import GuardrailRejection, MarketDataUnavailable
from exchanges.base import PositionSnapshot
from market_data import IntradaySeries, MarketData, TimeframeContext
from risk_policy import RiskPolicy


def _md(
    price: float = 50000.0,
    atr_mid: float = 400.0,
    ema: float = 50000.0,
    rsi_mid: float = 50.0,
    atr_long: float = 800.0,
    macd=1.0,
    rsi_series=(48.0, 50.0),
) -> MarketData:
    return MarketData(
        symbol="BTCUSDT",
        current_price=price,
        current_macd=macd,
        mid_term=TimeframeContext(atr14=atr_mid, ema20=ema, rsi7=rsi_mid),
        longer_term=TimeframeContext(atr14=atr_long),
        intraday=IntradaySeries(rsi7_values=list(rsi_series)),
    )


def _open(**kw) -> Decision:
    base = dict(
        symbol="BTCUSDT",
        action=OPEN_LONG,
        leverage=10,
        position_size_usd=2000.0,
        risk_usd=10.0,
        stop_loss=49500.0,
        take_profit=52000.0,
        confidence=85,
    )
    base.update(kw)
    return Decision(**base)


def test_confidence_gate() -> None:
    policy = RiskPolicy()
    with pytest.raises(GuardrailRejection):
        guardrails.check_confidence(_open(confidence=70), policy)
    guardrails.check_confidence(_open(confidence=80), policy)


def test_duplicate_same_side_rejected() -> None:
    positions = [PositionSnapshot("BTCUSDT", "long", 50000.0, 50000.0, 0.1)]
    with pytest.raises(GuardrailRejection):
        guardrails.check_no_duplicate("BTCUSDT", "long", positions)
    guardrails.check_no_duplicate("BTCUSDT", "short", positions)
    guardrails.check_no_duplicate("ETHUSDT", "long", positions)


def test_mid_term_filter_fails_closed_without_indicators() -> None:
    policy = RiskPolicy()
    data = _md()
    data.mid_term = None
    with pytest.raises(MarketDataUnavailable):
        guardrails.ensure_mid_term_entry_filters(data, "long", policy)
    with pytest.raises(MarketDataUnavailable):
        guardrails.ensure_mid_term_entry_filters(_md(atr_mid=0.0), "long", policy)


def test_mid_term_filter_rejects_chasing() -> None:
    policy = RiskPolicy()
    with pytest.raises(GuardrailRejection, match="RSI"):
        guardrails.ensure_mid_term_entry_filters(_md(rsi_mid=70.0), "long", policy)
    # upper band = 50000 + 0.6 * 400 = 50240
    with pytest.raises(GuardrailRejection, match="EMA20"):
        guardrails.ensure_mid_term_entry_filters(_md(price=50300.0), "long", policy)
    with pytest.raises(GuardrailRejection, match="RSI"):
        guardrails.ensure_mid_term_entry_filters(_md(rsi_mid=30.0), "short", policy)
    with pytest.raises(GuardrailRejection, match="EMA20"):
        guardrails.ensure_mid_term_entry_filters(_md(price=49700.0), "short", policy)

    guardrails.ensure_mid_term_entry_filters(_md(price=50200.0), "long", policy)
    guardrails.ensure_mid_term_entry_filters(_md(price=49800.0), "short", policy)


def test_momentum_filter() -> None:
    policy = RiskPolicy()
    with pytest.raises(MarketDataUnavailable):
        guardrails.ensure_short_term_momentum(_md(macd=None), "long", policy)
    with pytest.raises(MarketDataUnavailable):
        guardrails.ensure_short_term_momentum(_md(rsi_series=(50.0,)), "long", policy)
    with pytest.raises(GuardrailRejection, match="MACD"):
        guardrails.ensure_short_term_momentum(_md(macd=-5.0), "long", policy)
    with pytest.raises(GuardrailRejection, match="MACD"):
        guardrails.ensure_short_term_momentum(_md(macd=5.0), "short", policy)
    with pytest.raises(GuardrailRejection, match="turning up"):
        guardrails.ensure_short_term_momentum(_md(rsi_series=(50.0, 49.0)), "long", policy)
    with pytest.raises(GuardrailRejection, match="turning down"):
        guardrails.ensure_short_term_momentum(_md(macd=-1.0, rsi_series=(49.0, 50.0)), "short", policy)

    guardrails.ensure_short_term_momentum(_md(rsi_series=(50.0, 49.9)), "long", policy)
    guardrails.ensure_short_term_momentum(_md(macd=-1.0, rsi_series=(50.0, 48.0)), "short", policy)


def test_allowed_stop_distance_takes_largest_bound() -> None:
    policy = RiskPolicy()
    assert guardrails.allowed_stop_distance(_md(), policy) == pytest.approx(800.0)
    assert guardrails.allowed_stop_distance(_md(atr_long=100.0), policy) == pytest.approx(750.0)
    assert guardrails.allowed_stop_distance(_md(atr_long=100.0, atr_mid=600.0), policy) == pytest.approx(900.0)


def test_sizing_clamps_to_max_notional_and_scales_risk() -> None:
    policy = RiskPolicy()
    decision = _open()

    sized = guardrails.ensure_position_fits_balance(decision, 100.0, 1000.0, _md(), policy)

    # buffer max(0.5, 2) = 2 -> 98 usable x 10 = 980
    assert sized.position_size_usd == pytest.approx(980.0)
    assert sized.risk_usd == pytest.approx(4.9)
    assert decision.position_size_usd == 2000.0


def test_small_account_cap_is_one_times_equity() -> None:
    sized = guardrails.ensure_position_fits_balance(_open(), 100.0, 100.0, _md(), RiskPolicy())
    assert sized.position_size_usd == pytest.approx(100.0)
    assert sized.risk_usd == pytest.approx(0.5)


def test_soft_cap_for_altcoins() -> None:
    decision = _open(symbol="SOLUSDT", position_size_usd=5000.0, risk_usd=0.0, stop_loss=49500.0)
    sized = guardrails.ensure_position_fits_balance(decision, 1000.0, 1000.0, _md(), RiskPolicy())
    assert sized.position_size_usd == pytest.approx(1500.0)
    # missing risk is filled with the equity target
    assert sized.risk_usd == pytest.approx(5.0)


def test_sizing_rejections() -> None:
    policy = RiskPolicy()
    with pytest.raises(GuardrailRejection, match="leverage"):
        guardrails.ensure_position_fits_balance(_open(leverage=0), 100.0, 1000.0, _md(), policy)
    with pytest.raises(GuardrailRejection, match="fee buffer"):
        guardrails.ensure_position_fits_balance(_open(), 0.4, 1000.0, _md(), policy)
    with pytest.raises(GuardrailRejection, match="below minimum"):
        guardrails.ensure_position_fits_balance(_open(), 5.0, 1000.0, _md(), policy)
    with pytest.raises(GuardrailRejection, match="stop distance"):
        guardrails.ensure_position_fits_balance(_open(stop_loss=48000.0), 100.0, 1000.0, _md(), policy)


def test_margin_plus_fee_must_fit() -> None:
    policy = RiskPolicy()
    with pytest.raises(GuardrailRejection, match="insufficient margin"):
        guardrails.ensure_margin_available(980.0, 10, 98.0, policy)
    guardrails.ensure_margin_available(980.0, 10, 100.0, policy)


def test_step_size_heuristic_and_overrides() -> None:
    assert guardrails.estimate_step_size("BTCUSDT") == 0.001
    assert guardrails.estimate_step_size("ETHUSDT") == 0.01
    assert guardrails.estimate_step_size("DOGEUSDT") == 0.1

    policy = RiskPolicy(step_size_overrides={"SOL": 0.01, "SOLV": 1.0})
    assert guardrails.estimate_step_size("SOLUSDT", policy) == 0.01
    assert guardrails.estimate_step_size("SOLVUSDT", policy) == 1.0
    assert guardrails.round_quantity("ETHUSDT", 1.239) == pytest.approx(1.23)


def test_partial_close_thirty_percent() -> None:
    size = guardrails.partial_close_quantity("BTCUSDT", 1.0, 30.0, RiskPolicy())
    assert size.quantity == pytest.approx(0.3)
    assert size.full is False


def test_partial_close_substitutes_remainder_below_one_step() -> None:
    size = guardrails.partial_close_quantity("BTCUSDT", 1.0005, 99.99, RiskPolicy())
    assert size.full is True
    assert size.quantity == 1.0005

    one_step_left = guardrails.partial_close_quantity("BTCUSDT", 1.0, 99.95, RiskPolicy())
    assert one_step_left.full is True
    assert one_step_left.quantity == 1.0

    tiny = guardrails.partial_close_quantity("BTCUSDT", 0.0008, 50.0, RiskPolicy())
    assert tiny.full is True
    assert tiny.quantity == 0.0008


def test_partial_close_bumps_to_one_step() -> None:
    size = guardrails.partial_close_quantity("BTCUSDT", 0.005, 10.0, RiskPolicy())
    assert size.quantity == pytest.approx(0.001)
    assert size.full is False


def test_partial_close_percentage_bounds() -> None:
    with pytest.raises(GuardrailRejection):
        guardrails.partial_close_quantity("BTCUSDT", 1.0, 0.0, RiskPolicy())
    with pytest.raises(GuardrailRejection):
        guardrails.partial_close_quantity("BTCUSDT", 1.0, 150.0, RiskPolicy())


def test_stop_and_take_profit_direction() -> None:
    guardrails.validate_stop_loss_direction("long", 99.0, 100.0)
    guardrails.validate_stop_loss_direction("short", 101.0, 100.0)
    guardrails.validate_take_profit_direction("long", 110.0, 100.0)
    guardrails.validate_take_profit_direction("short", 90.0, 100.0)

    with pytest.raises(GuardrailRejection):
        guardrails.validate_stop_loss_direction("long", 100.5, 100.0)
    with pytest.raises(GuardrailRejection):
        guardrails.validate_stop_loss_direction("short", 99.5, 100.0)
    with pytest.raises(GuardrailRejection):
        guardrails.validate_take_profit_direction("long", 99.0, 100.0)
    with pytest.raises(GuardrailRejection):
        guardrails.validate_take_profit_direction("short", 101.0, 100.0)
    with pytest.raises(GuardrailRejection):
        guardrails.validate_stop_loss_direction("long", 0.0, 100.0)
