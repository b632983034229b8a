#!/usr/bin/env python3
"""Executor handlers against the paper venue."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from decision_models import (
    CLOSE_LONG,
    HOLD,
    OPEN_LONG,
    PARTIAL_CLOSE,
    UPDATE_STOP_LOSS,
    UPDATE_TAKE_PROFIT,
    Decision,
)
from errors import ExchangeError
from exchanges.paper import PaperExchangeAdapter
from executor import ExecutionConfig, Executor
from market_data import IntradaySeries, MarketData, StaticMarketDataProvider, TimeframeContext


def _md(symbol: str = "BTCUSDT", price: float = 50000.0) -> MarketData:
    return MarketData(
        symbol=symbol,
        current_price=price,
        current_macd=1.0,
        mid_term=TimeframeContext(atr14=400.0, ema20=price, rsi7=50.0),
        longer_term=TimeframeContext(atr14=800.0),
        intraday=IntradaySeries(rsi7_values=[48.0, 50.0]),
    )


def _build(price: float = 50000.0, wallet: float = 1000.0):
    adapter = PaperExchangeAdapter(wallet_balance=wallet, marks={"BTCUSDT": price})
    market = StaticMarketDataProvider({"BTCUSDT": _md(price=price)})
    executor = Executor(adapter, market, config=ExecutionConfig(btc_eth_leverage=5, altcoin_leverage=3))
    return executor, adapter, market


def _open_long(**kw) -> Decision:
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


@pytest.mark.asyncio
async def test_open_long_places_order_and_protection() -> None:
    executor, adapter, _ = _build()

    record = await executor.execute(_open_long())

    assert record.success is True, record.error
    assert record.quantity == pytest.approx(0.04)
    assert record.price == 50000.0
    assert record.leverage == 10
    assert record.order_id == "1"
    assert adapter.call_names() == [
        "get_positions",
        "get_balance",
        "set_margin_mode",
        "open_long",
        "set_stop_loss",
        "set_take_profit",
    ]
    assert executor.cache.get_quantity("BTCUSDT", "long") == pytest.approx(0.04)
    assert executor.cache.get_stop_loss("BTCUSDT", "long") == 49500.0
    assert executor.cache.get_take_profit("BTCUSDT", "long") == 52000.0
    assert executor.cache.first_seen("BTCUSDT", "long") is not None


@pytest.mark.asyncio
async def test_open_uses_configured_leverage_when_unset() -> None:
    executor, adapter, _ = _build()

    record = await executor.execute(_open_long(leverage=0))

    assert record.success is True, record.error
    assert record.leverage == 5
    assert adapter.positions[("BTCUSDT", "long")].leverage == 5


@pytest.mark.asyncio
async def test_margin_mode_failure_is_not_fatal() -> None:
    executor, adapter, _ = _build()
    adapter.fail_next("set_margin_mode")

    record = await executor.execute(_open_long())

    assert record.success is True
    assert "open_long" in adapter.call_names()


@pytest.mark.asyncio
async def test_stop_loss_cached_only_on_success() -> None:
    executor, adapter, _ = _build()
    adapter.fail_next("set_stop_loss")

    record = await executor.execute(_open_long())

    assert record.success is True
    assert executor.cache.get_stop_loss("BTCUSDT", "long") is None
    assert executor.cache.get_take_profit("BTCUSDT", "long") == 52000.0


@pytest.mark.asyncio
async def test_open_rejected_for_duplicate_and_low_confidence() -> None:
    executor, adapter, _ = _build()
    adapter.seed_position("BTCUSDT", "long", 0.01, 50000.0)

    dup = await executor.execute(_open_long())
    assert dup.success is False
    assert "already has" in dup.error

    low = await executor.execute(_open_long(confidence=50))
    assert low.success is False
    assert "confidence" in low.error
    assert "open_long" not in adapter.call_names()


@pytest.mark.asyncio
async def test_unknown_action_and_hold() -> None:
    executor, adapter, _ = _build()

    bad = await executor.execute(Decision(symbol="BTCUSDT", action="teleport"))
    assert bad.success is False
    assert "Unknown action" in bad.error

    noop = await executor.execute(Decision(symbol="BTCUSDT", action=HOLD))
    assert noop.success is True
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_close_books_pnl_and_feeds_breaker() -> None:
    executor, adapter, market = _build(price=49000.0)
    adapter.seed_position("BTCUSDT", "long", 0.04, 50000.0)
    executor.cache.store_meta("BTCUSDT", "long", 50000.0, 0.04)
    executor.cache.update_peak_pnl("BTCUSDT", "long", 3.0)

    record = await executor.execute(Decision(symbol="BTCUSDT", action=CLOSE_LONG))

    assert record.success is True, record.error
    assert record.quantity == pytest.approx(0.04)
    assert record.realized_pnl == pytest.approx(-40.0)
    assert executor.breaker.consecutive_losses == 1
    assert executor.cache.get_meta("BTCUSDT", "long") is None
    assert executor.cache.get_peak_pnl("BTCUSDT", "long") is None
    assert ("BTCUSDT", "long") not in adapter.positions


@pytest.mark.asyncio
async def test_partial_close_then_ratchets_remaining_stop() -> None:
    executor, adapter, _ = _build(price=51000.0)
    adapter.seed_position("BTCUSDT", "long", 1.0, 50000.0, leverage=10)
    executor.cache.store_meta("BTCUSDT", "long", 50000.0, 1.0)

    record = await executor.execute(
        Decision(symbol="BTCUSDT", action=PARTIAL_CLOSE, close_percentage=30.0)
    )

    assert record.success is True, record.error
    assert record.quantity == pytest.approx(0.3)
    assert record.realized_pnl == pytest.approx(300.0)
    assert adapter.positions[("BTCUSDT", "long")].quantity == pytest.approx(0.7)
    assert executor.cache.get_quantity("BTCUSDT", "long") == pytest.approx(0.7)
    # ROI 20% at 10x locks half of the 1000 gain
    assert executor.cache.get_stop_loss("BTCUSDT", "long") == pytest.approx(50500.0)
    assert adapter.trigger_price("BTCUSDT", "long", "sl") == pytest.approx(50500.0)


@pytest.mark.asyncio
async def test_partial_close_requires_position_and_valid_percentage() -> None:
    executor, _, _ = _build()

    missing = await executor.execute(Decision(symbol="BTCUSDT", action=PARTIAL_CLOSE, close_percentage=50.0))
    assert missing.success is False
    assert "No open position" in missing.error

    bad = await executor.execute(Decision(symbol="BTCUSDT", action=PARTIAL_CLOSE, close_percentage=120.0))
    assert bad.success is False


@pytest.mark.asyncio
async def test_update_stop_loss_respects_ratchet() -> None:
    executor, adapter, _ = _build()
    adapter.seed_position("BTCUSDT", "long", 1.0, 50000.0)
    executor.cache.store_stop_loss("BTCUSDT", "long", 49000.0)

    looser = await executor.execute(Decision(symbol="BTCUSDT", action=UPDATE_STOP_LOSS, new_stop_loss=48000.0))
    assert looser.success is False
    assert "49000.0000" in looser.error
    assert "set_stop_loss" not in adapter.call_names()

    adapter.fail_next("cancel_stop_orders")
    tighter = await executor.execute(Decision(symbol="BTCUSDT", action=UPDATE_STOP_LOSS, new_stop_loss=49500.0))
    assert tighter.success is True, tighter.error
    assert executor.cache.get_stop_loss("BTCUSDT", "long") == 49500.0
    assert adapter.trigger_price("BTCUSDT", "long", "sl") == 49500.0


@pytest.mark.asyncio
async def test_update_stop_loss_wrong_side_of_price() -> None:
    executor, adapter, _ = _build()
    adapter.seed_position("BTCUSDT", "long", 1.0, 50000.0)

    record = await executor.execute(Decision(symbol="BTCUSDT", action=UPDATE_STOP_LOSS, new_stop_loss=50500.0))

    assert record.success is False
    assert executor.cache.get_stop_loss("BTCUSDT", "long") is None


@pytest.mark.asyncio
async def test_update_take_profit() -> None:
    executor, adapter, _ = _build()
    adapter.seed_position("BTCUSDT", "long", 1.0, 50000.0)

    record = await executor.execute(Decision(symbol="BTCUSDT", action=UPDATE_TAKE_PROFIT, new_take_profit=52000.0))
    assert record.success is True, record.error
    assert executor.cache.get_take_profit("BTCUSDT", "long") == 52000.0

    adapter.fail_next("set_take_profit")
    failed = await executor.execute(Decision(symbol="BTCUSDT", action=UPDATE_TAKE_PROFIT, new_take_profit=53000.0))
    assert failed.success is False
    assert executor.cache.get_take_profit("BTCUSDT", "long") == 52000.0


@pytest.mark.asyncio
async def test_emergency_close_raises_on_venue_failure() -> None:
    executor, adapter, _ = _build()
    adapter.seed_position("BTCUSDT", "long", 1.0, 50000.0)
    adapter.fail_next("close_long")

    with pytest.raises(ExchangeError):
        await executor.emergency_close("BTCUSDT", "long")
    assert ("BTCUSDT", "long") in adapter.positions


class _SlowStopAdapter(PaperExchangeAdapter):
    """Delays the venue ack for one stop price so updates overlap."""

    def __init__(self, slow_price: float, **kw):
        super().__init__(**kw)
        self.slow_price = slow_price

    async def set_stop_loss(self, symbol, side, quantity, price):
        if price == self.slow_price:
            await asyncio.sleep(0.05)
        await super().set_stop_loss(symbol, side, quantity, price)


@pytest.mark.asyncio
async def test_concurrent_stop_updates_never_loosen() -> None:
    adapter = _SlowStopAdapter(95.0, wallet_balance=1000.0, marks={"SOLUSDT": 100.0})
    adapter.seed_position("SOLUSDT", "long", 10.0, 90.0)
    market = StaticMarketDataProvider({"SOLUSDT": _md("SOLUSDT", 100.0)})
    executor = Executor(adapter, market)
    executor.cache.store_stop_loss("SOLUSDT", "long", 90.0)

    slow, fast = await asyncio.gather(
        executor.execute(Decision(symbol="SOLUSDT", action=UPDATE_STOP_LOSS, new_stop_loss=95.0)),
        executor.execute(Decision(symbol="SOLUSDT", action=UPDATE_STOP_LOSS, new_stop_loss=97.0)),
    )

    assert slow.success is True, slow.error
    assert fast.success is True, fast.error
    assert executor.cache.get_stop_loss("SOLUSDT", "long") == 97.0
    assert adapter.trigger_price("SOLUSDT", "long", "sl") == 97.0


@pytest.mark.asyncio
async def test_open_resets_state_left_by_previous_position() -> None:
    executor, adapter, _ = _build()
    executor.cache.update_peak_pnl("BTCUSDT", "long", 20.0)
    executor.cache.store_stop_loss("BTCUSDT", "long", 49900.0)

    record = await executor.execute(_open_long())

    assert record.success is True, record.error
    assert executor.cache.get_peak_pnl("BTCUSDT", "long") is None
    assert executor.cache.get_stop_loss("BTCUSDT", "long") == 49500.0
