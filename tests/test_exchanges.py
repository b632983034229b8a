#!/usr/bin/env python3
"""Adapter boundary parsing, venue aliases and the adapter registry."""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import ConfigurationError, ExchangeError
from exchanges import (
    Balance,
    PaperExchangeAdapter,
    PositionSnapshot,
    create_adapter,
    normalize_side,
    register_adapter,
    unregister_adapter,
)
from venues import VENUE_BINANCE, VENUE_HYPERLIQUID, VENUE_PAPER, normalize_venue


def test_balance_from_payload() -> None:
    bal = Balance.from_payload({
        "availableBalance": "812.5",
        "totalWalletBalance": "1000",
        "totalUnrealizedProfit": "-12.5",
    })
    assert bal.available == 812.5
    assert bal.wallet == 1000.0
    assert bal.equity == 987.5

    only_available = Balance.from_payload({"available_balance": 50})
    assert only_available.equity == 50.0

    with pytest.raises(ExchangeError):
        Balance.from_payload(["not", "a", "dict"])


def test_position_from_signed_amount() -> None:
    pos = PositionSnapshot.from_payload({
        "symbol": "ETHUSDT",
        "positionAmt": "-0.5",
        "positionSide": "BOTH",
        "entryPrice": "3000",
        "markPrice": "2940",
        "leverage": "5",
        "unRealizedProfit": "30",
        "liquidationPrice": "3500",
    })
    assert pos.side == "short"
    assert pos.quantity == 0.5
    assert pos.leverage == 5
    assert pos.unrealized_pnl_pct == pytest.approx(2.0)
    assert pos.margin_used == pytest.approx(0.5 * 2940 / 5)
    assert pos.roi_pct() == pytest.approx(10.0)
    assert pos.key == "ETHUSDT_short"

    with pytest.raises(ExchangeError):
        PositionSnapshot.from_payload({"positionAmt": "1"})


def test_position_defaults_missing_leverage() -> None:
    pos = PositionSnapshot("BTCUSDT", "buy", 100.0, 100.0, 1.0, leverage=0)
    assert pos.side == "long"
    assert pos.leverage == 10


def test_normalize_side_rejects_garbage() -> None:
    assert normalize_side("SELL") == "short"
    with pytest.raises(ValueError):
        normalize_side("sideways")


def test_normalize_venue_aliases() -> None:
    assert normalize_venue("Binance_Futures") == VENUE_BINANCE
    assert normalize_venue("hl") == VENUE_HYPERLIQUID
    assert normalize_venue("dry-run") == VENUE_PAPER
    assert normalize_venue("") == ""


def test_registry_builds_paper_and_rejects_unknown() -> None:
    adapter = create_adapter("sim", {"wallet_balance": 250})
    assert isinstance(adapter, PaperExchangeAdapter)
    assert adapter.wallet_balance == 250.0

    with pytest.raises(ConfigurationError, match="Unsupported"):
        create_adapter("kraken")
    with pytest.raises(ConfigurationError, match="No adapter registered"):
        create_adapter("aster")


def test_register_custom_adapter() -> None:
    built = []

    def _factory(options, log):
        built.append(options)
        return PaperExchangeAdapter(log, wallet_balance=options["wallet_balance"])

    register_adapter("binance", _factory)
    try:
        adapter = create_adapter("binance_futures", {"wallet_balance": 42})
    finally:
        unregister_adapter("binance")

    assert adapter.wallet_balance == 42.0
    assert built == [{"wallet_balance": 42}]
    with pytest.raises(ConfigurationError):
        create_adapter("binance")
    with pytest.raises(ConfigurationError):
        register_adapter("kraken", _factory)


def test_paper_venue_round_trip() -> None:
    adapter = PaperExchangeAdapter(wallet_balance=1000.0, marks={"BTCUSDT": 100.0})

    async def _run():
        await adapter.open_long("BTCUSDT", 2.0, 5)
        adapter.set_mark("BTCUSDT", 110.0)
        bal = await adapter.get_balance()
        closed = await adapter.close_long("BTCUSDT", 0.5)
        positions = await adapter.get_positions()
        return bal, closed, positions

    bal, closed, positions = asyncio.run(_run())

    assert bal.unrealized == pytest.approx(20.0)
    assert closed.quantity == 0.5
    assert adapter.wallet_balance == pytest.approx(1005.0)
    assert positions[0].quantity == pytest.approx(1.5)

    with pytest.raises(ExchangeError):
        asyncio.run(adapter.close_short("BTCUSDT"))
