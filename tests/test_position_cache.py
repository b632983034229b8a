#!/usr/bin/env python3
"""PositionStateCache: ratchet guard, realised PnL booking, peak / first-seen maps."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import StopRatchetViolation
from position_cache import PositionStateCache, position_key


def test_long_stop_may_not_loosen() -> None:
    cache = PositionStateCache()
    cache.store_stop_loss("BTCUSDT", "long", 95000.0)

    with pytest.raises(StopRatchetViolation) as exc:
        cache.ensure_stop_loss_tightening("BTCUSDT", "long", 94000.0)

    msg = str(exc.value)
    assert "95000.0000" in msg
    assert "94000.0000" in msg
    assert exc.value.previous == 95000.0
    assert exc.value.proposed == 94000.0

    cache.ensure_stop_loss_tightening("BTCUSDT", "long", 96000.0)


def test_short_stop_may_not_loosen() -> None:
    cache = PositionStateCache()
    cache.store_stop_loss("ETHUSDT", "short", 3100.0)

    with pytest.raises(StopRatchetViolation):
        cache.ensure_stop_loss_tightening("ETHUSDT", "short", 3150.0)
    cache.ensure_stop_loss_tightening("ETHUSDT", "short", 3050.0)


def test_first_stop_write_always_passes() -> None:
    cache = PositionStateCache()
    cache.ensure_stop_loss_tightening("SOLUSDT", "long", 1.0)
    cache.ensure_stop_loss_tightening("SOLUSDT", "short", 1000.0)


def test_realize_partial_then_full_close() -> None:
    cache = PositionStateCache()
    cache.store_meta("BTCUSDT", "long", 100.0, 1.0)
    cache.store_stop_loss("BTCUSDT", "long", 95.0)
    cache.store_take_profit("BTCUSDT", "long", 120.0)

    first = cache.realize("BTCUSDT", "long", 0.3, 110.0)
    assert first is not None
    assert first.pnl == pytest.approx(3.0)
    assert first.remaining_quantity == pytest.approx(0.7)
    assert cache.get_quantity("BTCUSDT", "long") == pytest.approx(0.7)
    assert cache.get_stop_loss("BTCUSDT", "long") == 95.0

    second = cache.realize("BTCUSDT", "long", 0.7, 90.0)
    assert second is not None
    assert second.pnl == pytest.approx(-7.0)
    assert second.remaining_quantity == 0.0
    assert cache.get_meta("BTCUSDT", "long") is None
    assert cache.get_stop_loss("BTCUSDT", "long") is None
    assert cache.get_take_profit("BTCUSDT", "long") is None


def test_realize_short_and_unknown_position() -> None:
    cache = PositionStateCache()
    cache.store_meta("ETHUSDT", "short", 3000.0, 2.0)

    closed = cache.realize("ETHUSDT", "short", 2.0, 2900.0)
    assert closed is not None
    assert closed.pnl == pytest.approx(200.0)
    assert cache.realize("ETHUSDT", "short", 1.0, 2900.0) is None


def test_store_meta_ignores_empty_quantity() -> None:
    cache = PositionStateCache()
    cache.store_meta("BTCUSDT", "long", 100.0, 0.0)
    assert cache.get_meta("BTCUSDT", "long") is None


def test_peak_pnl_keeps_maximum() -> None:
    cache = PositionStateCache()
    assert cache.update_peak_pnl("BTCUSDT", "long", 4.0) == 4.0
    assert cache.update_peak_pnl("BTCUSDT", "long", 2.0) == 4.0
    assert cache.update_peak_pnl("BTCUSDT", "long", 6.5) == 6.5
    assert cache.peak_pnl_snapshot() == {"BTCUSDT_long": 6.5}

    cache.clear_peak_pnl("BTCUSDT", "long")
    assert cache.get_peak_pnl("BTCUSDT", "long") is None


def test_first_seen_and_prune() -> None:
    cache = PositionStateCache()
    assert cache.mark_first_seen("BTCUSDT", "long", 1000) == 1000
    assert cache.mark_first_seen("BTCUSDT", "long", 2000) == 1000
    assert cache.mark_first_seen("BTCUSDT", "long", 3000, overwrite=True) == 3000
    cache.mark_first_seen("ETHUSDT", "short", 500)

    cache.prune_first_seen([position_key("ETHUSDT", "short")])
    assert cache.first_seen("BTCUSDT", "long") is None
    assert cache.first_seen("ETHUSDT", "short") == 500


if __name__ == "__main__":
    test_long_stop_may_not_loosen()
    print("[PASS] long ratchet")
    test_realize_partial_then_full_close()
    print("[PASS] realize")
