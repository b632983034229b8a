#!/usr/bin/env python3
"""
Per-(symbol, side) state the exchange does not expose.

Three lock families, each with short critical sections:
- meta / stop-loss / take-profit (intent history of what we opened and pushed)
- peak ROI per open position (drawdown monitor)
- first-seen timestamps (context building)

Callers never hold one of these locks across an await.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from errors import StopRatchetViolation
from exchanges.base import SIDE_LONG, normalize_side
from risk_policy import FLOAT_EPSILON


def position_key(symbol: str, side: str) -> str:
    return f"{symbol}_{normalize_side(side)}"


@dataclass
class PositionMeta:
    side: str
    entry_price: float
    quantity: float


@dataclass
class RealizedClose:
    """Result of booking a (partial) close against cached meta."""
    entry_price: float
    closed_quantity: float
    remaining_quantity: float
    pnl: float


class PositionStateCache:
    """Concurrency-safe cache owned by one engine instance."""

    def __init__(self, epsilon: float = FLOAT_EPSILON):
        self.epsilon = float(epsilon)
        self._meta_lock = threading.Lock()
        self._meta: Dict[str, PositionMeta] = {}
        self._stop_loss: Dict[str, float] = {}
        self._take_profit: Dict[str, float] = {}

        self._peak_lock = threading.Lock()
        self._peak_pnl: Dict[str, float] = {}

        self._seen_lock = threading.Lock()
        self._first_seen: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Position meta
    # ------------------------------------------------------------------

    def store_meta(self, symbol: str, side: str, entry_price: float, quantity: float) -> None:
        if quantity <= 0:
            return
        key = position_key(symbol, side)
        with self._meta_lock:
            self._meta[key] = PositionMeta(
                side=normalize_side(side),
                entry_price=float(entry_price),
                quantity=float(quantity),
            )

    def get_meta(self, symbol: str, side: str) -> Optional[PositionMeta]:
        key = position_key(symbol, side)
        with self._meta_lock:
            meta = self._meta.get(key)
            if meta is None:
                return None
            return PositionMeta(meta.side, meta.entry_price, meta.quantity)

    def get_quantity(self, symbol: str, side: str) -> float:
        """Cached quantity, 0.0 when unknown."""
        meta = self.get_meta(symbol, side)
        return meta.quantity if meta else 0.0

    def realize(self, symbol: str, side: str, closed_quantity: float, close_price: float) -> Optional[RealizedClose]:
        """Decrement cached quantity and compute signed PnL for the closed slice.

        When the remainder drops below epsilon the meta, stop-loss and
        take-profit entries are all dropped. Returns None when nothing is
        cached for the position (PnL unknown).
        """
        if closed_quantity <= 0:
            return None
        key = position_key(symbol, side)
        with self._meta_lock:
            meta = self._meta.get(key)
            if meta is None:
                return None
            entry = meta.entry_price
            remaining = meta.quantity - closed_quantity
            if remaining < self.epsilon:
                del self._meta[key]
                self._stop_loss.pop(key, None)
                self._take_profit.pop(key, None)
                remaining = 0.0
            else:
                meta.quantity = remaining

        if normalize_side(side) == SIDE_LONG:
            pnl = (close_price - entry) * closed_quantity
        else:
            pnl = (entry - close_price) * closed_quantity
        return RealizedClose(
            entry_price=entry,
            closed_quantity=float(closed_quantity),
            remaining_quantity=remaining,
            pnl=pnl,
        )

    def forget(self, symbol: str, side: str) -> None:
        key = position_key(symbol, side)
        with self._meta_lock:
            self._meta.pop(key, None)
            self._stop_loss.pop(key, None)
            self._take_profit.pop(key, None)

    # ------------------------------------------------------------------
    # Stop-loss / take-profit
    # ------------------------------------------------------------------

    def store_stop_loss(self, symbol: str, side: str, price: float) -> None:
        key = position_key(symbol, side)
        with self._meta_lock:
            self._stop_loss[key] = float(price)

    def get_stop_loss(self, symbol: str, side: str) -> Optional[float]:
        key = position_key(symbol, side)
        with self._meta_lock:
            return self._stop_loss.get(key)

    def store_take_profit(self, symbol: str, side: str, price: float) -> None:
        key = position_key(symbol, side)
        with self._meta_lock:
            self._take_profit[key] = float(price)

    def get_take_profit(self, symbol: str, side: str) -> Optional[float]:
        key = position_key(symbol, side)
        with self._meta_lock:
            return self._take_profit.get(key)

    def ensure_stop_loss_tightening(self, symbol: str, side: str, new_stop: float) -> None:
        """Raise StopRatchetViolation if new_stop would loosen the cached stop.

        The first write for a position always passes.
        """
        key = position_key(symbol, side)
        with self._meta_lock:
            previous = self._stop_loss.get(key)
        if previous is None:
            return
        if normalize_side(side) == SIDE_LONG:
            loosens = new_stop + self.epsilon < previous
        else:
            loosens = new_stop - self.epsilon > previous
        if loosens:
            raise StopRatchetViolation(symbol, normalize_side(side), previous, new_stop)

    # ------------------------------------------------------------------
    # Peak ROI
    # ------------------------------------------------------------------

    def update_peak_pnl(self, symbol: str, side: str, current_pct: float) -> float:
        """Record current ROI%, keep the max; returns the peak."""
        key = position_key(symbol, side)
        with self._peak_lock:
            peak = self._peak_pnl.get(key)
            if peak is None or current_pct > peak:
                self._peak_pnl[key] = float(current_pct)
            return self._peak_pnl[key]

    def get_peak_pnl(self, symbol: str, side: str) -> Optional[float]:
        key = position_key(symbol, side)
        with self._peak_lock:
            return self._peak_pnl.get(key)

    def clear_peak_pnl(self, symbol: str, side: str) -> None:
        key = position_key(symbol, side)
        with self._peak_lock:
            self._peak_pnl.pop(key, None)

    def peak_pnl_snapshot(self) -> Dict[str, float]:
        with self._peak_lock:
            return dict(self._peak_pnl)

    def prune_peak_pnl(self, live_keys: Iterable[str]) -> None:
        """Drop peaks for positions the venue no longer reports."""
        keep = set(live_keys)
        with self._peak_lock:
            for key in [k for k in self._peak_pnl if k not in keep]:
                del self._peak_pnl[key]

    # ------------------------------------------------------------------
    # First-seen timestamps
    # ------------------------------------------------------------------

    def mark_first_seen(self, symbol: str, side: str, ts_ms: int, overwrite: bool = False) -> int:
        key = position_key(symbol, side)
        with self._seen_lock:
            if overwrite or key not in self._first_seen:
                self._first_seen[key] = int(ts_ms)
            return self._first_seen[key]

    def first_seen(self, symbol: str, side: str) -> Optional[int]:
        key = position_key(symbol, side)
        with self._seen_lock:
            return self._first_seen.get(key)

    def prune_first_seen(self, live_keys: Iterable[str]) -> None:
        """Drop timestamps for positions no longer open."""
        keep = set(live_keys)
        with self._seen_lock:
            for key in [k for k in self._first_seen if k not in keep]:
                del self._first_seen[key]

    def snapshot(self) -> Tuple[Dict[str, PositionMeta], Dict[str, float], Dict[str, float]]:
        """Copies of meta, stop-loss and take-profit maps."""
        with self._meta_lock:
            meta = {k: PositionMeta(v.side, v.entry_price, v.quantity) for k, v in self._meta.items()}
            return meta, dict(self._stop_loss), dict(self._take_profit)
