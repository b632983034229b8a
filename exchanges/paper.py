#!/usr/bin/env python3
"""
In-memory paper venue.

Simulates a USDT-margined perpetuals account well enough for dry runs and
tests: market fills at the current mark, one position per (symbol, side),
trigger orders stored per symbol, realised PnL credited to the wallet.
Failures can be injected per method with `fail_next()`.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from errors import ExchangeError
from .base import (
    SIDE_LONG,
    SIDE_SHORT,
    Balance,
    ExchangeAdapter,
    OrderResult,
    PositionSnapshot,
    normalize_side,
)


@dataclass
class TriggerOrder:
    symbol: str
    side: str
    kind: str  # sl | tp
    quantity: float
    price: float


class PaperExchangeAdapter(ExchangeAdapter):
    """Deterministic in-memory exchange."""

    def __init__(self, log=None, wallet_balance: float = 1000.0, marks: Optional[Dict[str, float]] = None):
        super().__init__(log)
        self.wallet_balance = float(wallet_balance)
        self.marks: Dict[str, float] = dict(marks or {})
        self.positions: Dict[Tuple[str, str], PositionSnapshot] = {}
        self.trigger_orders: Dict[str, List[TriggerOrder]] = {}
        self.margin_modes: Dict[str, bool] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._failures: Dict[str, List[str]] = {}
        self._order_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Test / simulation controls
    # ------------------------------------------------------------------

    def set_mark(self, symbol: str, price: float) -> None:
        self.marks[symbol] = float(price)
        for (sym, _side), pos in self.positions.items():
            if sym == symbol:
                pos.mark_price = float(price)

    def seed_position(
        self,
        symbol: str,
        side: str,
        quantity: float,
        entry_price: float,
        leverage: int = 10,
        mark_price: Optional[float] = None,
    ) -> PositionSnapshot:
        mark = float(mark_price if mark_price is not None else self.marks.get(symbol, entry_price))
        self.marks.setdefault(symbol, mark)
        pos = PositionSnapshot(
            symbol=symbol,
            side=side,
            entry_price=float(entry_price),
            mark_price=mark,
            quantity=float(quantity),
            leverage=int(leverage),
        )
        self.positions[(symbol, pos.side)] = pos
        return pos

    def fail_next(self, method: str, message: str = "simulated venue failure") -> None:
        self._failures.setdefault(method, []).append(message)

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            raise ExchangeError(f"{method}: {pending.pop(0)}")

    def _mark(self, symbol: str) -> float:
        price = self.marks.get(symbol)
        if not price or price <= 0:
            raise ExchangeError(f"No mark price for {symbol}")
        return float(price)

    def _unrealized(self, pos: PositionSnapshot) -> float:
        diff = pos.mark_price - pos.entry_price
        if pos.side == SIDE_SHORT:
            diff = -diff
        return diff * pos.quantity

    # ------------------------------------------------------------------
    # ExchangeAdapter
    # ------------------------------------------------------------------

    async def get_balance(self) -> Balance:
        self._record("get_balance")
        unrealized = sum(self._unrealized(p) for p in self.positions.values())
        margin = sum(p.quantity * p.mark_price / max(p.leverage, 1) for p in self.positions.values())
        return Balance(
            available=max(0.0, self.wallet_balance + unrealized - margin),
            wallet=self.wallet_balance,
            unrealized=unrealized,
        )

    async def get_positions(self) -> List[PositionSnapshot]:
        self._record("get_positions")
        out: List[PositionSnapshot] = []
        for pos in self.positions.values():
            out.append(
                PositionSnapshot(
                    symbol=pos.symbol,
                    side=pos.side,
                    entry_price=pos.entry_price,
                    mark_price=pos.mark_price,
                    quantity=pos.quantity,
                    leverage=pos.leverage,
                    unrealized_pnl=self._unrealized(pos),
                )
            )
        return out

    async def _open(self, symbol: str, side: str, quantity: float, leverage: int) -> OrderResult:
        if quantity <= 0:
            raise ExchangeError(f"Invalid quantity {quantity} for {symbol}")
        price = self._mark(symbol)
        key = (symbol, side)
        existing = self.positions.get(key)
        if existing is not None:
            total = existing.quantity + quantity
            existing.entry_price = (existing.entry_price * existing.quantity + price * quantity) / total
            existing.quantity = total
            existing.leverage = int(leverage)
        else:
            self.positions[key] = PositionSnapshot(
                symbol=symbol,
                side=side,
                entry_price=price,
                mark_price=price,
                quantity=quantity,
                leverage=int(leverage),
            )
        return OrderResult(symbol=symbol, side=side, quantity=quantity, price=price, order_id=str(next(self._order_ids)))

    async def _close(self, symbol: str, side: str, quantity: float) -> OrderResult:
        key = (symbol, side)
        pos = self.positions.get(key)
        if pos is None or pos.quantity <= 0:
            raise ExchangeError(f"No {side} position for {symbol}")
        price = self._mark(symbol)
        qty = pos.quantity if quantity <= 0 else min(quantity, pos.quantity)
        diff = price - pos.entry_price
        if side == SIDE_SHORT:
            diff = -diff
        self.wallet_balance += diff * qty
        pos.quantity -= qty
        if pos.quantity <= 1e-12:
            del self.positions[key]
            self.trigger_orders.pop(symbol, None)
        return OrderResult(symbol=symbol, side=side, quantity=qty, price=price, order_id=str(next(self._order_ids)))

    async def open_long(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        self._record("open_long", symbol, quantity, leverage)
        return await self._open(symbol, SIDE_LONG, quantity, leverage)

    async def open_short(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        self._record("open_short", symbol, quantity, leverage)
        return await self._open(symbol, SIDE_SHORT, quantity, leverage)

    async def close_long(self, symbol: str, quantity: float = 0.0) -> OrderResult:
        self._record("close_long", symbol, quantity)
        return await self._close(symbol, SIDE_LONG, quantity)

    async def close_short(self, symbol: str, quantity: float = 0.0) -> OrderResult:
        self._record("close_short", symbol, quantity)
        return await self._close(symbol, SIDE_SHORT, quantity)

    async def _place_trigger(self, kind: str, symbol: str, side: str, quantity: float, price: float) -> None:
        if price <= 0:
            raise ExchangeError(f"Invalid {kind} trigger price {price} for {symbol}")
        orders = self.trigger_orders.setdefault(symbol, [])
        orders[:] = [o for o in orders if not (o.kind == kind and o.side == side)]
        orders.append(TriggerOrder(symbol=symbol, side=side, kind=kind, quantity=quantity, price=float(price)))

    async def set_stop_loss(self, symbol: str, side: str, quantity: float, price: float) -> None:
        self._record("set_stop_loss", symbol, side, quantity, price)
        await self._place_trigger("sl", symbol, normalize_side(side), quantity, price)

    async def set_take_profit(self, symbol: str, side: str, quantity: float, price: float) -> None:
        self._record("set_take_profit", symbol, side, quantity, price)
        await self._place_trigger("tp", symbol, normalize_side(side), quantity, price)

    async def cancel_stop_orders(self, symbol: str) -> None:
        self._record("cancel_stop_orders", symbol)
        self.trigger_orders.pop(symbol, None)

    async def set_margin_mode(self, symbol: str, is_cross: bool) -> None:
        self._record("set_margin_mode", symbol, is_cross)
        self.margin_modes[symbol] = bool(is_cross)

    # ------------------------------------------------------------------

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def trigger_price(self, symbol: str, side: str, kind: str) -> Optional[float]:
        for order in self.trigger_orders.get(symbol, []):
            if order.side == normalize_side(side) and order.kind == kind:
                return order.price
        return None
