#!/usr/bin/env python3
"""
Execution state machine.

One decision in, one ActionRecord out. Every handler follows the same shape:
fetch live market data, run the guardrails that apply, mutate exchange state
through the adapter, then commit to the PositionStateCache. Any engine error
raised inside a handler becomes a failed record; one decision never aborts
the next.

Realised closes (full, partial, emergency) are booked against the cached
PositionMeta and fed to the loss-streak breaker.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List, Optional

from circuit_breaker import LossStreakBreaker
from decision_models import (
    AUTO_PROTECT_TAG,
    CLOSE_LONG,
    CLOSE_SHORT,
    HOLD,
    OPEN_LONG,
    OPEN_SHORT,
    PARTIAL_CLOSE,
    UPDATE_STOP_LOSS,
    UPDATE_TAKE_PROFIT,
    WAIT,
    ActionRecord,
    Decision,
)
from errors import AutoTraderError, ExchangeError, GuardrailRejection, UnknownActionError
from exchanges.base import SIDE_LONG, SIDE_SHORT, ExchangeAdapter, OrderResult, PositionSnapshot, normalize_side
import guardrails
from logging_utils import get_logger
from market_data import MarketDataProvider
from position_cache import PositionStateCache, position_key
from protective_stops import ratchet_target
from risk_policy import RiskPolicy, is_major_pair


@dataclass
class ExecutionConfig:
    """Per-identity execution settings."""
    is_cross_margin: bool = True
    btc_eth_leverage: int = 5
    altcoin_leverage: int = 5
    label: str = ""

    def leverage_for(self, symbol: str) -> int:
        return int(self.btc_eth_leverage if is_major_pair(symbol) else self.altcoin_leverage)


Handler = Callable[[Decision, ActionRecord], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class Executor:
    def __init__(
        self,
        adapter: ExchangeAdapter,
        market: MarketDataProvider,
        cache: Optional[PositionStateCache] = None,
        breaker: Optional[LossStreakBreaker] = None,
        policy: Optional[RiskPolicy] = None,
        config: Optional[ExecutionConfig] = None,
        on_realized: Optional[Callable[[float], None]] = None,
    ):
        self.adapter = adapter
        self.market = market
        self.policy = policy or RiskPolicy()
        self.cache = cache or PositionStateCache(self.policy.float_epsilon)
        self.breaker = breaker or LossStreakBreaker(self.policy)
        self.config = config or ExecutionConfig()
        self.on_realized = on_realized
        self.log = get_logger("executor")
        self._prefix = f"[{self.config.label}] " if self.config.label else ""
        self._stop_locks: Dict[str, asyncio.Lock] = {}
        self._handlers: Dict[str, Handler] = {
            OPEN_LONG: self._open_long,
            OPEN_SHORT: self._open_short,
            CLOSE_LONG: self._close_long,
            CLOSE_SHORT: self._close_short,
            UPDATE_STOP_LOSS: self._update_stop_loss,
            UPDATE_TAKE_PROFIT: self._update_take_profit,
            PARTIAL_CLOSE: self._partial_close,
            HOLD: self._noop,
            WAIT: self._noop,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, decision: Decision) -> ActionRecord:
        """Run one decision; never raises for engine-level failures."""
        record = ActionRecord(action=decision.action, symbol=decision.symbol)
        handler = self._handlers.get(decision.action)
        try:
            if handler is None:
                raise UnknownActionError(f"Unknown action: {decision.action!r}")
            await handler(decision, record)
            record.success = True
        except GuardrailRejection as exc:
            record.error = str(exc)
            self.log.warning(f"{self._prefix}{decision.action} {decision.symbol} rejected: {exc}")
        except ExchangeError as exc:
            record.error = str(exc)
            self.log.error(f"{self._prefix}{decision.action} {decision.symbol} exchange error: {exc}")
        except AutoTraderError as exc:
            record.error = str(exc)
            self.log.warning(f"{self._prefix}{decision.action} {decision.symbol} failed: {exc}")
        except Exception as exc:
            record.error = f"{type(exc).__name__}: {exc}"
            self.log.exception(f"{self._prefix}{decision.action} {decision.symbol} crashed")
        return record

    async def _noop(self, decision: Decision, record: ActionRecord) -> None:
        return None

    # ------------------------------------------------------------------
    # Opens
    # ------------------------------------------------------------------

    async def _open_long(self, decision: Decision, record: ActionRecord) -> None:
        await self._open(decision, record, SIDE_LONG)

    async def _open_short(self, decision: Decision, record: ActionRecord) -> None:
        await self._open(decision, record, SIDE_SHORT)

    async def _open(self, decision: Decision, record: ActionRecord, side: str) -> None:
        symbol = decision.symbol
        self.log.info(f"{self._prefix}open {side}: {symbol}")
        policy = self.policy

        guardrails.check_confidence(decision, policy)
        positions = await self.adapter.get_positions()
        guardrails.check_no_duplicate(symbol, side, positions)

        data = await self.market.get(symbol)
        guardrails.ensure_mid_term_entry_filters(data, side, policy)
        guardrails.ensure_short_term_momentum(data, side, policy)

        balance = await self.adapter.get_balance()
        if decision.leverage <= 0:
            decision = replace(decision, leverage=self.config.leverage_for(symbol))
        sized = guardrails.ensure_position_fits_balance(
            decision, balance.available, balance.equity, data, policy
        )

        price = data.current_price
        quantity = sized.position_size_usd / price
        record.quantity = quantity
        record.price = price
        record.leverage = sized.leverage
        guardrails.ensure_margin_available(sized.position_size_usd, sized.leverage, balance.available, policy)

        try:
            await self.adapter.set_margin_mode(symbol, self.config.is_cross_margin)
        except ExchangeError as exc:
            self.log.warning(f"{self._prefix}{symbol}: set margin mode failed, continuing: {exc}")

        if side == SIDE_LONG:
            order = await self.adapter.open_long(symbol, quantity, sized.leverage)
        else:
            order = await self.adapter.open_short(symbol, quantity, sized.leverage)
        record.order_id = order.order_id
        self.log.info(f"{self._prefix}opened {symbol} {side} order={order.order_id} qty={quantity:.6f}")

        self.cache.forget(symbol, side)
        self.cache.store_meta(symbol, side, price, quantity)
        self.cache.mark_first_seen(symbol, side, _now_ms(), overwrite=True)
        self.cache.clear_peak_pnl(symbol, side)

        async with self._stop_lock(symbol, side):
            try:
                await self.adapter.set_stop_loss(symbol, side, quantity, sized.stop_loss)
                self.cache.store_stop_loss(symbol, side, sized.stop_loss)
            except ExchangeError as exc:
                self.log.error(f"{self._prefix}{symbol}: initial stop-loss failed: {exc}")
        try:
            await self.adapter.set_take_profit(symbol, side, quantity, sized.take_profit)
            self.cache.store_take_profit(symbol, side, sized.take_profit)
        except ExchangeError as exc:
            self.log.error(f"{self._prefix}{symbol}: initial take-profit failed: {exc}")

    # ------------------------------------------------------------------
    # Closes
    # ------------------------------------------------------------------

    async def _close_long(self, decision: Decision, record: ActionRecord) -> None:
        await self._close(decision, record, SIDE_LONG)

    async def _close_short(self, decision: Decision, record: ActionRecord) -> None:
        await self._close(decision, record, SIDE_SHORT)

    async def _close(self, decision: Decision, record: ActionRecord, side: str) -> None:
        symbol = decision.symbol
        self.log.info(f"{self._prefix}close {side}: {symbol}")
        data = await self.market.get(symbol)
        record.price = data.current_price

        cached_qty = self.cache.get_quantity(symbol, side)
        order = await self._close_order(symbol, side, 0.0)
        record.order_id = order.order_id
        record.quantity = cached_qty if cached_qty > 0 else order.quantity
        record.realized_pnl = self.book_realized_pnl(symbol, side, cached_qty, data.current_price)
        self.cache.clear_peak_pnl(symbol, side)

    async def _close_order(self, symbol: str, side: str, quantity: float) -> OrderResult:
        if normalize_side(side) == SIDE_LONG:
            return await self.adapter.close_long(symbol, quantity)
        return await self.adapter.close_short(symbol, quantity)

    async def _partial_close(self, decision: Decision, record: ActionRecord) -> None:
        symbol = decision.symbol
        pct = decision.close_percentage
        self.log.info(f"{self._prefix}partial close: {symbol} {pct:.1f}%")
        if pct <= 0 or pct > 100:
            raise GuardrailRejection(f"close_percentage must be in (0, 100], got {pct:.1f}")

        data = await self.market.get(symbol)
        record.price = data.current_price
        pos = await self._find_position(symbol)

        size = guardrails.partial_close_quantity(symbol, pos.quantity, pct, self.policy)
        record.quantity = size.quantity
        order = await self._close_order(symbol, pos.side, size.quantity)
        record.order_id = order.order_id
        remaining = pos.quantity - size.quantity
        self.log.info(
            f"{self._prefix}partial close {symbol}: closed {size.quantity:.6f} ({pct:.1f}%), "
            f"remaining {remaining:.6f}"
        )
        record.realized_pnl = self.book_realized_pnl(symbol, pos.side, size.quantity, data.current_price)
        if size.full:
            self.cache.clear_peak_pnl(symbol, pos.side)
        else:
            await self.evaluate_symbol_protection(symbol)

    # ------------------------------------------------------------------
    # Stop-loss / take-profit updates
    # ------------------------------------------------------------------

    async def _find_position(self, symbol: str) -> PositionSnapshot:
        positions = await self.adapter.get_positions()
        for pos in positions:
            if pos.symbol == symbol and pos.quantity > 0:
                return pos
        raise GuardrailRejection(f"No open position for {symbol}")

    async def _update_stop_loss(self, decision: Decision, record: ActionRecord) -> None:
        symbol = decision.symbol
        new_stop = decision.new_stop_loss
        self.log.info(f"{self._prefix}update stop-loss: {symbol} -> {new_stop:.4f}")
        data = await self.market.get(symbol)
        record.price = data.current_price
        pos = await self._find_position(symbol)

        guardrails.validate_stop_loss_direction(pos.side, new_stop, data.current_price)

        # held from the ratchet check to the commit; concurrent updates queue here
        async with self._stop_lock(symbol, pos.side):
            self.cache.ensure_stop_loss_tightening(symbol, pos.side, new_stop)

            try:
                await self.adapter.cancel_stop_orders(symbol)
            except ExchangeError as exc:
                self.log.warning(f"{self._prefix}{symbol}: cancel old stop orders failed, continuing: {exc}")

            record.quantity = pos.quantity
            await self.adapter.set_stop_loss(symbol, pos.side, pos.quantity, new_stop)
            self.cache.store_stop_loss(symbol, pos.side, new_stop)
        self.log.info(f"{self._prefix}{symbol} stop-loss now {new_stop:.4f} (price {data.current_price:.4f})")

    def _stop_lock(self, symbol: str, side: str) -> asyncio.Lock:
        key = position_key(symbol, side)
        lock = self._stop_locks.get(key)
        if lock is None:
            lock = self._stop_locks[key] = asyncio.Lock()
        return lock

    async def _update_take_profit(self, decision: Decision, record: ActionRecord) -> None:
        symbol = decision.symbol
        new_tp = decision.new_take_profit
        self.log.info(f"{self._prefix}update take-profit: {symbol} -> {new_tp:.4f}")
        data = await self.market.get(symbol)
        record.price = data.current_price
        pos = await self._find_position(symbol)

        guardrails.validate_take_profit_direction(pos.side, new_tp, data.current_price)

        try:
            await self.adapter.cancel_stop_orders(symbol)
        except ExchangeError as exc:
            self.log.warning(f"{self._prefix}{symbol}: cancel old take-profit orders failed, continuing: {exc}")

        record.quantity = pos.quantity
        await self.adapter.set_take_profit(symbol, pos.side, pos.quantity, new_tp)
        self.cache.store_take_profit(symbol, pos.side, new_tp)
        self.log.info(f"{self._prefix}{symbol} take-profit now {new_tp:.4f} (price {data.current_price:.4f})")

    # ------------------------------------------------------------------
    # PnL booking and dynamic protection
    # ------------------------------------------------------------------

    def book_realized_pnl(self, symbol: str, side: str, closed_qty: float, close_price: float) -> Optional[float]:
        """Decrement cached meta and feed the breaker; None when PnL is unknown."""
        realized = self.cache.realize(symbol, side, closed_qty, close_price)
        if realized is None:
            return None
        self.log.info(
            f"{self._prefix}{symbol} {side} realised {realized.pnl:+.4f} on {realized.closed_quantity:.6f} "
            f"(remaining {realized.remaining_quantity:.6f})"
        )
        self.breaker.record_pnl(realized.pnl)
        if self.on_realized is not None:
            self.on_realized(realized.pnl)
        return realized.pnl

    async def apply_dynamic_protection(self, pos: PositionSnapshot) -> Optional[ActionRecord]:
        """Push a tighter ATR/ROI stop for pos when one exists."""
        if not pos.symbol or pos.quantity < self.policy.float_epsilon:
            return None
        try:
            data = await self.market.get(pos.symbol)
        except AutoTraderError as exc:
            self.log.warning(f"{self._prefix}auto-protect {pos.symbol}: market data unavailable: {exc}")
            return None

        current_stop = self.cache.get_stop_loss(pos.symbol, pos.side)
        target = ratchet_target(pos.side, pos.entry_price, pos.mark_price, pos.leverage, data, current_stop)
        if target is None:
            return None

        roi = pos.roi_pct()
        decision = Decision(
            symbol=pos.symbol,
            action=UPDATE_STOP_LOSS,
            new_stop_loss=target,
            reasoning=f"{AUTO_PROTECT_TAG} ROI {roi:.2f}% ratchet",
        )
        record = await self.execute(decision)
        if record.success:
            self.log.info(f"{self._prefix}auto-protect tightened {pos.symbol} ({pos.side}) -> {target:.4f}")
        else:
            self.log.warning(f"{self._prefix}auto-protect {pos.symbol} failed: {record.error}")
        return record

    async def evaluate_symbol_protection(self, symbol: str) -> List[ActionRecord]:
        """Re-run dynamic protection for the remaining position(s) of symbol."""
        try:
            positions = await self.adapter.get_positions()
        except ExchangeError as exc:
            self.log.warning(f"{self._prefix}re-evaluating protection for {symbol} failed: {exc}")
            return []
        out: List[ActionRecord] = []
        for pos in positions:
            if pos.symbol != symbol:
                continue
            record = await self.apply_dynamic_protection(pos)
            if record is not None:
                out.append(record)
        return out

    async def emergency_close(self, symbol: str, side: str) -> Optional[float]:
        """Close the whole position now, bypassing the decision source.

        Raises ExchangeError when the venue rejects the close.
        """
        side = normalize_side(side)
        closed_qty = self.cache.get_quantity(symbol, side)
        close_price = 0.0
        try:
            close_price = (await self.market.get(symbol)).current_price
        except AutoTraderError as exc:
            self.log.warning(f"{self._prefix}emergency close {symbol}: no price for PnL booking: {exc}")

        order = await self._close_order(symbol, side, 0.0)
        self.log.warning(f"{self._prefix}emergency closed {symbol} {side} order={order.order_id}")
        if close_price > 0 and closed_qty > 0:
            return self.book_realized_pnl(symbol, side, closed_qty, close_price)
        return None
