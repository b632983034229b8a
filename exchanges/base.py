#!/usr/bin/env python3
"""
Shared exchange adapter interface and dataclasses.

The engine only consumes the typed shapes below. Each venue adapter converts
its raw payloads with `Balance.from_payload` / `PositionSnapshot.from_payload`
(or its own parser) at the boundary, so no raw dicts leak into the core.

All adapter coroutines raise `errors.ExchangeError` on venue-level failure;
the engine never retries them.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from errors import ExchangeError


SIDE_LONG = "long"
SIDE_SHORT = "short"
DEFAULT_POSITION_LEVERAGE = 10


def _first_float(payload: Dict[str, Any], *keys: str, default: float = 0.0) -> float:
    for key in keys:
        if key not in payload or payload[key] is None:
            continue
        try:
            return float(payload[key])
        except (TypeError, ValueError):
            continue
    return float(default)


def normalize_side(side: Any) -> str:
    s = str(side or "").strip().lower()
    if s in ("long", "buy"):
        return SIDE_LONG
    if s in ("short", "sell"):
        return SIDE_SHORT
    raise ValueError(f"Unknown position side: {side!r}")


@dataclass
class Balance:
    """Account balance snapshot."""
    available: float = 0.0
    wallet: float = 0.0
    unrealized: float = 0.0

    @property
    def equity(self) -> float:
        """Wallet + unrealized; falls back to available when wallet is unknown."""
        if self.wallet > 0:
            return self.wallet + self.unrealized
        return self.available

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Balance":
        """Parse the common venue spellings of a balance response."""
        if not isinstance(payload, dict):
            raise ExchangeError(f"Unexpected balance payload: {payload!r}")
        return cls(
            available=_first_float(payload, "availableBalance", "available_balance", "available"),
            wallet=_first_float(payload, "totalWalletBalance", "walletBalance", "balance", "wallet"),
            unrealized=_first_float(payload, "totalUnrealizedProfit", "unrealizedProfit", "unrealized"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["equity"] = self.equity
        return data


@dataclass
class PositionSnapshot:
    """Live position as reported by the venue this cycle."""
    symbol: str
    side: str  # long | short
    entry_price: float
    mark_price: float
    quantity: float
    leverage: int = DEFAULT_POSITION_LEVERAGE
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0  # unleveraged price move %
    liquidation_price: float = 0.0
    margin_used: float = 0.0
    first_seen_ms: int = 0

    def __post_init__(self) -> None:
        self.side = normalize_side(self.side)
        self.quantity = abs(float(self.quantity or 0.0))
        if int(self.leverage or 0) <= 0:
            self.leverage = DEFAULT_POSITION_LEVERAGE
        if self.entry_price > 0 and not self.unrealized_pnl_pct:
            move = (self.mark_price - self.entry_price) / self.entry_price * 100
            self.unrealized_pnl_pct = move if self.side == SIDE_LONG else -move
        if not self.margin_used and self.leverage > 0:
            self.margin_used = self.quantity * self.mark_price / self.leverage

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.side}"

    def roi_pct(self) -> float:
        """Leveraged return on the position, in percent."""
        if self.entry_price <= 0:
            return 0.0
        move = (self.mark_price - self.entry_price) / self.entry_price
        if self.side == SIDE_SHORT:
            move = -move
        return move * max(int(self.leverage), 1) * 100

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PositionSnapshot":
        """Parse a Binance-style position row (signed positionAmt, camelCase)."""
        if not isinstance(payload, dict) or not payload.get("symbol"):
            raise ExchangeError(f"Unexpected position payload: {payload!r}")
        amount = _first_float(payload, "positionAmt", "quantity", "size")
        raw_side = payload.get("side") or payload.get("positionSide")
        if not raw_side or str(raw_side).upper() == "BOTH":
            raw_side = SIDE_SHORT if amount < 0 else SIDE_LONG
        leverage = int(round(_first_float(payload, "leverage", default=DEFAULT_POSITION_LEVERAGE)))
        return cls(
            symbol=str(payload["symbol"]),
            side=normalize_side(raw_side),
            entry_price=_first_float(payload, "entryPrice", "entry_price"),
            mark_price=_first_float(payload, "markPrice", "mark_price"),
            quantity=abs(amount),
            leverage=leverage,
            unrealized_pnl=_first_float(payload, "unRealizedProfit", "unrealizedProfit", "unrealized_pnl"),
            liquidation_price=_first_float(payload, "liquidationPrice", "liquidation_price"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrderResult:
    """Result of an accepted order."""
    symbol: str
    side: str
    quantity: float = 0.0
    price: float = 0.0
    order_id: Optional[str] = None


class ExchangeAdapter(abc.ABC):
    """Capability interface every venue adapter implements."""

    def __init__(self, log=None):
        self.log = log
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def initialize(self) -> bool:
        """Open connections; venues without setup just succeed."""
        self._initialized = True
        return True

    async def close(self) -> None:
        """Release connections."""
        return None

    @abc.abstractmethod
    async def get_balance(self) -> Balance:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_positions(self) -> List[PositionSnapshot]:
        raise NotImplementedError

    @abc.abstractmethod
    async def open_long(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def open_short(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def close_long(self, symbol: str, quantity: float = 0.0) -> OrderResult:
        """Close a long; quantity 0 closes the whole position."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close_short(self, symbol: str, quantity: float = 0.0) -> OrderResult:
        """Close a short; quantity 0 closes the whole position."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set_stop_loss(self, symbol: str, side: str, quantity: float, price: float) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def set_take_profit(self, symbol: str, side: str, quantity: float, price: float) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_stop_orders(self, symbol: str) -> None:
        """Cancel every stop-loss / take-profit trigger order for symbol."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set_margin_mode(self, symbol: str, is_cross: bool) -> None:
        raise NotImplementedError
