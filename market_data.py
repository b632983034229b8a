#!/usr/bin/env python3
"""
Market data collaborator boundary.

Indicators per symbol across three horizons:
- short (3m): current MACD and the RSI(7) series
- mid (15m): ATR14 / EMA20 / RSI7
- long (1h): ATR14

A missing field means "not ready". Guardrails that need it fail closed
instead of assuming a neutral value, so every field here is Optional.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import MarketDataUnavailable


@dataclass
class TimeframeContext:
    atr14: Optional[float] = None
    ema20: Optional[float] = None
    rsi7: Optional[float] = None


@dataclass
class IntradaySeries:
    rsi7_values: List[float] = field(default_factory=list)


@dataclass
class MarketData:
    symbol: str
    current_price: float
    current_macd: Optional[float] = None
    mid_term: Optional[TimeframeContext] = None
    longer_term: Optional[TimeframeContext] = None
    intraday: Optional[IntradaySeries] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketData":
        def _ctx(raw: Any) -> Optional[TimeframeContext]:
            if not isinstance(raw, dict):
                return None
            return TimeframeContext(
                atr14=raw.get("atr14", raw.get("ATR14")),
                ema20=raw.get("ema20", raw.get("EMA20")),
                rsi7=raw.get("rsi7", raw.get("RSI7")),
            )

        intraday_raw = data.get("intraday_series") or data.get("intraday")
        intraday = None
        if isinstance(intraday_raw, dict):
            values = intraday_raw.get("rsi7_values", intraday_raw.get("RSI7Values")) or []
            intraday = IntradaySeries(rsi7_values=[float(v) for v in values])
        return cls(
            symbol=str(data.get("symbol", "")),
            current_price=float(data.get("current_price") or 0.0),
            current_macd=data.get("current_macd"),
            mid_term=_ctx(data.get("mid_term_context") or data.get("mid_term")),
            longer_term=_ctx(data.get("longer_term_context") or data.get("longer_term")),
            intraday=intraday,
        )


class MarketDataProvider(abc.ABC):
    """Source of per-symbol indicators."""

    @abc.abstractmethod
    async def get(self, symbol: str) -> MarketData:
        """Return fresh data or raise MarketDataUnavailable."""
        raise NotImplementedError


class StaticMarketDataProvider(MarketDataProvider):
    """Dict-backed provider for dry runs and tests."""

    def __init__(self, data: Optional[Dict[str, MarketData]] = None):
        self._data: Dict[str, MarketData] = dict(data or {})

    def set(self, data: MarketData) -> None:
        self._data[data.symbol] = data

    def set_price(self, symbol: str, price: float) -> None:
        current = self._data.get(symbol)
        if current is None:
            self._data[symbol] = MarketData(symbol=symbol, current_price=float(price))
        else:
            current.current_price = float(price)

    async def get(self, symbol: str) -> MarketData:
        data = self._data.get(symbol)
        if data is None or data.current_price <= 0:
            raise MarketDataUnavailable(f"No market data for {symbol}")
        return data
