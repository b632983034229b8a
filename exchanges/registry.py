#!/usr/bin/env python3
"""Venue id -> adapter factory registry."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from errors import ConfigurationError
from venues import VENUE_ASTER, VENUE_BINANCE, VENUE_HYPERLIQUID, VENUE_PAPER, normalize_venue

from .base import ExchangeAdapter
from .paper import PaperExchangeAdapter


SUPPORTED_EXCHANGES = frozenset({VENUE_BINANCE, VENUE_HYPERLIQUID, VENUE_ASTER, VENUE_PAPER})

AdapterFactory = Callable[[Dict[str, Any], Any], ExchangeAdapter]


def _paper_factory(options: Dict[str, Any], log: Any) -> ExchangeAdapter:
    return PaperExchangeAdapter(
        log,
        wallet_balance=float(options.get("wallet_balance", 1000.0)),
        marks=dict(options.get("marks") or {}),
    )


_FACTORIES: Dict[str, AdapterFactory] = {VENUE_PAPER: _paper_factory}


def register_adapter(venue: str, factory: AdapterFactory) -> None:
    """Plug in a concrete venue adapter (signing/transport live outside the core)."""
    name = normalize_venue(venue)
    if name not in SUPPORTED_EXCHANGES:
        raise ConfigurationError(f"Unsupported exchange: {venue}")
    _FACTORIES[name] = factory


def unregister_adapter(venue: str) -> None:
    name = normalize_venue(venue)
    if name != VENUE_PAPER:
        _FACTORIES.pop(name, None)


def create_adapter(venue: str, options: Optional[Dict[str, Any]] = None, log: Any = None) -> ExchangeAdapter:
    """Build the adapter for venue or raise ConfigurationError."""
    name = normalize_venue(venue)
    if name not in SUPPORTED_EXCHANGES:
        raise ConfigurationError(f"Unsupported exchange: {venue}")
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(f"No adapter registered for exchange '{name}'")
    return factory(dict(options or {}), log)
