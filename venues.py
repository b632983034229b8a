#!/usr/bin/env python3
"""Canonical exchange ids and the spellings accepted in trader.yaml."""

from __future__ import annotations

from typing import Dict, Tuple

VENUE_BINANCE = "binance"
VENUE_HYPERLIQUID = "hyperliquid"
VENUE_ASTER = "aster"
VENUE_PAPER = "paper"

_SPELLINGS: Dict[str, Tuple[str, ...]] = {
    VENUE_BINANCE: ("binance_futures", "binance-futures"),
    VENUE_HYPERLIQUID: ("hl",),
    VENUE_ASTER: (),
    VENUE_PAPER: ("dry_run", "dry-run", "sim"),
}

_LOOKUP = {alias: venue for venue, aliases in _SPELLINGS.items() for alias in (venue,) + aliases}


def normalize_venue(value: str) -> str:
    """Map an exchange spelling to its canonical id; unknown ids pass through lowercased."""
    key = str(value or "").strip().lower()
    return _LOOKUP.get(key, key)
