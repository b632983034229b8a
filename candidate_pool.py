#!/usr/bin/env python3
"""
Candidate-symbol pool.

Resolution order:
1. custom trading coins from the trader config (source "custom")
2. configured default coins (source "default")
3. merged AI500 + OI-top pool fetched over HTTP (sources "ai500" / "oi_top")
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from decision_source import CandidateCoin
from errors import CandidatePoolError
from logging_utils import get_logger

LOG = get_logger("candidate_pool")

AI500_LIMIT = 20
OI_TOP_LIMIT = 20
SOURCE_CUSTOM = "custom"
SOURCE_DEFAULT = "default"
SOURCE_AI500 = "ai500"
SOURCE_OI_TOP = "oi_top"


def normalize_symbol(symbol: str) -> str:
    """Upper-case and make sure the pair is quoted in USDT."""
    s = str(symbol or "").strip().upper()
    if not s.endswith("USDT"):
        s = s + "USDT"
    return s


def _extract_symbols(payload: Any, list_keys: Sequence[str]) -> List[str]:
    """Pull symbols out of `{"data": {"coins": [...]}}`-style payloads."""
    items: Any = payload
    if isinstance(items, dict):
        items = items.get("data", items)
    if isinstance(items, dict):
        for key in list_keys:
            if isinstance(items.get(key), list):
                items = items[key]
                break
    if not isinstance(items, list):
        return []
    out: List[str] = []
    for item in items:
        if isinstance(item, str):
            raw = item
        elif isinstance(item, dict):
            raw = item.get("pair") or item.get("symbol") or item.get("coin") or ""
        else:
            continue
        if raw:
            out.append(normalize_symbol(raw))
    return out


def merge_coin_pools(
    ai500_payload: Any,
    oi_top_payload: Any = None,
    ai500_limit: int = AI500_LIMIT,
) -> List[CandidateCoin]:
    """Merge the two pools, keeping first-seen order and all sources per symbol."""
    merged: Dict[str, CandidateCoin] = {}
    for symbol in _extract_symbols(ai500_payload, ("coins", "list"))[:ai500_limit]:
        merged.setdefault(symbol, CandidateCoin(symbol=symbol)).sources.append(SOURCE_AI500)
    for symbol in _extract_symbols(oi_top_payload, ("positions", "coins", "list"))[:OI_TOP_LIMIT]:
        coin = merged.setdefault(symbol, CandidateCoin(symbol=symbol))
        if SOURCE_OI_TOP not in coin.sources:
            coin.sources.append(SOURCE_OI_TOP)
    return list(merged.values())


class CandidatePool:
    def __init__(
        self,
        trading_coins: Optional[List[str]] = None,
        default_coins: Optional[List[str]] = None,
        coin_pool_api_url: str = "",
        oi_top_api_url: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        label: str = "",
    ):
        self.trading_coins = list(trading_coins or [])
        self.default_coins = list(default_coins or [])
        self.coin_pool_api_url = coin_pool_api_url
        self.oi_top_api_url = oi_top_api_url
        self._session = session
        self._prefix = f"[{label}] " if label else ""

    async def get_candidates(self) -> List[CandidateCoin]:
        if self.trading_coins:
            coins = [CandidateCoin(normalize_symbol(c), [SOURCE_CUSTOM]) for c in self.trading_coins]
            LOG.info(f"{self._prefix}using {len(coins)} custom coins")
            return coins
        if self.default_coins:
            coins = [CandidateCoin(normalize_symbol(c), [SOURCE_DEFAULT]) for c in self.default_coins]
            LOG.info(f"{self._prefix}using {len(coins)} default coins")
            return coins
        coins = await self.fetch_merged_pool()
        LOG.info(f"{self._prefix}using merged pool: {len(coins)} candidates")
        return coins

    async def fetch_merged_pool(self, ai500_limit: int = AI500_LIMIT) -> List[CandidateCoin]:
        if not self.coin_pool_api_url:
            raise CandidatePoolError("no trading coins, no default coins and no coin_pool_api_url configured")

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        try:
            ai500 = await self._get_json(session, self.coin_pool_api_url)
            oi_top = None
            if self.oi_top_api_url:
                try:
                    oi_top = await self._get_json(session, self.oi_top_api_url)
                except CandidatePoolError as exc:
                    LOG.warning(f"{self._prefix}OI-top pool unavailable, using AI500 only: {exc}")
        finally:
            if owns_session:
                await session.close()

        coins = merge_coin_pools(ai500, oi_top, ai500_limit)
        if not coins:
            raise CandidatePoolError(f"coin pool at {self.coin_pool_api_url} returned no symbols")
        return coins

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status != 200:
                    raise CandidatePoolError(f"{url} returned HTTP {resp.status}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CandidatePoolError(f"{url}: {exc}") from exc
