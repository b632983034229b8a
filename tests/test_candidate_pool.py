#!/usr/bin/env python3
"""Candidate pool resolution and AI500 / OI-top merging."""

import sys
from pathlib import Path

import aiohttp
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from candidate_pool import CandidatePool, merge_coin_pools, normalize_symbol
from errors import CandidatePoolError


AI500_URL = "http://pool.local/ai500"
OI_URL = "http://pool.local/oi-top"

AI500 = {"success": True, "data": {"coins": [{"pair": "BTCUSDT"}, {"pair": "sol"}]}}
OI_TOP = {"success": True, "data": {"positions": [{"symbol": "SOLUSDT"}, {"symbol": "DOGEUSDT"}]}}


class _FakeResponse:
    def __init__(self, status: int, payload):
        self.status = status
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self._payload


class _FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        route = self.routes[url]
        if isinstance(route, Exception):
            raise route
        status, payload = route
        return _FakeResponse(status, payload)

    async def close(self):
        return None


def test_normalize_symbol() -> None:
    assert normalize_symbol(" btc ") == "BTCUSDT"
    assert normalize_symbol("ethusdt") == "ETHUSDT"


def test_merge_keeps_order_and_sources() -> None:
    coins = merge_coin_pools(AI500, OI_TOP)

    assert [c.symbol for c in coins] == ["BTCUSDT", "SOLUSDT", "DOGEUSDT"]
    assert coins[1].sources == ["ai500", "oi_top"]
    assert coins[2].sources == ["oi_top"]
    assert [c.symbol for c in merge_coin_pools(AI500, None, ai500_limit=1)] == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_custom_then_default_coins() -> None:
    custom = await CandidatePool(trading_coins=["btc", "ETHUSDT"], default_coins=["SOL"]).get_candidates()
    assert [(c.symbol, c.sources) for c in custom] == [("BTCUSDT", ["custom"]), ("ETHUSDT", ["custom"])]

    default = await CandidatePool(default_coins=["SOL"]).get_candidates()
    assert [(c.symbol, c.sources) for c in default] == [("SOLUSDT", ["default"])]


@pytest.mark.asyncio
async def test_fetches_merged_pool() -> None:
    session = _FakeSession({AI500_URL: (200, AI500), OI_URL: (200, OI_TOP)})
    pool = CandidatePool(coin_pool_api_url=AI500_URL, oi_top_api_url=OI_URL, session=session)

    coins = await pool.get_candidates()

    assert [c.symbol for c in coins] == ["BTCUSDT", "SOLUSDT", "DOGEUSDT"]
    assert session.requested == [AI500_URL, OI_URL]


@pytest.mark.asyncio
async def test_oi_top_failure_falls_back_to_ai500() -> None:
    session = _FakeSession({AI500_URL: (200, AI500), OI_URL: aiohttp.ClientConnectionError("refused")})
    pool = CandidatePool(coin_pool_api_url=AI500_URL, oi_top_api_url=OI_URL, session=session)

    coins = await pool.get_candidates()

    assert [c.symbol for c in coins] == ["BTCUSDT", "SOLUSDT"]


@pytest.mark.asyncio
async def test_pool_errors() -> None:
    with pytest.raises(CandidatePoolError, match="coin_pool_api_url"):
        await CandidatePool().get_candidates()

    session = _FakeSession({AI500_URL: (503, {})})
    with pytest.raises(CandidatePoolError, match="HTTP 503"):
        await CandidatePool(coin_pool_api_url=AI500_URL, session=session).get_candidates()

    empty = _FakeSession({AI500_URL: (200, {"data": {"coins": []}})})
    with pytest.raises(CandidatePoolError, match="no symbols"):
        await CandidatePool(coin_pool_api_url=AI500_URL, session=empty).get_candidates()
