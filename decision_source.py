#!/usr/bin/env python3
"""
Decision source collaborator boundary.

The engine hands a `DecisionContext` to a `DecisionSource` and receives a
`DecisionBundle` back. How the source reaches its model is its own business;
the engine only consumes the parsed `Decision` list and keeps the prompt and
chain-of-thought text for the decision log.
"""

from __future__ import annotations

import abc
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from decision_models import Decision
from errors import DecisionSourceError
from market_data import MarketData


@dataclass
class AccountInfo:
    total_equity: float = 0.0
    available_balance: float = 0.0
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    margin_used: float = 0.0
    margin_used_pct: float = 0.0
    position_count: int = 0


@dataclass
class PositionInfo:
    symbol: str
    side: str
    entry_price: float
    mark_price: float
    quantity: float
    leverage: int
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    liquidation_price: float = 0.0
    margin_used: float = 0.0
    update_time_ms: int = 0


@dataclass
class CandidateCoin:
    symbol: str
    sources: List[str] = field(default_factory=list)


@dataclass
class DecisionContext:
    """Snapshot handed to the decision source once per cycle."""
    current_time: str = ""
    runtime_minutes: int = 0
    call_count: int = 0
    account: AccountInfo = field(default_factory=AccountInfo)
    positions: List[PositionInfo] = field(default_factory=list)
    candidate_coins: List[CandidateCoin] = field(default_factory=list)
    performance: Optional[Dict[str, Any]] = None
    btc_eth_leverage: int = 5
    altcoin_leverage: int = 5
    # Advisory limits from the trader config.
    max_daily_loss: float = 0.0
    max_drawdown: float = 0.0
    # Filled by the source or the engine as market data is fetched.
    market_data: Dict[str, MarketData] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.current_time:
            self.current_time = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class DecisionBundle:
    system_prompt: str = ""
    user_prompt: str = ""
    cot_trace: str = ""
    decisions: List[Decision] = field(default_factory=list)

    def decisions_json(self) -> str:
        if not self.decisions:
            return ""
        return json.dumps([d.to_dict() for d in self.decisions], ensure_ascii=False, indent=2)


class DecisionSource(abc.ABC):
    """External decision maker (typically an LLM client)."""

    @abc.abstractmethod
    async def get_decisions(
        self,
        ctx: DecisionContext,
        custom_prompt: str = "",
        override_base_prompt: bool = False,
        template: str = "",
    ) -> DecisionBundle:
        """Return a bundle or raise DecisionSourceError (optionally with a partial bundle)."""
        raise NotImplementedError


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _extract_json_text(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    start = text.find("[")
    end = text.rfind("]")
    if start != -1 and end > start:
        return text[start:end + 1]
    return text.strip()


def parse_decisions(payload: Any) -> List[Decision]:
    """Parse a decision list from a JSON array, a dict list, or model text.

    Model output often wraps the array in a ```json fence or surrounds it with
    prose; both are tolerated. Anything that is not a list of objects raises
    DecisionSourceError.
    """
    if isinstance(payload, str):
        raw = _extract_json_text(payload)
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DecisionSourceError(f"Decision payload is not valid JSON: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("decisions", [payload])
    if not isinstance(payload, list):
        raise DecisionSourceError(f"Decision payload must be a list, got {type(payload).__name__}")
    out: List[Decision] = []
    for item in payload:
        if not isinstance(item, dict):
            raise DecisionSourceError(f"Decision entry must be an object, got {item!r}")
        out.append(Decision.from_dict(item))
    return out


class StaticDecisionSource(DecisionSource):
    """Replays queued bundles; used for dry runs and tests."""

    def __init__(self, bundles: Optional[List[DecisionBundle]] = None):
        self._bundles: List[DecisionBundle] = list(bundles or [])
        self.contexts: List[DecisionContext] = []

    def push(self, bundle: DecisionBundle) -> None:
        self._bundles.append(bundle)

    async def get_decisions(
        self,
        ctx: DecisionContext,
        custom_prompt: str = "",
        override_base_prompt: bool = False,
        template: str = "",
    ) -> DecisionBundle:
        self.contexts.append(ctx)
        if not self._bundles:
            return DecisionBundle()
        return self._bundles.pop(0)
