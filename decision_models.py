#!/usr/bin/env python3
"""Decision payloads and per-cycle record types."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Action tags
OPEN_LONG = "open_long"
OPEN_SHORT = "open_short"
CLOSE_LONG = "close_long"
CLOSE_SHORT = "close_short"
UPDATE_STOP_LOSS = "update_stop_loss"
UPDATE_TAKE_PROFIT = "update_take_profit"
PARTIAL_CLOSE = "partial_close"
HOLD = "hold"
WAIT = "wait"

OPEN_ACTIONS = (OPEN_LONG, OPEN_SHORT)
CLOSE_ACTIONS = (CLOSE_LONG, CLOSE_SHORT)
KNOWN_ACTIONS = frozenset({
    OPEN_LONG, OPEN_SHORT, CLOSE_LONG, CLOSE_SHORT,
    UPDATE_STOP_LOSS, UPDATE_TAKE_PROFIT, PARTIAL_CLOSE, HOLD, WAIT,
})

# Rationale prefixes for internally synthesized decisions
AUTO_TP_TAG = "[auto_tp]"
AUTO_SL_TAG = "[auto_sl]"
AUTO_PROTECT_TAG = "[auto_protect]"

UNKNOWN_ACTION_PRIORITY = 999
_ACTION_PRIORITY = {
    CLOSE_LONG: 1,
    CLOSE_SHORT: 1,
    PARTIAL_CLOSE: 1,
    UPDATE_STOP_LOSS: 2,
    UPDATE_TAKE_PROFIT: 2,
    OPEN_LONG: 3,
    OPEN_SHORT: 3,
    HOLD: 4,
    WAIT: 4,
}


def action_priority(action: str) -> int:
    """Closes first, then protective updates, then opens, then no-ops."""
    return _ACTION_PRIORITY.get(action, UNKNOWN_ACTION_PRIORITY)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return int(default)


@dataclass
class Decision:
    """One intended action from the decision source (or synthesized)."""
    symbol: str
    action: str
    leverage: int = 0
    position_size_usd: float = 0.0
    risk_usd: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    new_stop_loss: float = 0.0
    new_take_profit: float = 0.0
    close_percentage: float = 0.0
    confidence: int = 0
    reasoning: str = ""

    @property
    def is_synthesized(self) -> bool:
        return self.reasoning.startswith((AUTO_TP_TAG, AUTO_SL_TAG, AUTO_PROTECT_TAG))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        return cls(
            symbol=str(data.get("symbol") or "").strip().upper(),
            action=str(data.get("action") or "").strip().lower(),
            leverage=_as_int(data.get("leverage")),
            position_size_usd=_as_float(data.get("position_size_usd")),
            risk_usd=_as_float(data.get("risk_usd")),
            stop_loss=_as_float(data.get("stop_loss")),
            take_profit=_as_float(data.get("take_profit")),
            new_stop_loss=_as_float(data.get("new_stop_loss")),
            new_take_profit=_as_float(data.get("new_take_profit")),
            close_percentage=_as_float(data.get("close_percentage")),
            confidence=_as_int(data.get("confidence")),
            reasoning=str(data.get("reasoning") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActionRecord:
    """Outcome of executing one decision."""
    action: str
    symbol: str
    quantity: float = 0.0
    leverage: int = 0
    price: float = 0.0
    order_id: Optional[str] = None
    realized_pnl: Optional[float] = None
    timestamp: datetime = field(default_factory=_utc_now)
    success: bool = False
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class AccountSnapshot:
    total_balance: float = 0.0
    available_balance: float = 0.0
    total_unrealized_profit: float = 0.0
    position_count: int = 0
    margin_used_pct: float = 0.0


@dataclass
class DecisionRecord:
    """Everything persisted for one orchestrator cycle."""
    cycle_number: int = 0
    timestamp: datetime = field(default_factory=_utc_now)
    system_prompt: str = ""
    input_prompt: str = ""
    cot_trace: str = ""
    decision_json: str = ""
    account_state: AccountSnapshot = field(default_factory=AccountSnapshot)
    positions: List[Dict[str, Any]] = field(default_factory=list)
    candidate_coins: List[str] = field(default_factory=list)
    decisions: List[ActionRecord] = field(default_factory=list)
    execution_log: List[str] = field(default_factory=list)
    success: bool = True
    error_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "timestamp": self.timestamp.isoformat(),
            "system_prompt": self.system_prompt,
            "input_prompt": self.input_prompt,
            "cot_trace": self.cot_trace,
            "decision_json": self.decision_json,
            "account_state": asdict(self.account_state),
            "positions": list(self.positions),
            "candidate_coins": list(self.candidate_coins),
            "decisions": [d.to_dict() for d in self.decisions],
            "execution_log": list(self.execution_log),
            "success": self.success,
            "error_message": self.error_message,
        }
