#!/usr/bin/env python3
"""
Decision history persistence.

- DecisionLogger: append-only JSONL, one DecisionRecord per cycle, plus a
  rolling performance summary over the last N records.
- SqliteBalanceStore: persists the rewritten initial-balance baseline keyed by
  (user_id, trader_id).
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from decision_models import CLOSE_ACTIONS, OPEN_ACTIONS, PARTIAL_CLOSE, DecisionRecord
from logging_utils import get_logger

DECISIONS_FILE = "decisions.jsonl"
RECENT_TRADES_LIMIT = 10


@dataclass
class PerformanceSummary:
    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    open_count: int = 0
    close_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_realized_pnl: float = 0.0
    recent_trades: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DecisionLogger:
    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self.path = self.log_dir / DECISIONS_FILE
        self.log = get_logger("decision_logger")
        self._lock = threading.Lock()

    def log_decision(self, record: DecisionRecord) -> None:
        """Append one cycle record; I/O errors propagate to the caller."""
        line = json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False)
        with self._lock:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_records(self, last_n: Optional[int] = None) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        if last_n is not None:
            lines = lines[-last_n:] if last_n > 0 else []
        out: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                self.log.warning(f"Skipping corrupt decision record in {self.path}")
        return out

    def analyze_performance(self, last_n: int = 100) -> PerformanceSummary:
        """Summarise the last `last_n` cycle records."""
        summary = PerformanceSummary()
        trades: List[Dict[str, Any]] = []
        for rec in self.read_records(last_n):
            summary.total_cycles += 1
            if rec.get("success", False):
                summary.successful_cycles += 1
            else:
                summary.failed_cycles += 1
            for action in rec.get("decisions") or []:
                if not action.get("success"):
                    continue
                kind = action.get("action")
                if kind in OPEN_ACTIONS:
                    summary.open_count += 1
                elif kind in CLOSE_ACTIONS or kind == PARTIAL_CLOSE:
                    summary.close_count += 1
                    pnl = action.get("realized_pnl")
                    if pnl is None:
                        continue
                    pnl = float(pnl)
                    summary.total_realized_pnl += pnl
                    if pnl > 0:
                        summary.winning_trades += 1
                    elif pnl < 0:
                        summary.losing_trades += 1
                    trades.append({
                        "symbol": action.get("symbol"),
                        "action": kind,
                        "quantity": action.get("quantity"),
                        "price": action.get("price"),
                        "realized_pnl": pnl,
                        "timestamp": action.get("timestamp"),
                    })
        decided = summary.winning_trades + summary.losing_trades
        if decided:
            summary.win_rate = summary.winning_trades / decided * 100
        summary.recent_trades = trades[-RECENT_TRADES_LIMIT:]
        return summary


class SqliteBalanceStore:
    """Initial-balance baseline per (user_id, trader_id)."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.log = get_logger("decision_logger")
        self._ensure_table()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30.0)

    def _ensure_table(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trader_balances (
                    user_id TEXT NOT NULL,
                    trader_id TEXT NOT NULL,
                    initial_balance REAL NOT NULL,
                    updated_at REAL DEFAULT (strftime('%s', 'now')),
                    PRIMARY KEY (user_id, trader_id)
                )
            """)
            conn.commit()

    def update_initial_balance(self, user_id: str, trader_id: str, balance: float) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trader_balances (user_id, trader_id, initial_balance, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, trader_id)
                DO UPDATE SET initial_balance = excluded.initial_balance, updated_at = excluded.updated_at
                """,
                (user_id, trader_id, float(balance), time.time()),
            )
            conn.commit()
        self.log.info(f"Persisted initial balance {balance:.2f} for {user_id}/{trader_id}")

    def get_initial_balance(self, user_id: str, trader_id: str) -> Optional[float]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT initial_balance FROM trader_balances WHERE user_id = ? AND trader_id = ?",
                (user_id, trader_id),
            ).fetchone()
        return float(row[0]) if row else None
