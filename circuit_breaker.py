#!/usr/bin/env python3
"""
Consecutive-loss circuit breaker.

Fed with every realised close. A loss beyond epsilon bumps the streak and
installs a pause deadline from the policy schedule; any gain resets the
streak immediately. The orchestrator skips execution while paused.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from logging_utils import get_logger
from risk_policy import RiskPolicy

LOG = get_logger("circuit_breaker")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LossStreakBreaker:
    def __init__(
        self,
        policy: Optional[RiskPolicy] = None,
        clock: Callable[[], datetime] = _utc_now,
        label: str = "",
    ):
        self.policy = policy or RiskPolicy()
        self._clock = clock
        self._label = f"[{label}] " if label else ""
        self._lock = threading.Lock()
        self.consecutive_losses = 0
        self.stop_until: Optional[datetime] = None

    def now(self) -> datetime:
        return self._clock()

    def record_pnl(self, pnl: float) -> None:
        """Update the streak from one realised PnL."""
        if abs(pnl) < self.policy.float_epsilon:
            return
        with self._lock:
            if pnl < 0:
                self.consecutive_losses += 1
                streak = self.consecutive_losses
                minutes = self.policy.pause_minutes_for_streak(streak)
                if minutes > 0:
                    self.stop_until = self.now() + timedelta(minutes=minutes)
                    LOG.warning(
                        f"{self._label}{streak} consecutive losses; pausing {minutes:g} min "
                        f"until {self.stop_until.strftime('%Y-%m-%d %H:%M')}"
                    )
                else:
                    LOG.warning(f"{self._label}{streak} consecutive loss(es); no pause yet")
            else:
                if self.consecutive_losses > 0:
                    LOG.info(f"{self._label}winning close {pnl:.4f}; loss streak reset")
                self.consecutive_losses = 0

    def is_paused(self, now: Optional[datetime] = None) -> bool:
        with self._lock:
            deadline = self.stop_until
        if deadline is None:
            return False
        return (now or self.now()) < deadline

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        with self._lock:
            deadline = self.stop_until
        if deadline is None:
            return timedelta(0)
        return max(deadline - (now or self.now()), timedelta(0))

    def pause_for(self, minutes: float) -> None:
        """Manual pause (e.g. operator intervention)."""
        with self._lock:
            self.stop_until = self.now() + timedelta(minutes=float(minutes))

    def reset(self) -> None:
        with self._lock:
            self.consecutive_losses = 0
            self.stop_until = None
