#!/usr/bin/env python3
"""
Drawdown monitor.

Background asyncio task. Every interval it walks the open positions, keeps
the peak ROI per position and force-closes any position that has retraced
by the leverage profile's drawdown% from a peak above breakeven. Positions
that are not closed get the ATR/ROI stop ratchet instead.

Stop is cooperative: the stop event is only observed between ticks and
`stop()` waits for the task to finish instead of cancelling it.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from errors import ExchangeError
from exchanges.base import DEFAULT_POSITION_LEVERAGE
from executor import Executor
from logging_utils import get_logger
from protective_stops import position_roi_pct
from risk_policy import roi_profile_for

LOG = get_logger("drawdown_monitor")


class DrawdownMonitor:
    def __init__(self, executor: Executor, interval_seconds: Optional[float] = None, label: str = ""):
        self.executor = executor
        self.cache = executor.cache
        self.interval = float(
            interval_seconds if interval_seconds is not None else executor.policy.monitor_interval_seconds
        )
        self._prefix = f"[{label}] " if label else ""
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        LOG.info(f"{self._prefix}drawdown monitor started (every {self.interval:g}s)")

    async def stop(self) -> None:
        """Signal the loop and join it; an in-flight tick runs to completion."""
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        if task is not None:
            await task
        self._task = None
        LOG.info(f"{self._prefix}drawdown monitor stopped")

    async def _run(self) -> None:
        stop_event = self._stop_event
        if stop_event is None:
            return
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_once()
            except Exception:
                LOG.exception(f"{self._prefix}drawdown tick failed")

    async def check_once(self) -> List[str]:
        """One monitoring pass; returns keys of positions emergency-closed."""
        self.ticks += 1
        try:
            positions = await self.executor.adapter.get_positions()
        except ExchangeError as exc:
            LOG.error(f"{self._prefix}drawdown monitor: get positions failed: {exc}")
            return []

        live = [p for p in positions if p.quantity >= self.executor.policy.float_epsilon]
        self.cache.prune_peak_pnl(p.key for p in live)

        closed: List[str] = []
        for pos in live:
            leverage = pos.leverage if pos.leverage > 0 else DEFAULT_POSITION_LEVERAGE
            current = position_roi_pct(pos.side, pos.entry_price, pos.mark_price, leverage)
            peak = self.cache.update_peak_pnl(pos.symbol, pos.side, current)

            if peak > 0 and current < peak:
                drawdown = (peak - current) / peak * 100
                profile = roi_profile_for(leverage)
                if peak >= profile.breakeven and drawdown >= profile.drawdown:
                    LOG.warning(
                        f"{self._prefix}drawdown stop {pos.symbol} {pos.side}: ROI {current:.2f}% "
                        f"peak {peak:.2f}% retrace {drawdown:.2f}%"
                    )
                    try:
                        await self.executor.emergency_close(pos.symbol, pos.side)
                    except ExchangeError as exc:
                        LOG.error(f"{self._prefix}drawdown close failed ({pos.symbol} {pos.side}): {exc}")
                    else:
                        self.cache.clear_peak_pnl(pos.symbol, pos.side)
                        closed.append(pos.key)
                        continue

            await self.executor.apply_dynamic_protection(pos)
        return closed
