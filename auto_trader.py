#!/usr/bin/env python3
"""
Decision cycle orchestrator.

One AutoTrader per trading identity. Each cycle:
  pause check -> daily reset -> balance resync -> context build ->
  decision fetch -> auto-protection injection -> priority sort ->
  sequential execution -> persistence.

The drawdown monitor runs beside the cycle loop for the engine's lifetime;
`stop()` signals it and waits for it to finish.
"""

import asyncio
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from candidate_pool import CandidatePool
from circuit_breaker import LossStreakBreaker
from decision_logger import DecisionLogger, SqliteBalanceStore
from decision_models import AccountSnapshot, Decision, DecisionRecord, action_priority
from decision_source import (
    AccountInfo,
    DecisionBundle,
    DecisionContext,
    DecisionSource,
    PositionInfo,
)
from drawdown_monitor import DrawdownMonitor
from env_utils import AUTOTRADER_DB_PATH
from errors import AutoTraderError, DecisionSourceError
from exchanges.base import ExchangeAdapter
from exchanges.registry import create_adapter
from executor import ExecutionConfig, Executor
from logging_utils import add_file_log, get_logger
from market_data import MarketData, MarketDataProvider
from position_cache import PositionStateCache, position_key
from protective_stops import build_auto_stop_loss_decisions, build_auto_take_profit_decisions
from trader_config import AutoTraderConfig, load_config

LOG = get_logger("auto_trader")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sort_decisions_by_priority(decisions: List[Decision]) -> List[Decision]:
    """Closes, then stop/TP updates, then opens, then hold/wait; unknown last.

    Stable: decisions with equal priority keep their original order.
    """
    return sorted(decisions, key=lambda d: action_priority(d.action))


class AutoTrader:
    def __init__(
        self,
        config: AutoTraderConfig,
        adapter: ExchangeAdapter,
        decision_source: DecisionSource,
        market: MarketDataProvider,
        candidate_pool: Optional[CandidatePool] = None,
        decision_logger: Optional[DecisionLogger] = None,
        balance_store: Optional[SqliteBalanceStore] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.config = config
        self.policy = config.risk
        self.adapter = adapter
        self.decision_source = decision_source
        self.market = market
        self.balance_store = balance_store
        self._clock = clock
        self.log = LOG
        self._prefix = f"[{config.name}] "

        self.candidate_pool = candidate_pool or CandidatePool(
            trading_coins=config.trading_coins,
            default_coins=config.default_coins,
            coin_pool_api_url=config.coin_pool_api_url,
            oi_top_api_url=config.oi_top_api_url,
            label=config.name,
        )
        self.decision_logger = decision_logger or DecisionLogger(config.decision_log_dir)

        self.cache = PositionStateCache(self.policy.float_epsilon)
        self.breaker = LossStreakBreaker(self.policy, clock=clock, label=config.name)
        self.executor = Executor(
            adapter,
            market,
            cache=self.cache,
            breaker=self.breaker,
            policy=self.policy,
            config=ExecutionConfig(
                is_cross_margin=config.is_cross_margin,
                btc_eth_leverage=config.btc_eth_leverage,
                altcoin_leverage=config.altcoin_leverage,
                label=config.name,
            ),
            on_realized=self._add_daily_pnl,
        )
        self.monitor = DrawdownMonitor(self.executor, label=config.name)

        now = clock()
        self.initial_balance = float(config.initial_balance)
        self.daily_pnl = 0.0
        self.call_count = 0
        self.start_time = now
        self.last_reset_time = now
        self.last_balance_sync_time = now
        self.is_running = False
        self.custom_prompt = config.custom_prompt
        self.override_base_prompt = config.override_base_prompt
        self.system_prompt_template = config.system_prompt_template
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def create(
        cls,
        config: AutoTraderConfig,
        decision_source: DecisionSource,
        market: MarketDataProvider,
        adapter: Optional[ExchangeAdapter] = None,
        **kwargs: Any,
    ) -> "AutoTrader":
        """Validate config and build an engine; raises ConfigurationError."""
        config.validate()
        if adapter is None:
            adapter = create_adapter(config.exchange, config.exchange_options, LOG)
        LOG.info(
            f"[{config.name}] exchange={config.exchange} margin={'cross' if config.is_cross_margin else 'isolated'} "
            f"model={config.ai_model}"
        )
        return cls(config, adapter, decision_source, market, **kwargs)

    # ------------------------------------------------------------------
    # Identity / customisation
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.config.trader_id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def ai_model(self) -> str:
        return self.config.ai_model

    @property
    def exchange(self) -> str:
        return self.config.exchange

    @property
    def stop_until(self) -> Optional[datetime]:
        return self.breaker.stop_until

    def set_custom_prompt(self, prompt: str) -> None:
        self.custom_prompt = prompt

    def set_override_base_prompt(self, override: bool) -> None:
        self.override_base_prompt = bool(override)

    def set_system_prompt_template(self, template: str) -> None:
        self.system_prompt_template = template

    def get_system_prompt_template(self) -> str:
        return self.system_prompt_template

    def get_peak_pnl_cache(self) -> Dict[str, float]:
        return self.cache.peak_pnl_snapshot()

    def _add_daily_pnl(self, pnl: float) -> None:
        self.daily_pnl += pnl

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the monitor, run one cycle now and then one per scan interval until stop()."""
        self.is_running = True
        self._stop_event = asyncio.Event()
        interval = float(self.config.scan_interval_seconds)
        self.log.info(
            f"{self._prefix}auto trader starting: initial balance {self.initial_balance:.2f} USDT, "
            f"scan every {interval:g}s"
        )
        await self.adapter.initialize()
        self.monitor.start()
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    await self.run_cycle()
                except Exception as exc:
                    self.log.error(f"{self._prefix}cycle failed: {exc}")
                wait = max(0.0, interval - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.monitor.stop()
            self.is_running = False
            self.log.info(f"{self._prefix}auto trader stopped")

    async def stop(self) -> None:
        """Signal the loop and wait for the drawdown monitor to finish."""
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()
        await self.monitor.stop()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _persist(self, record: DecisionRecord) -> None:
        try:
            self.decision_logger.log_decision(record)
        except OSError as exc:
            self.log.error(f"{self._prefix}failed to persist decision record: {exc}")

    async def run_cycle(self) -> DecisionRecord:
        """Run one decision cycle and return its persisted record.

        Raises on context-build and decision-source failures (after the
        partial record has been persisted); per-decision failures are only
        recorded.
        """
        self.call_count += 1
        now = self._clock()
        record = DecisionRecord(cycle_number=self.call_count, timestamp=now)
        self.log.info(f"{self._prefix}decision cycle #{self.call_count}")

        if self.breaker.is_paused(now):
            minutes = self.breaker.remaining(now).total_seconds() / 60
            self.log.info(f"{self._prefix}risk control pause, {minutes:.0f} min remaining")
            record.success = False
            record.error_message = f"risk control pause: {minutes:.0f} min remaining"
            self._persist(record)
            return record

        if now - self.last_reset_time > timedelta(hours=self.policy.daily_reset_hours):
            self.daily_pnl = 0.0
            self.last_reset_time = now
            self.log.info(f"{self._prefix}daily PnL reset")

        await self.auto_sync_balance()

        try:
            ctx = await self.build_context()
        except AutoTraderError as exc:
            record.success = False
            record.error_message = f"failed to build trading context: {exc}"
            self._persist(record)
            raise

        record.account_state = AccountSnapshot(
            total_balance=ctx.account.total_equity,
            available_balance=ctx.account.available_balance,
            total_unrealized_profit=ctx.account.total_pnl,
            position_count=ctx.account.position_count,
            margin_used_pct=ctx.account.margin_used_pct,
        )
        record.positions = [
            {
                "symbol": p.symbol,
                "side": p.side,
                "position_amt": p.quantity,
                "entry_price": p.entry_price,
                "mark_price": p.mark_price,
                "unrealized_profit": p.unrealized_pnl,
                "leverage": p.leverage,
                "liquidation_price": p.liquidation_price,
            }
            for p in ctx.positions
        ]
        record.candidate_coins = [c.symbol for c in ctx.candidate_coins]
        self.log.info(
            f"{self._prefix}equity {ctx.account.total_equity:.2f} USDT | available "
            f"{ctx.account.available_balance:.2f} | positions {ctx.account.position_count}"
        )

        bundle = await self._fetch_decisions(ctx, record)

        decisions = list(bundle.decisions)
        auto_tp = build_auto_take_profit_decisions(ctx.positions, ctx.market_data, decisions, self.cache, self.policy)
        decisions.extend(auto_tp)
        auto_sl = build_auto_stop_loss_decisions(ctx.positions, ctx.market_data, decisions, self.cache, self.policy)
        decisions.extend(auto_sl)
        if auto_tp or auto_sl:
            record.decision_json = DecisionBundle(decisions=decisions).decisions_json()

        ordered = sort_decisions_by_priority(decisions)
        for i, d in enumerate(ordered, 1):
            self.log.info(f"{self._prefix}  [{i}] {d.symbol} {d.action}")

        for d in ordered:
            action = await self.executor.execute(d)
            if not action.leverage:
                action.leverage = d.leverage
            record.decisions.append(action)
            if action.success:
                record.execution_log.append(f"{d.symbol} {d.action} ok")
                if self.policy.post_success_delay_seconds > 0:
                    await asyncio.sleep(self.policy.post_success_delay_seconds)
            else:
                record.execution_log.append(f"{d.symbol} {d.action} failed: {action.error}")

        self._persist(record)
        return record

    async def _fetch_decisions(self, ctx: DecisionContext, record: DecisionRecord) -> DecisionBundle:
        self.log.info(f"{self._prefix}requesting decisions (template {self.system_prompt_template})")
        try:
            bundle = await self.decision_source.get_decisions(
                ctx,
                custom_prompt=self.custom_prompt,
                override_base_prompt=self.override_base_prompt,
                template=self.system_prompt_template,
            )
        except DecisionSourceError as exc:
            partial = exc.bundle if isinstance(exc.bundle, DecisionBundle) else None
            self._fail_with_bundle(record, partial, exc)
            raise
        except Exception as exc:
            self._fail_with_bundle(record, None, exc)
            raise DecisionSourceError(str(exc)) from exc

        record.system_prompt = bundle.system_prompt
        record.input_prompt = bundle.user_prompt
        record.cot_trace = bundle.cot_trace
        record.decision_json = bundle.decisions_json()
        return bundle

    def _fail_with_bundle(self, record: DecisionRecord, bundle: Optional[DecisionBundle], exc: Exception) -> None:
        if bundle is not None:
            record.system_prompt = bundle.system_prompt
            record.input_prompt = bundle.user_prompt
            record.cot_trace = bundle.cot_trace
            record.decision_json = bundle.decisions_json()
            if bundle.cot_trace:
                self.log.warning(f"{self._prefix}chain of thought before failure:\n{bundle.cot_trace}")
        record.success = False
        record.error_message = f"decision source failed: {exc}"
        self.log.error(f"{self._prefix}decision source failed: {exc}")
        self._persist(record)

    # ------------------------------------------------------------------
    # Balance resync
    # ------------------------------------------------------------------

    async def auto_sync_balance(self) -> bool:
        """Rewrite the initial-balance baseline after deposits / withdrawals.

        Runs at most once per sync interval; returns True when the baseline
        changed. The sync clock advances even when the balance query fails.
        """
        now = self._clock()
        if now - self.last_balance_sync_time < timedelta(minutes=self.policy.balance_sync_minutes):
            return False
        self.log.info(f"{self._prefix}checking balance drift")
        try:
            balance = await self.adapter.get_balance()
        except AutoTraderError as exc:
            self.log.warning(f"{self._prefix}balance query failed: {exc}")
            self.last_balance_sync_time = now
            return False

        actual = balance.wallet if balance.wallet > 0 else balance.available
        if actual <= 0:
            self.log.warning(f"{self._prefix}no usable balance in venue response")
            self.last_balance_sync_time = now
            return False

        old = self.initial_balance
        changed = False
        if old <= 0:
            self.log.warning(f"{self._prefix}invalid baseline {old:.2f}; replacing with {actual:.2f} USDT")
            changed = True
        else:
            change_pct = (actual - old) / old * 100
            if abs(change_pct) > self.policy.balance_sync_drift_pct:
                self.log.info(f"{self._prefix}balance moved {old:.2f} -> {actual:.2f} USDT ({change_pct:+.2f}%)")
                changed = True
            else:
                self.log.info(f"{self._prefix}balance drift {change_pct:+.2f}% within tolerance")

        if changed:
            self.initial_balance = actual
            self._persist_balance(actual)
        self.last_balance_sync_time = now
        return changed

    def _persist_balance(self, balance: float) -> None:
        if self.balance_store is None:
            self.log.info(f"{self._prefix}no balance store; baseline updated in memory only")
            return
        try:
            self.balance_store.update_initial_balance(self.config.user_id, self.config.trader_id, balance)
        except sqlite3.Error as exc:
            self.log.error(f"{self._prefix}failed to persist baseline: {exc}")

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def build_context(self) -> DecisionContext:
        balance = await self.adapter.get_balance()
        total_equity = balance.wallet + balance.unrealized
        snapshots = await self.adapter.get_positions()

        positions: List[PositionInfo] = []
        live_keys = []
        total_margin = 0.0
        now_ms = int(self._clock().timestamp() * 1000)
        for pos in snapshots:
            if pos.quantity == 0:
                continue
            total_margin += pos.margin_used
            key = position_key(pos.symbol, pos.side)
            live_keys.append(key)
            first_seen = self.cache.mark_first_seen(pos.symbol, pos.side, now_ms)
            positions.append(PositionInfo(
                symbol=pos.symbol,
                side=pos.side,
                entry_price=pos.entry_price,
                mark_price=pos.mark_price,
                quantity=pos.quantity,
                leverage=pos.leverage,
                unrealized_pnl=pos.unrealized_pnl,
                unrealized_pnl_pct=pos.unrealized_pnl_pct,
                liquidation_price=pos.liquidation_price,
                margin_used=pos.margin_used,
                update_time_ms=first_seen,
            ))
        self.cache.prune_first_seen(live_keys)
        self.cache.prune_peak_pnl(live_keys)

        candidates = await self.candidate_pool.get_candidates()

        total_pnl = total_equity - self.initial_balance
        total_pnl_pct = total_pnl / self.initial_balance * 100 if self.initial_balance > 0 else 0.0
        margin_pct = total_margin / total_equity * 100 if total_equity > 0 else 0.0

        performance = None
        try:
            performance = self.decision_logger.analyze_performance(self.policy.performance_window).to_dict()
        except OSError as exc:
            self.log.warning(f"{self._prefix}performance analysis failed: {exc}")

        market: Dict[str, MarketData] = {}
        for p in positions:
            try:
                market[p.symbol] = await self.market.get(p.symbol)
            except AutoTraderError as exc:
                self.log.warning(f"{self._prefix}market data for {p.symbol} unavailable: {exc}")

        return DecisionContext(
            current_time=self._clock().strftime("%Y-%m-%d %H:%M:%S"),
            runtime_minutes=int((self._clock() - self.start_time).total_seconds() // 60),
            call_count=self.call_count,
            account=AccountInfo(
                total_equity=total_equity,
                available_balance=balance.available,
                total_pnl=total_pnl,
                total_pnl_pct=total_pnl_pct,
                margin_used=total_margin,
                margin_used_pct=margin_pct,
                position_count=len(positions),
            ),
            positions=positions,
            candidate_coins=candidates,
            performance=performance,
            btc_eth_leverage=self.config.btc_eth_leverage,
            altcoin_leverage=self.config.altcoin_leverage,
            max_daily_loss=self.config.max_daily_loss,
            max_drawdown=self.config.max_drawdown,
            market_data=market,
        )

    # ------------------------------------------------------------------
    # Status / introspection
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        stop_until = self.breaker.stop_until
        return {
            "trader_id": self.id,
            "trader_name": self.name,
            "ai_model": self.ai_model,
            "exchange": self.exchange,
            "is_running": self.is_running,
            "start_time": self.start_time.isoformat(),
            "runtime_minutes": int((now - self.start_time).total_seconds() // 60),
            "call_count": self.call_count,
            "initial_balance": self.initial_balance,
            "scan_interval_seconds": self.config.scan_interval_seconds,
            "stop_until": stop_until.isoformat() if stop_until else None,
            "consecutive_losses": self.breaker.consecutive_losses,
            "last_reset_time": self.last_reset_time.isoformat(),
            "system_prompt_template": self.system_prompt_template,
        }

    async def get_account_info(self) -> Dict[str, Any]:
        balance = await self.adapter.get_balance()
        positions = await self.adapter.get_positions()
        total_equity = balance.wallet + balance.unrealized
        total_margin = sum(p.margin_used for p in positions)
        total_unrealized = sum(p.unrealized_pnl for p in positions)
        total_pnl = total_equity - self.initial_balance
        return {
            "total_equity": total_equity,
            "wallet_balance": balance.wallet,
            "unrealized_profit": balance.unrealized,
            "available_balance": balance.available,
            "total_pnl": total_pnl,
            "total_pnl_pct": total_pnl / self.initial_balance * 100 if self.initial_balance > 0 else 0.0,
            "total_unrealized_pnl": total_unrealized,
            "initial_balance": self.initial_balance,
            "daily_pnl": self.daily_pnl,
            "position_count": len(positions),
            "margin_used": total_margin,
            "margin_used_pct": total_margin / total_equity * 100 if total_equity > 0 else 0.0,
        }

    async def get_positions(self) -> List[Dict[str, Any]]:
        """Open positions with PnL% measured on margin."""
        out: List[Dict[str, Any]] = []
        for pos in await self.adapter.get_positions():
            out.append({
                "symbol": pos.symbol,
                "side": pos.side,
                "entry_price": pos.entry_price,
                "mark_price": pos.mark_price,
                "quantity": pos.quantity,
                "leverage": pos.leverage,
                "unrealized_pnl": pos.unrealized_pnl,
                "unrealized_pnl_pct": pos.unrealized_pnl / pos.margin_used * 100 if pos.margin_used > 0 else 0.0,
                "liquidation_price": pos.liquidation_price,
                "margin_used": pos.margin_used,
            })
        return out


def build_auto_trader(
    decision_source: DecisionSource,
    market: MarketDataProvider,
    config_path: Optional[str] = None,
    adapter: Optional[ExchangeAdapter] = None,
    balance_db_path: Optional[str] = None,
) -> AutoTrader:
    """Load trader.yaml (plus env overrides) and build a validated engine.

    Also mirrors the component logs into the decision log directory and
    opens the sqlite baseline store (AUTOTRADER_DB_PATH by default).
    """
    config = load_config(config_path)
    add_file_log(config.decision_log_dir)
    store = SqliteBalanceStore(balance_db_path or AUTOTRADER_DB_PATH)
    return AutoTrader.create(config, decision_source, market, adapter=adapter, balance_store=store)
