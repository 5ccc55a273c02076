from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from spotforge.core.config import Settings, settings
from spotforge.exchange.binance.client import BinanceSpotClient
from spotforge.exchange.binance.errors import BinanceError
from spotforge.exchange.binance.filters import FilterCache
from spotforge.execution.executor import ExecResult, OrderExecutor
from spotforge.execution.position_monitor import PositionMonitor
from spotforge.market.candles import fetch_candle_sets
from spotforge.ops.context import cycle_scope, set_run_id
from spotforge.persistence.audit import Audit
from spotforge.persistence.db import DB, utc_now_iso
from spotforge.persistence.decisions import DecisionLog
from spotforge.persistence.orders import OrderStore
from spotforge.persistence.positions import PositionStore
from spotforge.persistence.state_store import KILL_SWITCH, TRADING_ENABLED, BotStateStore
from spotforge.persistence.strategy_config import StrategyConfigStore
from spotforge.risk.cooldown import SymbolCooldown
from spotforge.risk.gate import RiskGate
from spotforge.strategy.base import Decision, Strategy, hold
from spotforge.strategy.config_cache import StrategyConfig, StrategyConfigCache
from spotforge.strategy.macd import MacdStrategy
from spotforge.strategy.threshold import ThresholdStrategy
from spotforge.symbols.universe import SymbolDiscovery

log = logging.getLogger("spotforge.runner")


class RunnerAlreadyRunning(RuntimeError):
    pass


def build_strategy(name: str) -> Strategy:
    if name == "macd":
        return MacdStrategy()
    if name == "simple":
        return ThresholdStrategy()
    raise ValueError(f"unknown strategy: {name}")


class BotRunner:
    """
    Owns every collaborator and all mutable loop state (no module globals).

    run_once() is synchronous and drives one iteration; start()/stop() manage the
    background asyncio task that calls it every LOOP_SECONDS.
    """

    def __init__(self, client, *, s: Settings = settings, db: Optional[DB] = None):
        self.client = client
        self.s = s

        # ---- Persistence ----
        self.db = db or DB(s.DB_PATH)
        self.audit = Audit(self.db, s.AUDIT_JSONL_PATH)
        self.state_store = BotStateStore(self.db)
        self.state_store.seed(kill_switch=s.BOT_KILL_SWITCH, trading_enabled=s.TRADING_ENABLED)
        self.orders = OrderStore(self.db)
        self.positions = PositionStore(self.db)
        self.decision_log = DecisionLog(self.db)

        # ---- Strategy ----
        self.strategy = build_strategy(s.STRATEGY)
        self.config_cache = StrategyConfigCache(
            StrategyConfigStore(self.db),
            StrategyConfig.from_settings(s),
            ttl_seconds=s.STRATEGY_CONFIG_TTL_SECONDS,
        )

        # ---- Risk / execution ----
        self.cooldown = SymbolCooldown()
        self.filters = FilterCache(client)
        self.risk_gate = RiskGate(
            state_store=self.state_store,
            positions=self.positions,
            max_open_per_symbol=s.MAX_OPEN_POSITIONS_PER_SYMBOL,
        )
        self.executor = OrderExecutor(
            client,
            filters=self.filters,
            orders=self.orders,
            positions=self.positions,
            risk_gate=self.risk_gate,
            cooldown=self.cooldown,
            config_provider=self.config_cache.get,
            base_asset=s.BASE_ASSET,
            max_capital_percent=s.MAX_TRADING_CAPITAL_PERCENT,
            min_notional_buffer=s.MIN_NOTIONAL_BUFFER,
            order_delay_seconds=s.ORDER_DELAY_SECONDS,
            audit=self.audit,
        )
        self.monitor = PositionMonitor(
            client,
            positions=self.positions,
            executor=self.executor,
            config_provider=self.config_cache.get,
            audit=self.audit,
        )
        self.discovery = SymbolDiscovery(client, s)

        # ---- Loop state ----
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.run_id: Optional[str] = None
        self.started_at: Optional[str] = None
        self.cycle_count = 0
        self.last_cycle_at: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_summary: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "BotRunner":
        client = BinanceSpotClient(
            api_key=s.BINANCE_API_KEY,
            api_secret=s.BINANCE_API_SECRET,
            base_url=s.BINANCE_BASE_URL,
            recv_window=s.BINANCE_RECV_WINDOW,
            max_retries=s.BINANCE_MAX_RETRIES,
        )
        # timestamp safety before the first signed call
        try:
            client.sync_time()
        except BinanceError as e:
            log.warning("initial time sync failed: %s", e)
        return cls(client, s=s)

    # ------------------------------------------------------------------
    # one iteration
    # ------------------------------------------------------------------
    @contextmanager
    def cycle_guard(self):
        """Prevent overlapping iterations (loop + manual trigger)."""
        acquired = self._cycle_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._cycle_lock.release()

    def run_once(self) -> Dict[str, Any]:
        with self.cycle_guard() as acquired:
            if not acquired:
                log.warning("iteration skipped: previous iteration still running")
                return {"skipped": True, "reason": "cycle_already_running"}

            with cycle_scope(str(uuid.uuid4())) as cycle_id:
                summary = self._iterate(cycle_id)

            self.cycle_count += 1
            self.last_cycle_at = utc_now_iso()
            self.last_summary = summary
            return summary

    def _iterate(self, cycle_id: str) -> Dict[str, Any]:
        t0 = time.monotonic()
        summary: Dict[str, Any] = {"cycle_id": cycle_id, "skipped": False}

        # 1) symbols
        selection = self.discovery.refresh()
        symbols = list(selection.symbols)
        summary["symbols"] = symbols
        summary["symbol_source"] = selection.source

        # 2) exits first, never gated by the trading flag
        try:
            report = self.monitor.monitor()
            summary["monitor"] = {
                "checked": report.checked,
                "exits": [r.reason for r in report.exits],
                "stops_raised": report.stops_raised,
                "errors": report.errors,
            }
        except Exception as e:
            log.error("position monitor failed: %s", e, exc_info=True)
            summary["monitor"] = {"error": f"{type(e).__name__}: {e}"}

        # 3) global gate for entries
        gate = self.risk_gate.check_global_trading()
        if not gate.allowed:
            log.info("entries skipped: %s", gate.reason)
            summary.update(entries="skipped", gate_reason=gate.reason, decisions=[], results=[])
            summary["elapsed_seconds"] = round(time.monotonic() - t0, 3)
            return summary

        # 4) market data (fan-out, per-symbol failure tolerance)
        cfg = self.config_cache.get()
        candle_sets, failures = fetch_candle_sets(
            self.client,
            symbols,
            self.strategy.required_intervals(cfg),
            workers=self.s.FETCH_WORKERS,
        )

        # 5) decide
        decisions: List[Decision] = []
        for sym in symbols:
            if sym not in candle_sets:
                continue
            decisions.append(self._decide(sym, candle_sets[sym], cfg))

        # 6) execute (sequential)
        results: List[ExecResult] = self.executor.execute_decisions(decisions)

        summary.update(
            entries="evaluated",
            failures=failures,
            decisions=[
                {"symbol": d.symbol, "signal": d.signal.value, "score": d.score, "reason": d.reason}
                for d in decisions
            ],
            results=[
                {"symbol": r.symbol, "action": r.action, "success": r.success, "reason": r.reason}
                for r in results
            ],
        )
        summary["elapsed_seconds"] = round(time.monotonic() - t0, 3)

        try:
            self.audit.event(
                "CYCLE",
                action="CYCLE_END",
                details={
                    "symbols": len(symbols),
                    "failed": sorted(failures),
                    "orders": sum(1 for r in results if r.success),
                    "elapsed_seconds": summary["elapsed_seconds"],
                },
            )
        except Exception as e:
            log.warning("cycle audit write failed: %s", e)
        return summary

    def _decide(self, symbol: str, candles, cfg: StrategyConfig) -> Decision:
        try:
            d = self.strategy.decide(symbol, candles, cfg)
        except Exception as e:
            log.error("strategy failed for %s: %s", symbol, e, exc_info=True)
            d = hold(symbol, f"strategy_error:{type(e).__name__}")
        try:
            self.decision_log.log(d, strategy=self.strategy.name)
        except Exception as e:
            log.warning("decision log write failed for %s: %s", symbol, e)
        return d

    # ------------------------------------------------------------------
    # background loop
    # ------------------------------------------------------------------
    def start(self) -> Dict[str, Any]:
        """
        Must be called from inside a running event loop.
        Raises ValueError on fatal config, RunnerAlreadyRunning when already started.
        """
        loop = asyncio.get_running_loop()

        for w in self.s.validate_runtime():
            log.warning("config: %s", w)

        with self._state_lock:
            if self._running or (self._task is not None and not self._task.done()):
                raise RunnerAlreadyRunning("runner already running")
            self._running = True

        self.run_id = str(uuid.uuid4())
        set_run_id(self.run_id)
        self.started_at = utc_now_iso()
        self.last_error = None
        self._stop_event = asyncio.Event()
        self.audit.start_run(self.run_id, self.strategy.name, self.s.LOOP_SECONDS)

        self._task = loop.create_task(self._run_loop(), name="spotforge-loop")
        log.info("runner started run_id=%s strategy=%s every %.1fs", self.run_id, self.strategy.name, self.s.LOOP_SECONDS)
        return self.status()

    async def _run_loop(self) -> None:
        interval = float(self.s.LOOP_SECONDS)
        run_id = self.run_id
        try:
            while self.is_running():
                t0 = time.monotonic()
                try:
                    await asyncio.to_thread(self.run_once)
                except Exception as e:
                    # iterations never take the loop down
                    self.last_error = f"{type(e).__name__}: {e}"
                    log.error("iteration failed: %s", e, exc_info=True)

                if not self.is_running():
                    break

                elapsed = time.monotonic() - t0
                delay = interval - elapsed
                if delay < 0:
                    log.warning("iteration overran interval by %.2fs", -delay)
                    delay = 0.0
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            with self._state_lock:
                self._running = False
            if run_id:
                self.audit.stop_run(run_id)
            log.info("runner stopped run_id=%s", run_id)

    def stop(self) -> bool:
        """Cooperative: the loop exits at the next iteration boundary."""
        with self._state_lock:
            was_running = self._running
            self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        return was_running

    async def wait_stopped(self, timeout: Optional[float] = None) -> None:
        task = self._task
        if task is None or task.done():
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    # ------------------------------------------------------------------
    # accessors (thin pass-throughs for the control surface)
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "run_id": self.run_id,
            "strategy": self.strategy.name,
            "loop_seconds": self.s.LOOP_SECONDS,
            "started_at": self.started_at,
            "last_cycle_at": self.last_cycle_at,
            "cycle_count": self.cycle_count,
            "last_error": self.last_error,
            "flags": {
                "kill_switch": self.state_store.kill_switch(),
                "trading_enabled": self.state_store.trading_enabled(),
            },
        }

    def symbols(self) -> Dict[str, Any]:
        sel = self.discovery.current()
        if sel is None:
            return {"symbols": [], "source": None, "last_fetched": None}
        return {"symbols": sel.symbols, "source": sel.source, "last_fetched": sel.last_fetched}

    def open_positions(self) -> List[dict]:
        return [p.to_dict() for p in self.positions.open_positions()]

    def closed_positions(self, limit: int = 100) -> List[dict]:
        return [p.to_dict() for p in self.positions.closed_positions(limit)]

    def position_stats(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        return self.positions.stats(symbol)

    def daily_stats(self, days: int = 30) -> List[dict]:
        return self.positions.daily_stats(days)

    def cooldowns(self) -> List[dict]:
        now = self.cooldown.clock()
        return [e.to_dict(now) for e in self.cooldown.active()]

    def close_position(self, position_id: int, force: bool = True) -> ExecResult:
        return self.monitor.close_position_manually(position_id, force=force)

    def update_stop_loss(self, position_id: int, stop_loss_price: float) -> Optional[float]:
        return self.monitor.update_stop_loss(position_id, stop_loss_price)

    def remove_cooldown(self, symbol: str) -> bool:
        return self.cooldown.remove(symbol)

    def clear_cooldowns(self) -> int:
        return self.cooldown.clear()

    def strategy_config(self) -> Dict[str, Any]:
        return self.config_cache.get().to_dict()

    def update_strategy_config(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        cfg = self.config_cache.update(changes)
        self.audit.event("CONFIG", action="STRATEGY_CONFIG_UPDATED", details=changes)
        return cfg.to_dict()

    def set_trading_enabled(self, on: bool) -> None:
        self.state_store.set_flag(TRADING_ENABLED, on)
        self.audit.event("FLAG", action="TRADING_ENABLED", details={"value": on})

    def set_kill_switch(self, on: bool) -> None:
        self.state_store.set_flag(KILL_SWITCH, on)
        self.audit.event("FLAG", action="KILL_SWITCH", details={"value": on})
