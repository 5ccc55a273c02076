from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("spotforge.strategy.config")

_PERIOD_FIELDS = (
    "candle_limit",
    "sma_short_period",
    "sma_long_period",
    "ma_fast_period",
    "ma_slow_period",
    "ema_short_period",
    "ema_long_period",
    "rsi_period",
    "cci_period",
    "momentum_period",
    "trend_window",
)
_PERCENT_FIELDS = (
    "momentum_threshold_percent",
    "stop_loss_percent",
    "take_profit_percent",
    "trailing_stop_activation_percent",
    "trailing_stop_distance_percent",
    "risk_per_trade_percent",
)
_PERIOD_PAIRS = (
    ("sma_short_period", "sma_long_period"),
    ("ma_fast_period", "ma_slow_period"),
    ("ema_short_period", "ema_long_period"),
)


@dataclass(frozen=True)
class StrategyConfig:
    # candles (threshold strategy)
    interval: str = "1m"
    candle_limit: int = 100

    # indicator periods
    sma_short_period: int = 20
    sma_long_period: int = 50
    ma_fast_period: int = 7
    ma_slow_period: int = 99
    ema_short_period: int = 12
    ema_long_period: int = 26
    rsi_period: int = 14
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    cci_period: int = 20
    momentum_period: int = 10
    momentum_threshold_percent: float = 0.5
    trend_window: int = 240

    # entry thresholds
    buy_score_threshold: float = 5.0
    sell_score_threshold: float = -5.0

    # risk / exits
    stop_loss_percent: float = 4.0
    take_profit_percent: float = 5.0
    trailing_stop_enabled: bool = True
    trailing_stop_activation_percent: float = 3.0
    trailing_stop_distance_percent: float = 2.0
    risk_per_trade_percent: float = 2.0

    @classmethod
    def from_settings(cls, s) -> "StrategyConfig":
        return cls(
            interval=s.INTERVAL,
            candle_limit=int(s.CANDLE_LIMIT),
            stop_loss_percent=float(s.STOP_LOSS_PERCENT),
            take_profit_percent=float(s.TAKE_PROFIT_PERCENT),
            trailing_stop_enabled=bool(s.TRAILING_STOP_ENABLED),
            trailing_stop_activation_percent=float(s.TRAILING_STOP_ACTIVATION_PERCENT),
            trailing_stop_distance_percent=float(s.TRAILING_STOP_DISTANCE_PERCENT),
            risk_per_trade_percent=float(s.RISK_PER_TRADE_PERCENT),
        )

    def merged(self, data: Dict[str, Any]) -> "StrategyConfig":
        """Overlay known keys from a stored dict; unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        updates: Dict[str, Any] = {}
        for k, v in (data or {}).items():
            if k not in known or v is None:
                continue
            cur = getattr(self, k)
            if isinstance(cur, bool):
                updates[k] = v if isinstance(v, bool) else str(v).strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(cur, int):
                updates[k] = int(v)
            elif isinstance(cur, float):
                updates[k] = float(v)
            else:
                updates[k] = str(v)
        return replace(self, **updates)

    def validate(self) -> List[str]:
        """Every range violation, empty when the config is usable by the exit logic."""
        errors: List[str] = []
        for name in _PERIOD_FIELDS:
            if getattr(self, name) < 1:
                errors.append(f"{name} must be >= 1")
        for name in _PERCENT_FIELDS:
            v = getattr(self, name)
            if not 0 < v < 100:
                errors.append(f"{name} must be within (0, 100), got {v}")
        if not 0 <= self.rsi_oversold < self.rsi_overbought <= 100:
            errors.append("rsi thresholds must satisfy 0 <= rsi_oversold < rsi_overbought <= 100")
        if self.buy_score_threshold <= self.sell_score_threshold:
            errors.append("buy_score_threshold must be greater than sell_score_threshold")
        for fast, slow in _PERIOD_PAIRS:
            if getattr(self, fast) >= getattr(self, slow):
                errors.append(f"{fast} must be less than {slow}")
        if not self.interval.strip():
            errors.append("interval must not be empty")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StrategyConfigCache:
    """
    TTL cache in front of StrategyConfigStore.

    - at most one store read per TTL
    - store failure / missing row: keep the last good snapshot, else defaults
    - invalidate() forces a re-read on the next get()
    """

    def __init__(
        self,
        store,
        defaults: StrategyConfig,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.defaults = defaults
        self.ttl_seconds = float(ttl_seconds)
        self.clock = clock

        self._lock = threading.Lock()
        self._snapshot: Optional[StrategyConfig] = None
        self._fetched_at: Optional[float] = None

    def get(self) -> StrategyConfig:
        with self._lock:
            now = self.clock()
            if (
                self._snapshot is not None
                and self._fetched_at is not None
                and now - self._fetched_at < self.ttl_seconds
            ):
                return self._snapshot

            try:
                row = self.store.load_active()
            except Exception as e:
                log.warning("strategy config read failed, using %s: %s",
                            "last snapshot" if self._snapshot else "defaults", e)
                row = None
                if self._snapshot is not None:
                    # retry after another TTL, not on every call
                    self._fetched_at = now
                    return self._snapshot
            else:
                if row is None:
                    log.warning("no active strategy config found, using defaults")

            cfg = self.defaults
            if row:
                try:
                    cfg = self.defaults.merged(row)
                except (TypeError, ValueError) as e:
                    log.warning("stored strategy config unreadable, using defaults: %s", e)
                else:
                    errors = cfg.validate()
                    if errors:
                        log.warning("stored strategy config out of range, using defaults: %s", "; ".join(errors))
                        cfg = self.defaults
            self._snapshot = cfg
            self._fetched_at = now
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._fetched_at = None

    def update(self, changes: Dict[str, Any]) -> StrategyConfig:
        """Persist a merged config and drop the cached snapshot. Out-of-range values raise ValueError."""
        cfg = self.get().merged(changes)
        errors = cfg.validate()
        if errors:
            raise ValueError("invalid strategy config: " + "; ".join(errors))
        self.store.save(cfg.to_dict())
        self.invalidate()
        return cfg
