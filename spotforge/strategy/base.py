from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union


class Signal(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Bias(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class ThresholdSnapshot:
    """Indicator values behind a threshold-scored decision (None = not computed)."""

    sma_short: Optional[float] = None
    sma_long: Optional[float] = None
    ma_fast: Optional[float] = None
    ma_slow: Optional[float] = None
    ema_short: Optional[float] = None
    ema_long: Optional[float] = None
    rsi: Optional[float] = None
    cci: Optional[float] = None
    momentum_pct: Optional[float] = None
    window_change_pct: Optional[float] = None
    failed_gate: Optional[str] = None
    kind: str = "threshold"


@dataclass(frozen=True)
class MacdSnapshot:
    bias: Bias = Bias.NEUTRAL
    trigger_direction: Optional[str] = None  # LONG/SHORT
    crossover_macd: Optional[float] = None
    crossover_open_time: Optional[int] = None
    strength_threshold: Optional[float] = None
    histogram_confirmed: Optional[bool] = None
    kind: str = "macd"


Payload = Union[ThresholdSnapshot, MacdSnapshot]


@dataclass(frozen=True)
class Decision:
    symbol: str
    signal: Signal
    score: float
    reason: str
    price: Optional[float] = None
    payload: Optional[Payload] = None

    @property
    def actionable(self) -> bool:
        return self.signal in (Signal.BUY, Signal.SELL)


def hold(symbol: str, reason: str, price: Optional[float] = None, payload: Optional[Payload] = None) -> Decision:
    return Decision(symbol=symbol, signal=Signal.HOLD, score=0.0, reason=reason, price=price, payload=payload)


class Strategy:
    """
    Pure (candles, config) -> Decision. Strategies never fetch data or config themselves.
    """

    name: str = "base"

    def required_intervals(self, config) -> List[Tuple[str, int]]:
        raise NotImplementedError

    def decide(self, symbol: str, candles: Dict[str, Sequence], config) -> Decision:
        raise NotImplementedError
