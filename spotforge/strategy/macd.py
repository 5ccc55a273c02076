from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from spotforge.strategy.base import Bias, Decision, MacdSnapshot, Signal, Strategy, hold
from spotforge.strategy.indicators import MacdPoint, macd_series, macd_stats

log = logging.getLogger("spotforge.strategy.macd")

BIAS_INTERVAL = "1d"
TRIGGER_INTERVAL = "4h"
CONFIRM_INTERVAL = "1h"

BIAS_LIMIT = 80
TRIGGER_LIMIT = 100
CONFIRM_LIMIT = 100

CROSS_LOOKBACK = 20
STATS_LOOKBACK = 120
MIN_BIAS_POINTS = 10
MIN_TRIGGER_POINTS = 30
MIN_CANDLES = 26
BIAS_SEPARATION_RATIO = 0.05
SIGNAL_SCORE = 3.0


@dataclass(frozen=True)
class Trigger:
    direction: Optional[str]  # LONG/SHORT, None on failure
    reason: str  # ok/no_crossover/bias_mismatch/weak_strength
    point: Optional[MacdPoint] = None
    threshold: Optional[float] = None


def daily_bias(points: Sequence[MacdPoint]) -> Bias:
    """
    BULLISH: macd > signal > 0 with separation above 5% of the series' MACD range.
    BEARISH: mirror image. Anything else (including short or flat series) is NEUTRAL.
    """
    if len(points) < MIN_BIAS_POINTS:
        return Bias.NEUTRAL

    last = points[-1]
    stats = macd_stats(points, len(points))
    if stats.range <= 0:
        return Bias.NEUTRAL
    min_sep = stats.range * BIAS_SEPARATION_RATIO

    if last.macd > last.signal > 0 and last.macd - last.signal > min_sep:
        return Bias.BULLISH
    if last.macd < last.signal < 0 and last.signal - last.macd > min_sep:
        return Bias.BEARISH
    return Bias.NEUTRAL


def find_recent_crossover(points: Sequence[MacdPoint], lookback: int = CROSS_LOOKBACK) -> Optional[Tuple[int, str]]:
    """Most recent crossover within `lookback` points as (position, LONG|SHORT), else None."""
    start = max(1, len(points) - lookback)
    for i in range(len(points) - 1, start - 1, -1):
        prev, cur = points[i - 1], points[i]
        if prev.macd <= prev.signal and cur.macd > cur.signal:
            return i, "LONG"
        if prev.macd >= prev.signal and cur.macd < cur.signal:
            return i, "SHORT"
    return None


def trigger_signal(points: Sequence[MacdPoint], bias: Bias) -> Trigger:
    if len(points) < MIN_TRIGGER_POINTS:
        return Trigger(None, "no_crossover")

    found = find_recent_crossover(points)
    if found is None:
        return Trigger(None, "no_crossover")

    i, direction = found
    point = points[i]
    expected = "LONG" if bias == Bias.BULLISH else "SHORT"
    if direction != expected:
        return Trigger(None, "bias_mismatch", point=point)

    stats = macd_stats(points, min(STATS_LOOKBACK, len(points)))
    if direction == "LONG":
        threshold = stats.p75
        strong = point.macd >= threshold
    else:
        threshold = stats.p25
        strong = point.macd <= threshold

    if not strong:
        return Trigger(None, "weak_strength", point=point, threshold=threshold)
    return Trigger(direction, "ok", point=point, threshold=threshold)


def confirm_histogram(points: Sequence[MacdPoint], direction: str) -> bool:
    """Last three bars share the trigger's sign and at least one step expands in magnitude."""
    if len(points) < 3:
        return False
    h0, h1, h2 = (p.histogram for p in points[-3:])
    if direction == "LONG":
        return h0 > 0 and h1 > 0 and h2 > 0 and (h1 > h0 or h2 > h1)
    if direction == "SHORT":
        return h0 < 0 and h1 < 0 and h2 < 0 and (h1 < h0 or h2 < h1)
    return False


class MacdStrategy(Strategy):
    """Three gates: daily bias -> 4h crossover trigger -> 1h histogram confirmation."""

    name = "macd"

    def required_intervals(self, config=None) -> List[Tuple[str, int]]:
        return [
            (BIAS_INTERVAL, BIAS_LIMIT),
            (TRIGGER_INTERVAL, TRIGGER_LIMIT),
            (CONFIRM_INTERVAL, CONFIRM_LIMIT),
        ]

    def decide(self, symbol: str, candles: Dict[str, Sequence], config=None) -> Decision:
        d1 = candles.get(BIAS_INTERVAL) or []
        h4 = candles.get(TRIGGER_INTERVAL) or []
        h1 = candles.get(CONFIRM_INTERVAL) or []
        price = h1[-1].close if h1 else (h4[-1].close if h4 else None)

        # Gate 1: bias
        if len(d1) < MIN_CANDLES:
            return hold(symbol, f"insufficient_candles:{BIAS_INTERVAL}", price=price, payload=MacdSnapshot())
        bias = daily_bias(macd_series(d1))
        if bias == Bias.NEUTRAL:
            return hold(symbol, "bias_neutral", price=price, payload=MacdSnapshot(bias=bias))

        # Gate 2: trigger
        if len(h4) < MIN_CANDLES:
            return hold(symbol, f"insufficient_candles:{TRIGGER_INTERVAL}", price=price, payload=MacdSnapshot(bias=bias))
        trig = trigger_signal(macd_series(h4), bias)
        snap = MacdSnapshot(
            bias=bias,
            crossover_macd=trig.point.macd if trig.point else None,
            crossover_open_time=trig.point.open_time if trig.point else None,
            strength_threshold=trig.threshold,
        )
        if trig.direction is None:
            return hold(symbol, trig.reason, price=price, payload=snap)

        # Gate 3: confirmation
        if len(h1) < MIN_CANDLES:
            return hold(symbol, f"insufficient_candles:{CONFIRM_INTERVAL}", price=price, payload=snap)
        confirmed = confirm_histogram(macd_series(h1), trig.direction)
        snap = MacdSnapshot(
            bias=bias,
            trigger_direction=trig.direction,
            crossover_macd=snap.crossover_macd,
            crossover_open_time=snap.crossover_open_time,
            strength_threshold=snap.strength_threshold,
            histogram_confirmed=confirmed,
        )
        if not confirmed:
            return hold(symbol, "histogram_not_confirmed", price=price, payload=snap)

        sig = Signal.BUY if trig.direction == "LONG" else Signal.SELL
        log.info("%s MACD %s (bias=%s)", symbol, sig.value, bias.value)
        return Decision(
            symbol=symbol,
            signal=sig,
            score=SIGNAL_SCORE,
            reason=f"macd_{trig.direction.lower()}_confirmed",
            price=price,
            payload=snap,
        )
