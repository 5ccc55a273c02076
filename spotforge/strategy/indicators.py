from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

CCI_CONSTANT = 0.015


class InsufficientData(ValueError):
    """Series too short for the requested period."""

    def __init__(self, indicator: str, needed: int, got: int):
        self.indicator = indicator
        self.needed = needed
        self.got = got
        super().__init__(f"not_enough_data:{indicator} need={needed} got={got}")


def _require(indicator: str, values: Sequence, needed: int) -> None:
    if len(values) < needed:
        raise InsufficientData(indicator, needed, len(values))


def sma(values: Sequence[float], period: int) -> float:
    _require("sma", values, period)
    return sum(values[-period:]) / float(period)


def ema(values: Sequence[float], period: int) -> float:
    """
    Seeded with the first value, then smoothed with k = 2/(period+1) over every value.
    ema([1, 3], 2) == 2.333...
    """
    _require("ema", values, period)
    k = 2 / (period + 1)
    e = values[0]
    for v in values[1:]:
        e = v * k + e * (1 - k)
    return e


def ema_series(values: Sequence[float], period: int) -> List[Optional[float]]:
    """
    Index-aligned EMA: out[i] corresponds to values[i], None until index period-1,
    where the series is seeded with the period-SMA.
    """
    out: List[Optional[float]] = [None] * len(values)
    if period < 1 or len(values) < period:
        return out
    k = 2 / (period + 1)
    e = sum(values[:period]) / float(period)
    out[period - 1] = e
    for i in range(period, len(values)):
        e = values[i] * k + e * (1 - k)
        out[i] = e
    return out


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """Wilder's RSI. avg loss of 0 yields 100."""
    _require("rsi", closes, period + 1)

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i - 1]
        g = diff if diff > 0 else 0.0
        l = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + g) / period
        avg_loss = (avg_loss * (period - 1) + l) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def cci(candles: Sequence, period: int = 20) -> float:
    """(TP - SMA(TP)) / (0.015 * mean deviation); a flat window yields 0."""
    _require("cci", candles, period)
    tps = [(c.high + c.low + c.close) / 3.0 for c in candles[-period:]]
    mean_tp = sum(tps) / period
    mean_dev = sum(abs(tp - mean_tp) for tp in tps) / period
    if mean_dev == 0:
        return 0.0
    return (tps[-1] - mean_tp) / (CCI_CONSTANT * mean_dev)


def percent_change(old: float, new: float) -> float:
    if old == 0:
        raise InsufficientData("percent_change", 1, 0)
    return (new - old) / old * 100.0


def momentum_percent(closes: Sequence[float], periods: int = 10) -> float:
    """% change from the close `periods` bars back (inclusive window) to the last close."""
    _require("momentum", closes, periods)
    return percent_change(closes[-periods], closes[-1])


def window_change_percent(closes: Sequence[float], window: int = 240) -> float:
    """% change over the last `window` closes, or over the whole series when shorter."""
    _require("window_change", closes, 2)
    start = closes[-window] if len(closes) >= window else closes[0]
    return percent_change(start, closes[-1])


# ---------------- MACD ----------------


@dataclass(frozen=True)
class MacdPoint:
    index: int  # index into the source candle list
    open_time: int
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class MacdStats:
    min: float
    max: float
    p25: float
    p50: float
    p75: float

    @property
    def range(self) -> float:
        return self.max - self.min


def macd_series(
    candles: Sequence,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> List[MacdPoint]:
    """
    MACD = EMA(fast) - EMA(slow), signal = EMA(signal) of the MACD values.
    Points exist only where all three are defined; `index` keeps the candle alignment.
    """
    if len(candles) < slow:
        return []

    closes = [c.close for c in candles]
    fast_e = ema_series(closes, fast)
    slow_e = ema_series(closes, slow)

    raw_idx: List[int] = []
    raw: List[float] = []
    for i, (f, s) in enumerate(zip(fast_e, slow_e)):
        if f is None or s is None:
            continue
        raw_idx.append(i)
        raw.append(f - s)

    sig = ema_series(raw, signal)

    out: List[MacdPoint] = []
    for j, i in enumerate(raw_idx):
        sv = sig[j]
        if sv is None:
            continue
        out.append(
            MacdPoint(
                index=i,
                open_time=int(candles[i].open_time),
                macd=raw[j],
                signal=sv,
                histogram=raw[j] - sv,
            )
        )
    return out


def macd_stats(points: Sequence[MacdPoint], lookback: int) -> MacdStats:
    """min/max/p25/p50/p75 of the last `lookback` MACD values (nearest-rank percentiles)."""
    vals = sorted(p.macd for p in points[-lookback:]) if lookback > 0 else []
    if not vals:
        return MacdStats(0.0, 0.0, 0.0, 0.0, 0.0)

    n = len(vals)

    def pct(p: float) -> float:
        return vals[max(0, math.ceil(p / 100.0 * n) - 1)]

    return MacdStats(min=vals[0], max=vals[-1], p25=pct(25), p50=pct(50), p75=pct(75))
