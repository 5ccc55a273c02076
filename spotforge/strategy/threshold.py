from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Sequence, Tuple

from spotforge.strategy.base import Decision, Signal, Strategy, ThresholdSnapshot, hold
from spotforge.strategy.config_cache import StrategyConfig
from spotforge.strategy.indicators import (
    InsufficientData,
    cci,
    ema,
    momentum_percent,
    rsi,
    sma,
    window_change_percent,
)

log = logging.getLogger("spotforge.strategy.threshold")

CCI_STRONG = 100.0


class ThresholdStrategy(Strategy):
    """
    Hard gates first (any failure -> HOLD, score 0):
      trend_sma          SMA(short) > SMA(long)
      price_above_short  close > SMA(short)
      ma_fast_gt_slow    MA(7) > MA(99)

    Then a weighted score:
      EMA(short) vs EMA(long)        +2 / -2
      momentum vs threshold          +1 / -1
      RSI inside band / overbought   +1 / -2
      CCI                            +2 (>100) +1 (>0) -1 (<0) -2 (<-100)
      trend-window change            +1 / -1

    BUY if score >= buy threshold, SELL if score <= sell threshold, else HOLD.
    """

    name = "simple"

    def required_intervals(self, config: StrategyConfig) -> List[Tuple[str, int]]:
        return [(config.interval, config.candle_limit)]

    @staticmethod
    def min_candles(config: StrategyConfig) -> int:
        return max(
            config.sma_long_period,
            config.sma_short_period,
            config.ma_slow_period,
            config.ema_long_period,
            config.rsi_period + 1,
            config.cci_period,
            config.momentum_period,
        )

    def decide(self, symbol: str, candles: Dict[str, Sequence], config: StrategyConfig) -> Decision:
        series = candles.get(config.interval) or []
        if not series:
            return hold(symbol, "no_candle_data")

        closes = [c.close for c in series]
        price = closes[-1]

        need = self.min_candles(config)
        if len(closes) < need:
            return hold(symbol, f"insufficient_candles:need={need},got={len(closes)}", price=price)

        try:
            sma_short = sma(closes, config.sma_short_period)
            sma_long = sma(closes, config.sma_long_period)
            ma_fast = sma(closes, config.ma_fast_period)
            ma_slow = sma(closes, config.ma_slow_period)
        except InsufficientData as e:
            return hold(symbol, str(e), price=price)

        snap = ThresholdSnapshot(sma_short=sma_short, sma_long=sma_long, ma_fast=ma_fast, ma_slow=ma_slow)

        # ---------------- GATES ----------------
        gates = (
            ("trend_sma", sma_short > sma_long),
            ("price_above_short", price > sma_short),
            ("ma_fast_gt_slow", ma_fast > ma_slow),
        )
        for gate, ok in gates:
            if not ok:
                return hold(symbol, f"gate_failed:{gate}", price=price, payload=replace(snap, failed_gate=gate))

        # ---------------- SCORE ----------------
        try:
            ema_short = ema(closes, config.ema_short_period)
            ema_long = ema(closes, config.ema_long_period)
            rsi_v = rsi(closes, config.rsi_period)
            cci_v = cci(series, config.cci_period)
            mom = momentum_percent(closes, config.momentum_period)
            trend = window_change_percent(closes, config.trend_window)
        except InsufficientData as e:
            return hold(symbol, str(e), price=price, payload=snap)

        snap = replace(
            snap,
            ema_short=ema_short,
            ema_long=ema_long,
            rsi=rsi_v,
            cci=cci_v,
            momentum_pct=mom,
            window_change_pct=trend,
        )

        score = 0
        parts: List[str] = []

        if ema_short > ema_long:
            score += 2
            parts.append("ema_up")
        elif ema_short < ema_long:
            score -= 2
            parts.append("ema_down")

        if mom > config.momentum_threshold_percent:
            score += 1
            parts.append("momentum_up")
        elif mom < -config.momentum_threshold_percent:
            score -= 1
            parts.append("momentum_down")

        if rsi_v >= config.rsi_overbought:
            score -= 2
            parts.append("rsi_overbought")
        elif rsi_v > config.rsi_oversold:
            score += 1
            parts.append("rsi_in_band")

        if cci_v > CCI_STRONG:
            score += 2
            parts.append("cci_strong")
        elif cci_v > 0:
            score += 1
            parts.append("cci_positive")
        elif cci_v < -CCI_STRONG:
            score -= 2
            parts.append("cci_weak")
        elif cci_v < 0:
            score -= 1
            parts.append("cci_negative")

        if trend > 0:
            score += 1
            parts.append("window_up")
        elif trend < 0:
            score -= 1
            parts.append("window_down")

        if score >= config.buy_score_threshold:
            sig = Signal.BUY
        elif score <= config.sell_score_threshold:
            sig = Signal.SELL
        else:
            sig = Signal.HOLD

        reason = f"score={score}:" + ",".join(parts) if parts else f"score={score}"
        log.debug("%s %s score=%s rsi=%.1f cci=%.1f mom=%.2f%%", symbol, sig.value, score, rsi_v, cci_v, mom)
        return Decision(symbol=symbol, signal=sig, score=float(score), reason=reason, price=price, payload=snap)
