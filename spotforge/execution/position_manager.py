from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from spotforge.core.models import Position, PositionStatus


def sl_tp_prices(entry_price: float, stop_loss_percent: float, take_profit_percent: float) -> Tuple[float, float]:
    """LONG stop / take-profit prices from percent distances below / above entry."""
    stop = entry_price * (1 - float(stop_loss_percent) / 100.0)
    take = entry_price * (1 + float(take_profit_percent) / 100.0)
    return stop, take


def validate_sl_tp(side: str, entry_price: float, stop_loss: float, take_profit: float) -> None:
    """Spot positions are LONG only: stop_loss < entry_price < take_profit, else ValueError."""
    if (side or "").upper() != "LONG":
        raise ValueError(f"Invalid side: {side}")
    if not (stop_loss < entry_price < take_profit):
        raise ValueError(f"Invalid SL/TP for LONG: sl={stop_loss} entry={entry_price} tp={take_profit}")


@dataclass(frozen=True)
class TrailingParams:
    enabled: bool
    activation_percent: float
    distance_percent: float


@dataclass(frozen=True)
class PositionUpdate:
    current_price: float
    highest_price: float
    stop_loss_price: float
    exit_status: Optional[PositionStatus]
    reason: str
    stop_moved: bool = False


def _gain_pct(entry: float, price: float) -> float:
    if not entry or entry <= 0:
        return 0.0
    return (price - entry) / entry * 100.0


def evaluate_position(position: Position, price: float, trailing: TrailingParams) -> PositionUpdate:
    """
    One monitor tick for an OPEN LONG position. Pure; the caller persists the result.

    highest = max(highest, price), then in priority:
      1) price <= stop        -> STOPPED_OUT
      2) price >= take-profit -> TAKE_PROFIT
      3) trailing (enabled on the position and in config, gain >= activation):
         candidate = highest * (1 - distance%), floored at entry, stop only raised
    """
    highest = max(position.highest_price or 0.0, price)
    stop = position.stop_loss_price

    if price <= stop:
        return PositionUpdate(price, highest, stop, PositionStatus.STOPPED_OUT, "stop_loss_hit")

    if price >= position.take_profit_price:
        return PositionUpdate(price, highest, stop, PositionStatus.TAKE_PROFIT, "take_profit_hit")

    if trailing.enabled and position.trailing_enabled:
        gain = _gain_pct(position.entry_price, price)
        if gain >= trailing.activation_percent:
            candidate = highest * (1 - trailing.distance_percent / 100.0)
            # never allow a loss once trailing has activated
            candidate = max(candidate, position.entry_price)
            if candidate > stop:
                return PositionUpdate(price, highest, candidate, None, "trailing_raised", stop_moved=True)
            return PositionUpdate(price, highest, stop, None, "trailing_active")

    return PositionUpdate(price, highest, stop, None, "hold")
