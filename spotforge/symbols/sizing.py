# spotforge/symbols/sizing.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict

from spotforge.exchange.binance.filters import ceil_qty, format_qty, round_qty


class ZeroPriceRisk(ValueError):
    """Stop price equals entry price: risk-based quantity is undefined."""


def _d(x: Any) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


# ---------------- RISK MATH ----------------


def trading_capital(free_balance: float, max_capital_percent: float) -> float:
    return float(free_balance) * float(max_capital_percent) / 100.0


def risk_amount(capital: float, risk_per_trade_percent: float) -> float:
    return float(capital) * float(risk_per_trade_percent) / 100.0


def quantity_for_risk(risk: float, entry_price: float, stop_price: float) -> float:
    """quantity = risk / |entry - stop|"""
    per_unit = abs(float(entry_price) - float(stop_price))
    if per_unit == 0:
        raise ZeroPriceRisk(f"entry_price == stop_price ({entry_price})")
    return float(risk) / per_unit


# ---------------- QUANTIZATION ----------------


@dataclass
class SizeResult:
    qty: float
    qty_str: str
    notional: float
    min_notional_required: float
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.reason == "ok"


def _reject(reason: str, min_notional: Decimal, notional: Decimal = Decimal(0), **details) -> SizeResult:
    return SizeResult(
        qty=0.0,
        qty_str="0",
        notional=float(notional),
        min_notional_required=float(min_notional),
        reason=reason,
        details=details,
    )


def size_entry(
    *,
    symbol: str,
    price: float,
    raw_qty: float,
    filters: Any,
    capital: float,
    min_notional_buffer: float = 1.2,
) -> SizeResult:
    """
    Entry quantization:
      - floor to stepSize
      - below minQty -> qty_below_min_qty
      - notional below minNotional * buffer -> raise qty to the smallest step multiple
        that clears it (buffer keeps the position closeable after a drawdown)
      - notional above trading capital -> insufficient_capital
    """
    px = _d(price)
    step = _d(getattr(filters, "step_size", "0"))
    min_qty = _d(getattr(filters, "min_qty", "0"))
    min_notional = _d(getattr(filters, "min_notional", "0"))
    buffered = min_notional * _d(min_notional_buffer)

    if px <= 0:
        return _reject("invalid_price", buffered, symbol=symbol, price=float(price))

    raw = _d(raw_qty)
    qty = round_qty(raw, step)

    if qty <= 0 or (min_qty > 0 and qty < min_qty):
        return _reject(
            "qty_below_min_qty",
            buffered,
            symbol=symbol,
            raw_qty=str(raw),
            qty_rounded=str(qty),
            min_qty=str(min_qty),
            step_size=str(step),
        )

    notional = qty * px
    raised = False
    if buffered > 0 and notional < buffered:
        qty = ceil_qty(buffered / px, step)
        notional = qty * px
        raised = True

    if _d(capital) < notional:
        return _reject(
            "insufficient_capital",
            buffered,
            notional,
            symbol=symbol,
            qty=str(qty),
            capital=float(capital),
            raised_to_min_notional=raised,
        )

    return SizeResult(
        qty=float(qty),
        qty_str=format_qty(qty, step),
        notional=float(notional),
        min_notional_required=float(buffered),
        reason="ok",
        details={
            "symbol": symbol,
            "price": float(px),
            "raw_qty": str(raw),
            "qty": str(qty),
            "step_size": str(step),
            "min_qty": str(min_qty),
            "notional": float(notional),
            "raised_to_min_notional": raised,
        },
    )


def size_exit(*, symbol: str, price: float, qty: float, filters: Any) -> SizeResult:
    """
    Exit quantization: floor the held quantity to stepSize. No buffer and no raise;
    a sell below minQty / minNotional would be rejected by the exchange.
    """
    px = _d(price)
    step = _d(getattr(filters, "step_size", "0"))
    min_qty = _d(getattr(filters, "min_qty", "0"))
    min_notional = _d(getattr(filters, "min_notional", "0"))

    q = round_qty(_d(qty), step)
    notional = q * px

    if q <= 0 or (min_qty > 0 and q < min_qty):
        return _reject("qty_below_min_qty", min_notional, notional, symbol=symbol, qty=str(q), min_qty=str(min_qty))
    if min_notional > 0 and notional < min_notional:
        return _reject(
            "below_min_notional",
            min_notional,
            notional,
            symbol=symbol,
            qty=str(q),
            notional=float(notional),
        )

    return SizeResult(
        qty=float(q),
        qty_str=format_qty(q, step),
        notional=float(notional),
        min_notional_required=float(min_notional),
        reason="ok",
        details={"symbol": symbol, "qty": str(q), "notional": float(notional)},
    )
