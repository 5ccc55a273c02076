from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Dict, Optional

log = logging.getLogger("spotforge.filters")

DEFAULT_MIN_NOTIONAL = Decimal("10")


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    min_notional: Decimal
    base_asset: str = ""
    quote_asset: str = ""


def _get_filter(symbol_info: dict, *filter_types: str) -> Optional[dict]:
    for ft in filter_types:
        for f in symbol_info.get("filters", []):
            if f.get("filterType") == ft:
                return f
    return None


def extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    symbol = symbol.upper()

    for s in exchange_info.get("symbols", []):
        if s.get("symbol") != symbol:
            continue

        # LOT_SIZE → qty rules
        lot = _get_filter(s, "LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")

        step = Decimal(lot["stepSize"])
        minq = Decimal(lot["minQty"])

        # spot uses NOTIONAL now, older listings still carry MIN_NOTIONAL
        notional = _get_filter(s, "NOTIONAL", "MIN_NOTIONAL")
        min_notional = DEFAULT_MIN_NOTIONAL
        if notional and notional.get("minNotional") is not None:
            min_notional = Decimal(str(notional["minNotional"]))

        return SymbolFilters(
            symbol=symbol,
            step_size=step,
            min_qty=minq,
            min_notional=min_notional,
            base_asset=(s.get("baseAsset") or "").upper(),
            quote_asset=(s.get("quoteAsset") or "").upper(),
        )

    raise ValueError(f"Symbol not found in exchangeInfo: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def round_qty(qty, step_size) -> Decimal:
    """
    Round quantity DOWN to nearest valid stepSize.
    step_size can be Decimal or float/string.
    """
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_DOWN) * step


def ceil_qty(qty, step_size) -> Decimal:
    """Round quantity UP to the next stepSize multiple."""
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_UP) * step


def format_qty(qty: Decimal, step_size) -> str:
    """Plain decimal string with exactly the step's decimal places (no exponent)."""
    step_d = _to_decimal(step_size)
    places = max(0, -step_d.normalize().as_tuple().exponent)
    return f"{_to_decimal(qty).quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN):f}"


class FilterCache:
    """
    Per-process cache of symbol filters. exchangeInfo is fetched once per
    symbol; filters do not change while the process runs.
    """

    def __init__(self, client):
        self.client = client
        self._lock = threading.Lock()
        self._cache: Dict[str, SymbolFilters] = {}

    def get(self, symbol: str) -> SymbolFilters:
        symbol = symbol.upper()
        with self._lock:
            hit = self._cache.get(symbol)
        if hit is not None:
            return hit

        info = self.client.exchange_info(symbol)
        f = extract_filters(info, symbol)
        with self._lock:
            self._cache.setdefault(symbol, f)
        log.info(
            "filters cached %s step=%s min_qty=%s min_notional=%s",
            symbol, f.step_size, f.min_qty, f.min_notional,
        )
        return f
