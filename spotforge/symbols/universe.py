from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set, Union

log = logging.getLogger("spotforge.symbols")

MIN_24H_GAIN_PERCENT = 0.1


@dataclass(frozen=True)
class SymbolSelection:
    symbols: List[str]
    source: str  # manual/auto
    last_fetched: float


def parse_symbols(raw: Union[str, Iterable[str], None], max_symbols: int = 100) -> List[str]:
    # Accept both CSV string and list[str]
    if raw is None:
        return []
    if isinstance(raw, str):
        symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]
    else:
        symbols = [str(s).strip().upper() for s in raw if str(s).strip()]

    # remove duplicates but keep order
    seen: Set[str] = set()
    unique = []
    for s in symbols:
        if s not in seen:
            seen.add(s)
            unique.append(s)

    return unique[:max_symbols]


def _num(x) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return float("nan")
    return v


def select_top_by_volume(
    tickers: Iterable[dict],
    *,
    quote_suffix: str,
    min_quote_volume: float,
    top_n: int,
    exclude: Iterable[str] = (),
    min_gain_percent: float = MIN_24H_GAIN_PERCENT,
) -> List[str]:
    """Quote-suffix pairs with enough 24h volume and a 24h gain, highest volume first."""
    excluded = set(parse_symbols(list(exclude)))
    picked = []
    for t in tickers or []:
        sym = str(t.get("symbol") or "").upper()
        if not sym.endswith(quote_suffix) or sym in excluded:
            continue
        vol = _num(t.get("quoteVolume"))
        chg = _num(t.get("priceChangePercent"))
        if not math.isfinite(vol) or vol < min_quote_volume:
            continue
        if not math.isfinite(chg) or chg < min_gain_percent:
            continue
        picked.append((vol, sym))

    picked.sort(key=lambda x: x[0], reverse=True)
    return [s for _, s in picked[: max(0, int(top_n))]]


class SymbolDiscovery:
    """
    Current tradable symbol set.

    - manual: MANUAL_SYMBOLS (or SYMBOLS when empty) minus EXCLUDE_SYMBOLS
    - auto:   manual + top-N by 24h quote volume, refreshed every SYMBOL_REFRESH_MINUTES
    A failed refresh keeps the previous set.
    """

    def __init__(self, client, s, clock: Callable[[], float] = time.time):
        self.client = client
        self.s = s
        self.clock = clock
        self._lock = threading.Lock()
        self._current: Optional[SymbolSelection] = None

    def manual_symbols(self) -> List[str]:
        manual = parse_symbols(self.s.MANUAL_SYMBOLS or self.s.SYMBOLS)
        excluded = set(parse_symbols(self.s.EXCLUDE_SYMBOLS))
        return [x for x in manual if x not in excluded]

    def _compute(self) -> SymbolSelection:
        manual = self.manual_symbols()
        now = self.clock()
        if not self.s.AUTO_SYMBOLS:
            return SymbolSelection(manual, "manual", now)

        tickers = self.client.ticker_24h()
        auto = select_top_by_volume(
            tickers if isinstance(tickers, list) else [],
            quote_suffix=self.s.QUOTE_SUFFIX,
            min_quote_volume=float(self.s.MIN_QUOTE_VOLUME_USDT),
            top_n=int(self.s.AUTO_TOP_N),
            exclude=self.s.EXCLUDE_SYMBOLS,
        )
        excluded = set(parse_symbols(self.s.EXCLUDE_SYMBOLS))
        merged = [x for x in parse_symbols(manual + auto) if x not in excluded]
        return SymbolSelection(merged, "auto", now)

    def refresh(self, force: bool = False) -> SymbolSelection:
        with self._lock:
            cur = self._current
            ttl = float(self.s.SYMBOL_REFRESH_MINUTES) * 60.0
            if not force and cur is not None and cur.symbols and self.clock() - cur.last_fetched < ttl:
                return cur

            try:
                nxt = self._compute()
            except Exception as e:
                if cur is not None:
                    log.warning("symbol refresh failed, keeping %d symbols: %s", len(cur.symbols), e)
                    return cur
                log.error("symbol refresh failed, falling back to manual list: %s", e)
                nxt = SymbolSelection(self.manual_symbols(), "manual", self.clock())

            self._current = nxt
            log.info("using %d symbols (%s): %s", len(nxt.symbols), nxt.source, ", ".join(nxt.symbols))
            return nxt

    def current(self) -> Optional[SymbolSelection]:
        with self._lock:
            return self._current
