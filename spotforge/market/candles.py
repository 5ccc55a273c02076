from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

log = logging.getLogger("spotforge.market")

# symbol -> interval -> candles (oldest first)
CandleSets = Dict[str, Dict[str, List["Candle"]]]


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


def _parse_row(k: Sequence) -> Optional[Candle]:
    """
    Binance kline format:
    [openTime, open, high, low, close, volume, closeTime, ...]
    """
    try:
        vals = [float(k[i]) for i in range(1, 6)]
        open_time = int(k[0])
        close_time = int(k[6])
    except (TypeError, ValueError, IndexError):
        return None
    if not all(math.isfinite(v) for v in vals):
        return None
    o, h, l, c, v = vals
    return Candle(open_time, o, h, l, c, v, close_time)


def parse_klines(raw: Iterable[Sequence]) -> List[Candle]:
    """Parse raw klines; rows with missing / non-numeric / non-finite fields are dropped."""
    out: List[Candle] = []
    dropped = 0
    for k in raw or []:
        c = _parse_row(k)
        if c is None:
            dropped += 1
            continue
        out.append(c)
    if dropped:
        log.warning("dropped %d invalid kline rows", dropped)
    return out


def fetch_candles(client, symbol: str, interval: str, limit: int) -> List[Candle]:
    return parse_klines(client.klines(symbol, interval=interval, limit=limit))


def fetch_candle_sets(
    client,
    symbols: Sequence[str],
    intervals: Sequence[Tuple[str, int]],
    workers: int = 8,
) -> Tuple[CandleSets, Dict[str, str]]:
    """
    Fetch every (symbol, interval) pair concurrently.

    Returns (candle_sets, failures). A symbol with any failed interval is left
    out of candle_sets and reported in failures; other symbols are unaffected.
    """
    sets: CandleSets = {}
    failures: Dict[str, str] = {}
    if not symbols:
        return sets, failures

    jobs = [(s, iv, lim) for s in symbols for (iv, lim) in intervals]
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(jobs)))) as pool:
        futs = {pool.submit(fetch_candles, client, s, iv, lim): (s, iv) for (s, iv, lim) in jobs}
        for fut in as_completed(futs):
            sym, iv = futs[fut]
            try:
                candles = fut.result()
            except Exception as e:
                log.error("candle fetch failed %s %s: %s", sym, iv, e)
                failures.setdefault(sym, f"fetch_failed:{iv}:{e}")
                continue
            sets.setdefault(sym, {})[iv] = candles

    for sym in failures:
        sets.pop(sym, None)
    return sets, failures
