from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

log = logging.getLogger("spotforge.cooldown")

# seconds per close reason
COOLDOWN_SECONDS: Dict[str, int] = {
    "stop_loss": 60 * 60,
    "manual_sell": 30 * 60,
    "take_profit": 15 * 60,
}


@dataclass(frozen=True)
class CooldownEntry:
    symbol: str
    reason: str
    closed_at: float  # epoch seconds
    duration_seconds: int
    loss_percent: Optional[float] = None

    @property
    def expires_at(self) -> float:
        return self.closed_at + self.duration_seconds

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_dict(self, now: float) -> dict:
        return {
            "symbol": self.symbol,
            "reason": self.reason,
            "closed_at": self.closed_at,
            "expires_at": self.expires_at,
            "remaining_seconds": round(self.remaining(now), 1),
            "loss_percent": self.loss_percent,
        }


class SymbolCooldown:
    """
    In-memory re-entry suppression after a close. Expired entries are evicted
    lazily on lookup. Not persisted: a restart clears every cooldown.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CooldownEntry] = {}

    def add(self, symbol: str, reason: str, loss_percent: Optional[float] = None) -> CooldownEntry:
        if reason not in COOLDOWN_SECONDS:
            raise ValueError(f"unknown cooldown reason: {reason}")
        entry = CooldownEntry(
            symbol=symbol.upper(),
            reason=reason,
            closed_at=self.clock(),
            duration_seconds=COOLDOWN_SECONDS[reason],
            loss_percent=loss_percent,
        )
        with self._lock:
            self._entries[entry.symbol] = entry
        log.info("cooldown added %s reason=%s for %dmin", entry.symbol, reason, entry.duration_seconds // 60)
        return entry

    def _live(self, symbol: str, now: float) -> Optional[CooldownEntry]:
        # caller holds the lock
        e = self._entries.get(symbol)
        if e is None:
            return None
        if now >= e.expires_at:
            del self._entries[symbol]
            log.info("cooldown expired %s", symbol)
            return None
        return e

    def get(self, symbol: str) -> Optional[CooldownEntry]:
        with self._lock:
            return self._live(symbol.upper(), self.clock())

    def is_on_cooldown(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def remaining_seconds(self, symbol: str) -> float:
        now = self.clock()
        with self._lock:
            e = self._live(symbol.upper(), now)
        return e.remaining(now) if e else 0.0

    def active(self) -> List[CooldownEntry]:
        now = self.clock()
        with self._lock:
            return [e for e in (self._live(s, now) for s in list(self._entries)) if e is not None]

    def remove(self, symbol: str) -> bool:
        with self._lock:
            removed = self._entries.pop(symbol.upper(), None) is not None
        if removed:
            log.info("cooldown removed %s", symbol.upper())
        return removed

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
        log.info("cooldowns cleared (%d)", n)
        return n
