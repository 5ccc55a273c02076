from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RiskDecision:
    allowed: bool
    reason: str


class RiskGate:
    """
    Single source of truth for whether new positions may be opened.

    - entries (BUY) must pass this gate
    - exits are never gated here; the position monitor runs regardless
    """

    def __init__(self, *, state_store, positions, max_open_per_symbol: int = 1):
        self.state_store = state_store
        self.positions = positions
        self.max_open_per_symbol = int(max_open_per_symbol)

    def check_global_trading(self) -> RiskDecision:
        if self.state_store.kill_switch():
            return RiskDecision(allowed=False, reason="kill_switch_active")
        if not self.state_store.trading_enabled():
            return RiskDecision(allowed=False, reason="trading_disabled")
        return RiskDecision(allowed=True, reason="ok")

    def validate_order(self, symbol: str, risk_amount: float) -> RiskDecision:
        g = self.check_global_trading()
        if not g.allowed:
            return g

        if risk_amount <= 0:
            return RiskDecision(allowed=False, reason="non_positive_risk_amount")

        open_n = self.positions.count_open(symbol)
        if open_n >= self.max_open_per_symbol:
            return RiskDecision(
                allowed=False,
                reason=f"max_open_positions_reached:{open_n}/{self.max_open_per_symbol}",
            )

        return RiskDecision(allowed=True, reason="ok")
