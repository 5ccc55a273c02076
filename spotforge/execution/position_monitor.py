from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from spotforge.core.models import PositionStatus
from spotforge.execution.executor import ExecResult
from spotforge.execution.position_manager import TrailingParams, evaluate_position

log = logging.getLogger("spotforge.monitor")


@dataclass
class MonitorReport:
    checked: int = 0
    exits: List[ExecResult] = field(default_factory=list)
    stops_raised: int = 0
    errors: List[str] = field(default_factory=list)


class PositionMonitor:
    """
    Runs every iteration regardless of the trading flag: exits must keep working
    while new entries are switched off.
    """

    def __init__(self, client, *, positions, executor, config_provider: Callable, audit=None):
        self.client = client
        self.positions = positions
        self.executor = executor
        self.config_provider = config_provider
        self.audit = audit

    def _trailing(self) -> TrailingParams:
        cfg = self.config_provider()
        return TrailingParams(
            enabled=bool(cfg.trailing_stop_enabled),
            activation_percent=float(cfg.trailing_stop_activation_percent),
            distance_percent=float(cfg.trailing_stop_distance_percent),
        )

    def monitor(self) -> MonitorReport:
        report = MonitorReport()
        open_positions = self.positions.open_positions()
        if not open_positions:
            return report

        trailing = self._trailing()
        for p in open_positions:
            report.checked += 1
            try:
                price = float(self.client.ticker_price(p.symbol))
                upd = evaluate_position(p, price, trailing)

                self.positions.update_price(p.id, upd.current_price)

                if upd.stop_moved:
                    self.positions.update_stop_loss(p.id, upd.stop_loss_price)
                    report.stops_raised += 1
                    log.info(
                        "trailing stop raised %s id=%s %.8f -> %.8f (high=%.8f)",
                        p.symbol, p.id, p.stop_loss_price, upd.stop_loss_price, upd.highest_price,
                    )

                if upd.exit_status is not None:
                    log.info("%s %s id=%s price=%.8f", upd.reason, p.symbol, p.id, price)
                    res = self.executor.close_position(p, upd.exit_status, price=price)
                    report.exits.append(res)
            except Exception as e:
                # one position's failure never blocks the others
                log.error("monitor failed for %s id=%s: %s", p.symbol, p.id, e, exc_info=True)
                report.errors.append(f"{p.symbol}:{p.id}:{type(e).__name__}")

        return report

    # ---------------- ADMIN ----------------

    def close_position_manually(self, position_id: int, force: bool = True) -> ExecResult:
        p = self.positions.get(position_id)
        if p is None:
            return ExecResult(symbol="", action="EXIT", success=False, reason="position_not_found")
        if not p.is_open:
            return ExecResult(symbol=p.symbol, action="EXIT", success=False, reason="position_not_open")
        return self.executor.close_position(p, PositionStatus.CLOSED, force=force)

    def update_stop_loss(self, position_id: int, stop_loss_price: float) -> Optional[float]:
        """
        Operator override. Any value below the current price is accepted, including a
        lower stop; the trailing ratchet only applies to automatic moves.
        """
        p = self.positions.get(position_id)
        if p is None or not p.is_open:
            return None
        price = float(stop_loss_price)
        if price <= 0:
            raise ValueError("stop_loss_price must be > 0")
        if p.current_price and price >= p.current_price:
            raise ValueError(f"stop_loss_price {price} must be below current price {p.current_price}")
        self.positions.update_stop_loss(p.id, price)
        log.info("stop loss override %s id=%s %.8f -> %.8f", p.symbol, p.id, p.stop_loss_price, price)
        if self.audit is not None:
            self.audit.event("STOP_OVERRIDE", symbol=p.symbol, action="UPDATE_SL",
                             details={"position_id": p.id, "old": p.stop_loss_price, "new": price})
        return price
