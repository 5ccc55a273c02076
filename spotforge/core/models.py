from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    STOPPED_OUT = "STOPPED_OUT"
    TAKE_PROFIT = "TAKE_PROFIT"


# exit status -> cooldown reason
COOLDOWN_REASON_FOR_STATUS = {
    PositionStatus.STOPPED_OUT: "stop_loss",
    PositionStatus.TAKE_PROFIT: "take_profit",
    PositionStatus.CLOSED: "manual_sell",
}


@dataclass
class Position:
    """
    A LONG spot holding opened by one BUY.
    OPEN until exactly one terminal transition; never reopened.
    """

    symbol: str
    entry_price: float
    quantity: float
    stop_loss_price: float
    take_profit_price: float
    initial_stop_loss_price: float
    highest_price: float
    trailing_enabled: bool
    current_price: float = 0.0
    side: str = "LONG"
    status: PositionStatus = PositionStatus.OPEN
    entry_order_ref: Optional[str] = None
    exit_order_ref: Optional[str] = None
    # quote-asset amounts; realized_* stay None while OPEN
    entry_commission: float = 0.0
    exit_commission: float = 0.0
    realized_pnl: Optional[float] = None
    realized_pnl_percent: Optional[float] = None
    created_at: Optional[str] = None
    closed_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def unrealized_pnl(self, price: Optional[float] = None) -> float:
        px = self.current_price if price is None else price
        return (px - self.entry_price) * self.quantity

    def pnl_percent(self, price: Optional[float] = None) -> float:
        px = self.current_price if price is None else price
        if self.entry_price <= 0:
            return 0.0
        return (px - self.entry_price) / self.entry_price * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "current_price": self.current_price,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "initial_stop_loss_price": self.initial_stop_loss_price,
            "highest_price": self.highest_price,
            "trailing_enabled": self.trailing_enabled,
            "status": self.status.value,
            "pnl_percent": round(self.pnl_percent(), 4),
            "entry_order_ref": self.entry_order_ref,
            "exit_order_ref": self.exit_order_ref,
            "entry_commission": self.entry_commission,
            "exit_commission": self.exit_commission,
            "unrealized_pnl": round(self.unrealized_pnl(), 8) if self.is_open else None,
            "realized_pnl": self.realized_pnl,
            "realized_pnl_percent": self.realized_pnl_percent,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
        }


@dataclass
class Order:
    """Append-only record of one submitted order (success or rejection)."""

    symbol: str
    side: str
    qty: float
    status: str
    type: str = "MARKET"
    exchange_order_ref: Optional[str] = None
    client_order_id: Optional[str] = None
    request_snapshot: Dict[str, Any] = field(default_factory=dict)
    response_snapshot: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    id: Optional[int] = None
