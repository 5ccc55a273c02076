from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from spotforge.core.models import Position, PositionStatus
from spotforge.persistence.db import DB, utc_now_iso


def _opt_float(v) -> Optional[float]:
    return None if v is None else float(v)


def _row_to_position(r: sqlite3.Row) -> Position:
    return Position(
        id=int(r["id"]),
        symbol=r["symbol"],
        side=r["side"],
        entry_price=float(r["entry_price"]),
        quantity=float(r["quantity"]),
        current_price=float(r["current_price"]),
        stop_loss_price=float(r["stop_loss_price"]),
        take_profit_price=float(r["take_profit_price"]),
        initial_stop_loss_price=float(r["initial_stop_loss_price"]),
        highest_price=float(r["highest_price"]),
        trailing_enabled=bool(r["trailing_enabled"]),
        status=PositionStatus(r["status"]),
        entry_order_ref=r["entry_order_ref"],
        exit_order_ref=r["exit_order_ref"],
        entry_commission=float(r["entry_commission"] or 0.0),
        exit_commission=float(r["exit_commission"] or 0.0),
        realized_pnl=_opt_float(r["realized_pnl"]),
        realized_pnl_percent=_opt_float(r["realized_pnl_percent"]),
        created_at=r["created_at"],
        closed_at=r["closed_at"],
    )


def _summarize(r: sqlite3.Row) -> Dict[str, Any]:
    wins = int(r["winning_trades"] or 0)
    losses = int(r["losing_trades"] or 0)
    total_pnl = float(r["total_pnl"] or 0.0)
    commission = float(r["total_commission"] or 0.0)
    decided = wins + losses
    return {
        "winning_trades": wins,
        "losing_trades": losses,
        "win_rate": round(wins / decided * 100.0, 2) if decided else 0.0,
        "total_pnl": total_pnl,
        "total_commission": commission,
        "net_pnl": total_pnl - commission,
        "avg_pnl_percent": float(r["avg_pnl_percent"] or 0.0),
        "best_trade": float(r["best_trade"] or 0.0),
        "worst_trade": float(r["worst_trade"] or 0.0),
    }


class PositionStore:
    def __init__(self, db: DB):
        self.db = db

    # ---------- CREATE ----------
    def create(self, p: Position) -> Position:
        p.created_at = p.created_at or utc_now_iso()
        p.current_price = p.current_price or p.entry_price
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO positions(symbol, side, entry_price, quantity, current_price,
                    stop_loss_price, take_profit_price, initial_stop_loss_price, highest_price,
                    trailing_enabled, status, entry_order_ref, exit_order_ref, entry_commission, created_at, closed_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    p.symbol.upper(),
                    p.side,
                    float(p.entry_price),
                    float(p.quantity),
                    float(p.current_price),
                    float(p.stop_loss_price),
                    float(p.take_profit_price),
                    float(p.initial_stop_loss_price),
                    float(p.highest_price),
                    1 if p.trailing_enabled else 0,
                    p.status.value,
                    p.entry_order_ref,
                    p.exit_order_ref,
                    float(p.entry_commission or 0.0),
                    p.created_at,
                    p.closed_at,
                ),
            )
            p.id = int(cur.lastrowid)
        return p

    # ---------- READ ----------
    def get(self, position_id: int) -> Optional[Position]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (int(position_id),)).fetchone()
        return _row_to_position(row) if row else None

    def open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        sql = "SELECT * FROM positions WHERE status = 'OPEN'"
        args: tuple = ()
        if symbol:
            sql += " AND symbol = ?"
            args = (symbol.upper(),)
        with self.db.connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", args).fetchall()
        return [_row_to_position(r) for r in rows]

    def count_open(self, symbol: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM positions WHERE status = 'OPEN' AND symbol = ?",
                (symbol.upper(),),
            ).fetchone()
        return int(row["n"] or 0)

    def closed_positions(self, limit: int = 100) -> List[Position]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE status != 'OPEN' ORDER BY closed_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [_row_to_position(r) for r in rows]

    # ---------- UPDATE ----------
    def update_price(self, position_id: int, price: float) -> None:
        """current_price = price, highest_price never decreases."""
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE positions
                SET current_price = ?, highest_price = MAX(highest_price, ?)
                WHERE id = ? AND status = 'OPEN'
                """,
                (float(price), float(price), int(position_id)),
            )

    def update_stop_loss(self, position_id: int, stop_loss_price: float) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE positions SET stop_loss_price = ? WHERE id = ? AND status = 'OPEN'",
                (float(stop_loss_price), int(position_id)),
            )
            return cur.rowcount > 0

    def close(
        self,
        position_id: int,
        status: PositionStatus,
        exit_price: float,
        exit_order_ref: Optional[str] = None,
        *,
        realized_pnl: Optional[float] = None,
        realized_pnl_percent: Optional[float] = None,
        exit_commission: float = 0.0,
    ) -> bool:
        """
        Terminal transition. Only an OPEN row transitions, so a second call is a no-op
        and returns False.
        """
        if status == PositionStatus.OPEN:
            raise ValueError("close() needs a terminal status")
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE positions
                SET status = ?, current_price = ?, exit_order_ref = ?, closed_at = ?,
                    realized_pnl = ?, realized_pnl_percent = ?, exit_commission = ?
                WHERE id = ? AND status = 'OPEN'
                """,
                (
                    status.value,
                    float(exit_price),
                    exit_order_ref,
                    utc_now_iso(),
                    realized_pnl,
                    realized_pnl_percent,
                    float(exit_commission),
                    int(position_id),
                ),
            )
            return cur.rowcount > 0

    # ---------- STATS ----------
    def stats(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        """
        Lifetime totals. PnL figures are in the quote asset; realized PnL is gross,
        net_pnl subtracts entry and exit commission of closed positions.
        """
        where, args = "", ()
        if symbol:
            where, args = "WHERE symbol = ?", (symbol.upper(),)
        with self.db.connect() as conn:
            r = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total_positions,
                    SUM(CASE WHEN status = 'OPEN' THEN 1 ELSE 0 END) AS open_positions,
                    SUM(CASE WHEN status = 'CLOSED' THEN 1 ELSE 0 END) AS closed,
                    SUM(CASE WHEN status = 'STOPPED_OUT' THEN 1 ELSE 0 END) AS stopped_out,
                    SUM(CASE WHEN status = 'TAKE_PROFIT' THEN 1 ELSE 0 END) AS take_profit,
                    SUM(CASE WHEN status != 'OPEN' AND realized_pnl > 0 THEN 1 ELSE 0 END) AS winning_trades,
                    SUM(CASE WHEN status != 'OPEN' AND realized_pnl <= 0 THEN 1 ELSE 0 END) AS losing_trades,
                    SUM(CASE WHEN status != 'OPEN' THEN realized_pnl END) AS total_pnl,
                    SUM(CASE WHEN status != 'OPEN' THEN entry_commission + exit_commission END) AS total_commission,
                    AVG(CASE WHEN status != 'OPEN' THEN realized_pnl_percent END) AS avg_pnl_percent,
                    MAX(CASE WHEN status != 'OPEN' THEN realized_pnl END) AS best_trade,
                    MIN(CASE WHEN status != 'OPEN' THEN realized_pnl END) AS worst_trade,
                    SUM(CASE WHEN status = 'OPEN' THEN (current_price - entry_price) * quantity END)
                        AS unrealized_pnl
                FROM positions {where}
                """,
                args,
            ).fetchone()
        out = _summarize(r)
        out["total_positions"] = int(r["total_positions"] or 0)
        out["open_positions"] = int(r["open_positions"] or 0)
        out["by_status"] = {
            PositionStatus.CLOSED.value: int(r["closed"] or 0),
            PositionStatus.STOPPED_OUT.value: int(r["stopped_out"] or 0),
            PositionStatus.TAKE_PROFIT.value: int(r["take_profit"] or 0),
        }
        out["unrealized_pnl"] = float(r["unrealized_pnl"] or 0.0)
        return out

    def daily_stats(self, days: int = 30) -> List[Dict[str, Any]]:
        """Closed positions grouped by UTC close date, newest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    substr(closed_at, 1, 10) AS trade_date,
                    COUNT(*) AS total_trades,
                    SUM(CASE WHEN realized_pnl > 0 THEN 1 ELSE 0 END) AS winning_trades,
                    SUM(CASE WHEN realized_pnl <= 0 THEN 1 ELSE 0 END) AS losing_trades,
                    SUM(realized_pnl) AS total_pnl,
                    SUM(entry_commission + exit_commission) AS total_commission,
                    AVG(realized_pnl_percent) AS avg_pnl_percent,
                    MAX(realized_pnl) AS best_trade,
                    MIN(realized_pnl) AS worst_trade
                FROM positions
                WHERE status != 'OPEN' AND closed_at IS NOT NULL
                GROUP BY trade_date
                ORDER BY trade_date DESC
                LIMIT ?
                """,
                (int(days),),
            ).fetchall()
        out = []
        for r in rows:
            d = _summarize(r)
            d["trade_date"] = r["trade_date"]
            out.append(d)
        return out
