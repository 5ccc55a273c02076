from __future__ import annotations

import json
from typing import List, Optional

from spotforge.core.models import Order
from spotforge.persistence.db import DB, utc_now_iso


class OrderStore:
    """Append-only order history. Rows are never updated."""

    def __init__(self, db: DB):
        self.db = db

    def add(self, order: Order) -> Order:
        order.created_at = order.created_at or utc_now_iso()
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO orders(symbol, side, type, qty, status, exchange_order_ref,
                                   client_order_id, request_json, response_json, created_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    order.symbol.upper(),
                    order.side,
                    order.type,
                    float(order.qty),
                    order.status,
                    order.exchange_order_ref,
                    order.client_order_id,
                    json.dumps(order.request_snapshot or {}, default=str),
                    json.dumps(order.response_snapshot or {}, default=str),
                    order.created_at,
                ),
            )
            order.id = int(cur.lastrowid)
        return order

    def list(self, symbol: Optional[str] = None, limit: int = 100) -> List[Order]:
        sql = "SELECT * FROM orders"
        args: tuple = ()
        if symbol:
            sql += " WHERE symbol = ?"
            args = (symbol.upper(),)
        sql += " ORDER BY id DESC LIMIT ?"
        args = args + (int(limit),)

        with self.db.connect() as conn:
            rows = conn.execute(sql, args).fetchall()

        return [
            Order(
                id=r["id"],
                symbol=r["symbol"],
                side=r["side"],
                type=r["type"],
                qty=float(r["qty"]),
                status=r["status"],
                exchange_order_ref=r["exchange_order_ref"],
                client_order_id=r["client_order_id"],
                request_snapshot=json.loads(r["request_json"] or "{}"),
                response_snapshot=json.loads(r["response_json"] or "{}"),
                created_at=r["created_at"],
            )
            for r in rows
        ]
