from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, List, Optional

from spotforge.ops.context import get_cycle_id
from spotforge.persistence.db import DB, utc_now_iso


class DecisionLog:
    """
    One row per symbol per iteration, including HOLDs, so every decision is auditable.
    """

    def __init__(self, db: DB):
        self.db = db

    def log(self, decision: Any, *, strategy: str) -> None:
        payload = decision.payload
        if is_dataclass(payload):
            payload = asdict(payload)
        payload_json = json.dumps(payload or {}, separators=(",", ":"), ensure_ascii=False, default=str)

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO decisions (timestamp_utc, cycle_id, symbol, strategy, signal, score, reason, price, payload_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    utc_now_iso(),
                    get_cycle_id(),
                    decision.symbol,
                    strategy,
                    decision.signal.value,
                    float(decision.score),
                    decision.reason,
                    decision.price,
                    payload_json,
                ),
            )

    def recent(self, symbol: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM decisions"
        args: tuple = ()
        if symbol:
            sql += " WHERE symbol = ?"
            args = (symbol.upper(),)
        sql += " ORDER BY id DESC LIMIT ?"

        with self.db.connect() as conn:
            rows = conn.execute(sql, args + (int(limit),)).fetchall()

        out = []
        for r in rows:
            d = dict(r)
            d["payload"] = json.loads(d.pop("payload_json") or "{}")
            out.append(d)
        return out
