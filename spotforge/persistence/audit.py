# spotforge/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from spotforge.ops.context import get_cycle_id, get_run_id
from spotforge.persistence.db import DB, utc_now_iso

log = logging.getLogger("spotforge.audit")


class Audit:
    """Event log: the events table is authoritative, a JSONL file mirrors it for `tail -f`."""

    def __init__(self, db: DB, jsonl_path: str = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # never crash bot due to audit file issues
            log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    def start_run(self, run_id: str, strategy: str, loop_seconds: float) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs(run_id, started_at, strategy, loop_seconds) VALUES (?,?,?,?)",
                (run_id, utc_now_iso(), strategy, float(loop_seconds)),
            )
        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_START",
                "run_id": run_id,
                "details": {"strategy": strategy, "loop_seconds": loop_seconds},
            }
        )

    def stop_run(self, run_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE runs SET stopped_at = ? WHERE run_id = ?",
                (utc_now_iso(), run_id),
            )
        self._write_jsonl(
            {"timestamp_utc": utc_now_iso(), "event_type": "RUN_STOP", "run_id": run_id, "details": {}}
        )

    def event(
        self,
        event_type: str,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        run_id = get_run_id()
        cycle_id = get_cycle_id()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, cycle_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?)
                """,
                (utc_now_iso(), run_id, cycle_id, symbol, event_type, action, payload),
            )

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": event_type,
                "run_id": run_id,
                "cycle_id": cycle_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["details"] = json.loads(d.pop("details_json") or "{}")
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash trading loop because audit file write failed
            log.warning("audit jsonl write failed: %s", e)
