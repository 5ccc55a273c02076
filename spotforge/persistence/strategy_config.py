from __future__ import annotations

import json
from typing import Any, Dict, Optional

from spotforge.persistence.db import DB, utc_now_iso


class StrategyConfigStore:
    """Holds the tunable strategy parameters; the newest active row wins."""

    def __init__(self, db: DB):
        self.db = db

    def load_active(self) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT config_json FROM strategy_config WHERE is_active = 1 ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        data = json.loads(row["config_json"] or "{}")
        return data if isinstance(data, dict) else None

    def save(self, config: Dict[str, Any]) -> None:
        with self.db.connect() as conn:
            conn.execute("UPDATE strategy_config SET is_active = 0 WHERE is_active = 1")
            conn.execute(
                "INSERT INTO strategy_config(is_active, config_json, updated_at) VALUES (1, ?, ?)",
                (json.dumps(config, sort_keys=True), utc_now_iso()),
            )
