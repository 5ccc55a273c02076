# spotforge/persistence/state_store.py

from __future__ import annotations

from typing import Dict, Optional

from spotforge.persistence.db import DB, utc_now_iso

KILL_SWITCH = "KILL_SWITCH"
TRADING_ENABLED = "TRADING_ENABLED"


class BotStateStore:
    """
    Persisted operator flags (bot_state KV table).
    Values are stored as strings; a flag is on only when the value is 'true'.
    """

    def __init__(self, db: DB):
        self.db = db

    def seed(self, *, kill_switch: bool, trading_enabled: bool) -> None:
        """Write initial values only where no row exists yet (restart keeps operator changes)."""
        with self.db.connect() as conn:
            for key, val in ((KILL_SWITCH, kill_switch), (TRADING_ENABLED, trading_enabled)):
                conn.execute(
                    "INSERT OR IGNORE INTO bot_state(key, value, updated_at) VALUES (?,?,?)",
                    (key, "true" if val else "false", utc_now_iso()),
                )

    def get(self, key: str) -> Optional[str]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT value FROM bot_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO bot_state(key, value, updated_at) VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, str(value), utc_now_iso()),
            )

    def flag(self, key: str) -> bool:
        return (self.get(key) or "").strip().lower() == "true"

    def set_flag(self, key: str, on: bool) -> None:
        self.set(key, "true" if on else "false")

    # ---------- convenience ----------
    def kill_switch(self) -> bool:
        return self.flag(KILL_SWITCH)

    def trading_enabled(self) -> bool:
        return self.flag(TRADING_ENABLED)

    def all(self) -> Dict[str, str]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT key, value FROM bot_state").fetchall()
        return {r["key"]: r["value"] for r in rows}
