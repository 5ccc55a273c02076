from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# positions columns newer than the first schema; _init adds them to older databases
_POSITION_PNL_COLUMNS = {
    "entry_commission": "REAL NOT NULL DEFAULT 0",
    "exit_commission": "REAL NOT NULL DEFAULT 0",
    "realized_pnl": "REAL",
    "realized_pnl_percent": "REAL",
}


def _ensure_columns(conn: sqlite3.Connection, table: str, columns: Dict[str, str]) -> None:
    existing = {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for name, decl in columns.items():
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/spotforge.db
    """

    def __init__(self, path: str = "data/spotforge.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Runs (one per loop start)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    stopped_at TEXT,
                    strategy TEXT NOT NULL,
                    loop_seconds REAL NOT NULL
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    run_id TEXT,
                    cycle_id TEXT,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Orders (append-only)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- BUY/SELL
                    type TEXT NOT NULL,                 -- MARKET
                    qty REAL NOT NULL,
                    status TEXT NOT NULL,
                    exchange_order_ref TEXT,
                    client_order_id TEXT,
                    request_json TEXT,
                    response_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Positions (lifecycle)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- LONG
                    entry_price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    current_price REAL NOT NULL,
                    stop_loss_price REAL NOT NULL,
                    take_profit_price REAL NOT NULL,
                    initial_stop_loss_price REAL NOT NULL,
                    highest_price REAL NOT NULL,
                    trailing_enabled INTEGER NOT NULL,
                    status TEXT NOT NULL,               -- OPEN/CLOSED/STOPPED_OUT/TAKE_PROFIT
                    entry_order_ref TEXT,
                    exit_order_ref TEXT,
                    entry_commission REAL NOT NULL DEFAULT 0,
                    exit_commission REAL NOT NULL DEFAULT 0,
                    realized_pnl REAL,
                    realized_pnl_percent REAL,
                    created_at TEXT NOT NULL,
                    closed_at TEXT
                )
                """
            )

            # =========================
            # Decisions (one row per symbol per iteration)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    cycle_id TEXT,
                    symbol TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    signal TEXT NOT NULL,
                    score REAL NOT NULL,
                    reason TEXT NOT NULL,
                    price REAL,
                    payload_json TEXT
                )
                """
            )

            # =========================
            # Bot state (KV flags)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bot_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Strategy config (single active row)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS strategy_config (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    config_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # databases created before PnL / commission tracking
            _ensure_columns(conn, "positions", _POSITION_PNL_COLUMNS)

            # =========================
            # Indexes
            # =========================
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_symbol ON events(symbol)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_symbol ON orders(symbol)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_positions_symbol_status ON positions(symbol, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_decisions_symbol ON decisions(symbol, timestamp_utc)"
            )

            conn.commit()

        finally:
            conn.close()

    # =========================
    # Utility helpers
    # =========================
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)
