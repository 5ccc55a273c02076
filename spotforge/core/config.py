# spotforge/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("spotforge.config")

SECRET_KEYS = ("BINANCE_API_KEY", "BINANCE_API_SECRET")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["BTCUSDC","ETHUSDC"]
      - csv:  "BTCUSDC,ETHUSDC"
      - json: '["BTCUSDC","ETHUSDC"]'
    Returns uppercase, trimmed, de-duplicated symbols (order kept).
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        items = [str(x) for x in v]
    else:
        s = str(v).strip()
        if not s:
            return []
        items = None
        if s.startswith("["):
            try:
                items = [str(x) for x in json.loads(s)]
            except ValueError:
                # fall back to csv parse
                items = None
        if items is None:
            items = s.split(",")

    out: List[str] = []
    for x in items:
        x = x.strip().upper()
        if x and x not in out:
            out.append(x)
    return out


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding list fields,
    # so CSV values work too.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    BINANCE_API_KEY: str = ""
    BINANCE_API_SECRET: str = ""
    BINANCE_BASE_URL: str = "https://testnet.binance.vision"
    BINANCE_RECV_WINDOW: int = 5000
    BINANCE_MAX_RETRIES: int = 3

    # --- Symbols / universe ---
    SYMBOLS: List[str] = Field(default_factory=lambda: ["BTCUSDC", "ETHUSDC"])
    MANUAL_SYMBOLS: List[str] = Field(default_factory=list)
    EXCLUDE_SYMBOLS: List[str] = Field(default_factory=list)
    AUTO_SYMBOLS: bool = False
    AUTO_TOP_N: int = 10
    MIN_QUOTE_VOLUME_USDT: float = 5_000_000.0
    SYMBOL_REFRESH_MINUTES: int = 60
    QUOTE_SUFFIX: str = "USDC"

    # --- Loop ---
    INTERVAL: str = "1m"
    CANDLE_LIMIT: int = 100
    LOOP_SECONDS: float = 5.0
    ORDER_DELAY_SECONDS: float = 0.5
    FETCH_WORKERS: int = 8
    STRATEGY: str = "simple"  # simple/macd

    # --- Trading gate (seed values for the persisted flags) ---
    TRADING_ENABLED: bool = False
    BOT_KILL_SWITCH: bool = False

    # --- Capital / risk ---
    BASE_ASSET: str = "USDC"
    MAX_OPEN_POSITIONS_PER_SYMBOL: int = 1
    MAX_TRADING_CAPITAL_PERCENT: float = 80.0
    RISK_PER_TRADE_PERCENT: float = 1.0
    MIN_NOTIONAL_BUFFER: float = 1.2

    # --- Exits ---
    STOP_LOSS_PERCENT: float = 2.0
    TAKE_PROFIT_PERCENT: float = 8.0
    TRAILING_STOP_ENABLED: bool = True
    TRAILING_STOP_ACTIVATION_PERCENT: float = 5.0
    TRAILING_STOP_DISTANCE_PERCENT: float = 3.0

    # --- Strategy config cache ---
    STRATEGY_CONFIG_TTL_SECONDS: float = 60.0

    # --- Persistence / logging ---
    DB_PATH: str = "data/spotforge.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("SYMBOLS", "MANUAL_SYMBOLS", "EXCLUDE_SYMBOLS", mode="before")
    @classmethod
    def parse_symbol_lists(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.STRATEGY = (self.STRATEGY or "simple").lower().strip()
        self.BASE_ASSET = (self.BASE_ASSET or "USDC").upper().strip()
        self.QUOTE_SUFFIX = (self.QUOTE_SUFFIX or self.BASE_ASSET).upper().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()
        self.BINANCE_BASE_URL = self.BINANCE_BASE_URL.strip().rstrip("/")

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.STRATEGY not in {"simple", "macd"}:
            errors.append("STRATEGY must be 'simple' or 'macd'.")

        if not self.BINANCE_BASE_URL:
            errors.append("BINANCE_BASE_URL is required.")

        if not self.INTERVAL:
            errors.append("INTERVAL is required.")

        if self.LOOP_SECONDS <= 0:
            errors.append("LOOP_SECONDS must be > 0.")

        if self.CANDLE_LIMIT <= 0:
            errors.append("CANDLE_LIMIT must be > 0.")

        if self.FETCH_WORKERS < 1:
            errors.append("FETCH_WORKERS must be >= 1.")

        # Symbols sanity
        if not self.SYMBOLS and not self.MANUAL_SYMBOLS and not self.AUTO_SYMBOLS:
            warnings.append("No symbols configured and AUTO_SYMBOLS is off. Bot will have nothing to trade.")

        # Capital / risk sanity
        if not (0 < self.MAX_TRADING_CAPITAL_PERCENT <= 100):
            errors.append("MAX_TRADING_CAPITAL_PERCENT must be in (0, 100].")
        if not (0 < self.RISK_PER_TRADE_PERCENT <= 100):
            errors.append("RISK_PER_TRADE_PERCENT must be in (0, 100].")
        if self.MAX_OPEN_POSITIONS_PER_SYMBOL < 1:
            errors.append("MAX_OPEN_POSITIONS_PER_SYMBOL must be >= 1.")
        if self.MIN_NOTIONAL_BUFFER <= 1.0:
            errors.append("MIN_NOTIONAL_BUFFER must be > 1.0.")

        # Exit sanity
        if self.STOP_LOSS_PERCENT <= 0 or self.STOP_LOSS_PERCENT >= 100:
            errors.append("STOP_LOSS_PERCENT must be in (0, 100).")
        if self.TAKE_PROFIT_PERCENT <= 0:
            errors.append("TAKE_PROFIT_PERCENT must be > 0.")
        if self.TRAILING_STOP_ENABLED:
            if self.TRAILING_STOP_DISTANCE_PERCENT <= 0 or self.TRAILING_STOP_DISTANCE_PERCENT >= 100:
                errors.append("TRAILING_STOP_DISTANCE_PERCENT must be in (0, 100).")
            if self.TRAILING_STOP_ACTIVATION_PERCENT < 0:
                errors.append("TRAILING_STOP_ACTIVATION_PERCENT must be >= 0.")
            if self.TRAILING_STOP_ACTIVATION_PERCENT >= self.TAKE_PROFIT_PERCENT:
                warnings.append(
                    "TRAILING_STOP_ACTIVATION_PERCENT >= TAKE_PROFIT_PERCENT; trailing stop will never engage."
                )

        # Credentials (orders need them, market data does not)
        if not self.BINANCE_API_KEY or not self.BINANCE_API_SECRET:
            warnings.append("BINANCE_API_KEY/BINANCE_API_SECRET missing. Signed calls (orders, balance) will fail.")

        if "testnet" not in self.BINANCE_BASE_URL:
            warnings.append(
                "BINANCE_BASE_URL is not a testnet URL; orders will trade REAL money."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings

    def public_dict(self) -> Dict[str, Any]:
        snap = self.model_dump()
        for k in SECRET_KEYS:
            if snap.get(k):
                snap[k] = "***"
        return snap


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
