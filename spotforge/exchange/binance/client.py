from __future__ import annotations

import hashlib
import hmac
import logging
import random
import time
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from spotforge.exchange.binance.errors import (
    BinanceAPIError,
    BinanceError,
    BinanceOrderStatusUnknown,
    BinanceTransientError,
)

log = logging.getLogger("spotforge.binance")

# Binance error codes that mean "slow down", not "bad request"
RATE_LIMIT_CODES = {-1003, -1015}
TIMESTAMP_CODE = -1021
ORDER_UNKNOWN_CODE = -2013


def build_query(params: Dict[str, Any]) -> str:
    # None means "not sent"; Binance rejects empty optional params
    return urlencode({k: v for k, v in params.items() if v is not None}, doseq=True)


def sign(secret: str, query_string: str) -> str:
    return hmac.new(secret.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256).hexdigest()


def _backoff(attempt: int, cap: float = 8.0) -> float:
    return min(0.4 * (2**attempt) + random.uniform(0, 0.2), cap)


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Retry-After as delay-seconds or an HTTP-date; None when it is neither."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_payload(r: requests.Response) -> tuple[Optional[int], str]:
    try:
        data = r.json()
    except ValueError:
        return None, r.text
    if isinstance(data, dict):
        return data.get("code"), str(data.get("msg") or r.text)
    return None, r.text


class BinanceSpotClient:
    """
    Thin REST client for the Binance spot API (testnet by default).

    Public calls and signed calls share one retry loop:
      - 418/429 and rate-limit codes: honour Retry-After, else exponential backoff
      - 5xx, timeouts, connection errors: exponential backoff + jitter
      - -1021 (timestamp outside recvWindow): resync server time, retry
      - any other 4xx: raise BinanceAPIError immediately

    Order submission is the exception: after a timeout or 5xx the order is looked
    up by its client id and only resent when the exchange does not know it.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        max_retries: int = 3,
        timeout: float = 15.0,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.max_retries = max_retries
        self.timeout = timeout

        # server time offset (ms); positive means local clock is behind
        self._time_offset_ms: int = 0

    # ------------------------------------------------------------------
    # request core
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        resend: bool = True,
    ) -> Any:
        url = f"{self.base_url}{path}"
        base_params = dict(params or {})

        last_err: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            headers: Dict[str, str] = {}
            if signed:
                query = self._signed_query(base_params)
                headers["X-MBX-APIKEY"] = self.api_key
                req_url, req_params = f"{url}?{query}", None
            else:
                req_url, req_params = url, {k: v for k, v in base_params.items() if v is not None}

            try:
                r = requests.request(
                    method, req_url, params=req_params, headers=headers, timeout=self.timeout
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = f"{type(e).__name__}: {e}"
                log.warning("Binance %s %s network error (attempt %d): %s", method, path, attempt + 1, e)
                if not resend:
                    raise BinanceOrderStatusUnknown(f"{method} {path} outcome unknown: {last_err}") from e
                time.sleep(_backoff(attempt))
                continue

            if r.status_code < 400:
                return r.json() if r.content else None

            code, msg = _error_payload(r)

            # Rate limit / temp ban
            if r.status_code in (418, 429) or code in RATE_LIMIT_CODES:
                sleep_s = _retry_after_seconds(r.headers.get("Retry-After"))
                if sleep_s is None:
                    sleep_s = _backoff(attempt, cap=10.0)
                last_err = f"HTTP {r.status_code} code={code}: {msg}"
                log.warning("Binance rate limited on %s %s; sleeping %.2fs", method, path, sleep_s)
                time.sleep(min(sleep_s, 10.0))
                continue

            # Timestamp drift
            if code == TIMESTAMP_CODE:
                last_err = msg
                log.warning("Binance timestamp drift on %s %s; resyncing", method, path)
                try:
                    self.sync_time()
                except BinanceError as e:
                    log.warning("time resync failed: %s", e)
                continue

            # Server errors
            if r.status_code >= 500:
                last_err = f"HTTP {r.status_code}: {msg}"
                if not resend:
                    raise BinanceOrderStatusUnknown(f"{method} {path} outcome unknown: {last_err}")
                time.sleep(_backoff(attempt))
                continue

            raise BinanceAPIError(r.status_code, code, msg)

        raise BinanceTransientError(
            f"Binance request failed after retries: {method} {path} ({last_err})"
        )

    def _signed_query(self, params: Dict[str, Any]) -> str:
        if not self.api_key or not self.api_secret:
            raise BinanceError("Missing BINANCE_API_KEY or BINANCE_API_SECRET")
        p = dict(params)
        p["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
        p["recvWindow"] = self.recv_window
        query = build_query(p)
        return f"{query}&signature={sign(self.api_secret, query)}"

    # ---------------- TIME SYNC (PUBLIC) ----------------

    def server_time_ms(self) -> int:
        data = self._request("GET", "/api/v3/time")
        return int(data["serverTime"])

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = int(time.time() * 1000)
        server_ms = self.server_time_ms()
        self._time_offset_ms = server_ms - local_ms
        return self._time_offset_ms

    # ---------------- PUBLIC ----------------

    def exchange_info(self, symbol: Optional[str] = None) -> dict:
        params = {"symbol": symbol.upper()} if symbol else None
        return self._request("GET", "/api/v3/exchangeInfo", params=params)

    def klines(self, symbol: str, interval: str = "1m", limit: int = 100) -> list:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        return self._request("GET", "/api/v3/klines", params=params)

    def ticker_price(self, symbol: str) -> float:
        data = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol.upper()})
        return float(data["price"])

    def ticker_24h(self, symbol: Optional[str] = None) -> Any:
        """All symbols (list) when symbol is None, else a single dict."""
        params = {"symbol": symbol.upper()} if symbol else None
        return self._request("GET", "/api/v3/ticker/24hr", params=params)

    # ---------------- ACCOUNT / TRADING ----------------

    def account_info(self) -> dict:
        return self._request("GET", "/api/v3/account", signed=True)

    def free_balance(self, asset: str) -> float:
        data = self.account_info()
        asset = asset.upper()
        for b in data.get("balances", []) or []:
            if (b.get("asset") or "").upper() == asset:
                return float(b.get("free") or 0.0)
        return 0.0

    def create_order(
        self,
        symbol: str,
        side: str,
        quantity: str,
        order_type: str = "MARKET",
        client_order_id: Optional[str] = None,
    ) -> dict:
        """
        Submit once per attempt. When the outcome is unknown (timeout, 5xx) the order is
        looked up by client id; it is resent only if the exchange reports it unknown.
        """
        client_order_id = client_order_id or f"sf_{uuid.uuid4().hex[:24]}"
        params = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": quantity,
            "newClientOrderId": client_order_id,
            "newOrderRespType": "FULL",
        }

        last_err: Optional[BinanceError] = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request("POST", "/api/v3/order", params=params, signed=True, resend=False)
            except BinanceOrderStatusUnknown as e:
                last_err = e
                existing = self._find_order(symbol, client_order_id)
                if existing is not None:
                    log.warning("order %s reached the exchange despite %s; not resending", client_order_id, e)
                    return existing
                log.warning("order %s unknown to the exchange after %s; resending", client_order_id, e)
                time.sleep(_backoff(attempt))

        raise BinanceTransientError(f"order {client_order_id} not placed after retries ({last_err})")

    def _find_order(self, symbol: str, client_order_id: str) -> Optional[dict]:
        try:
            return self.query_order(symbol, client_order_id=client_order_id)
        except BinanceAPIError as e:
            if e.code == ORDER_UNKNOWN_CODE:
                return None
            raise BinanceOrderStatusUnknown(f"order {client_order_id} lookup rejected: {e}") from e
        except BinanceTransientError as e:
            raise BinanceOrderStatusUnknown(f"order {client_order_id} lookup failed: {e}") from e

    def query_order(self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None) -> dict:
        return self._request(
            "GET",
            "/api/v3/order",
            params={"symbol": symbol.upper(), "orderId": order_id, "origClientOrderId": client_order_id},
            signed=True,
        )

    def cancel_order(self, symbol: str, order_id: Optional[int] = None, client_order_id: Optional[str] = None) -> dict:
        return self._request(
            "DELETE",
            "/api/v3/order",
            params={"symbol": symbol.upper(), "orderId": order_id, "origClientOrderId": client_order_id},
            signed=True,
        )

    def open_orders(self, symbol: Optional[str] = None) -> List[dict]:
        params = {"symbol": symbol.upper()} if symbol else None
        data = self._request("GET", "/api/v3/openOrders", params=params, signed=True)
        return data if isinstance(data, list) else []
