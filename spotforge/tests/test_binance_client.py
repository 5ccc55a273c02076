import json
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

import spotforge.exchange.binance.client as client_mod
from spotforge.exchange.binance.client import BinanceSpotClient, sign
from spotforge.exchange.binance.errors import (
    BinanceAPIError,
    BinanceError,
    BinanceOrderStatusUnknown,
    BinanceTransientError,
)


class _Resp:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode()

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Transport:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, params=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "headers": headers})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def sleeps(monkeypatch):
    out = []
    monkeypatch.setattr(client_mod.time, "sleep", out.append)
    return out


def _client(max_retries=3):
    return BinanceSpotClient("key", "secret", "https://testnet.binance.vision/", max_retries=max_retries)


def test_public_call_drops_none_params(monkeypatch, sleeps):
    t = _Transport(_Resp(200, {"symbol": "BTCUSDC", "price": "101.5"}))
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().ticker_price("btcusdc") == 101.5
    assert t.calls[0]["url"] == "https://testnet.binance.vision/api/v3/ticker/price"
    assert t.calls[0]["params"] == {"symbol": "BTCUSDC"}
    assert sleeps == []


def test_signed_call_carries_signature_and_key(monkeypatch, sleeps):
    t = _Transport(_Resp(200, {"balances": [{"asset": "USDC", "free": "250.5", "locked": "0"}]}))
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().free_balance("usdc") == 250.5

    call = t.calls[0]
    assert call["headers"]["X-MBX-APIKEY"] == "key"
    query = urlsplit(call["url"]).query
    unsigned, signature = query.rsplit("&signature=", 1)
    assert signature == sign("secret", unsigned)
    assert parse_qs(unsigned)["recvWindow"] == ["5000"]


def test_rate_limit_honours_retry_after(monkeypatch, sleeps):
    t = _Transport(_Resp(429, {"code": -1003, "msg": "Too many requests"}, {"Retry-After": "2"}), _Resp(200, []))
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().klines("BTCUSDC") == []
    assert sleeps == [2.0]
    assert len(t.calls) == 2


def test_server_errors_exhaust_retries(monkeypatch, sleeps):
    t = _Transport(*[_Resp(503, None) for _ in range(3)])
    monkeypatch.setattr(client_mod.requests, "request", t)

    with pytest.raises(BinanceTransientError):
        _client(max_retries=2).server_time_ms()
    assert len(t.calls) == 3
    assert len(sleeps) == 3


def test_network_error_is_retried(monkeypatch, sleeps):
    t = _Transport(requests.ConnectionError("reset"), _Resp(200, {"serverTime": 42}))
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().server_time_ms() == 42
    assert len(sleeps) == 1


def test_client_error_not_retried(monkeypatch, sleeps):
    t = _Transport(_Resp(400, {"code": -1121, "msg": "Invalid symbol."}))
    monkeypatch.setattr(client_mod.requests, "request", t)

    with pytest.raises(BinanceAPIError) as ei:
        _client().exchange_info("NOPE")
    assert ei.value.code == -1121
    assert ei.value.msg == "Invalid symbol."
    assert len(t.calls) == 1


def test_timestamp_drift_resyncs_and_retries(monkeypatch, sleeps):
    t = _Transport(
        _Resp(400, {"code": -1021, "msg": "Timestamp for this request is outside of the recvWindow."}),
        _Resp(200, {"serverTime": 1}),
        _Resp(200, {"orderId": 7, "status": "FILLED"}),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)

    out = _client().create_order("BTCUSDC", "BUY", "0.010", client_order_id="bot_1_BTCUSDC")

    assert out["orderId"] == 7
    assert t.calls[1]["url"].endswith("/api/v3/time")
    order_query = parse_qs(urlsplit(t.calls[2]["url"]).query)
    assert order_query["newClientOrderId"] == ["bot_1_BTCUSDC"]
    assert order_query["newOrderRespType"] == ["FULL"]


def test_signed_call_without_credentials(monkeypatch, sleeps):
    monkeypatch.setattr(client_mod.requests, "request", _Transport())
    c = BinanceSpotClient("", "", "https://testnet.binance.vision")
    with pytest.raises(BinanceError) as ei:
        c.account_info()
    assert "BINANCE_API_KEY" in str(ei.value)


def test_order_lookup_and_cancel_by_client_id(monkeypatch, sleeps):
    t = _Transport(
        _Resp(200, {"orderId": 9, "status": "NEW"}),
        _Resp(200, {"orderId": 9, "status": "CANCELED"}),
        _Resp(200, {"code": 0}),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)
    c = _client()

    assert c.query_order("ethusdc", client_order_id="bot_2_ETHUSDC")["status"] == "NEW"
    assert c.cancel_order("ethusdc", client_order_id="bot_2_ETHUSDC")["status"] == "CANCELED"
    assert c.open_orders("ethusdc") == []

    assert [call["method"] for call in t.calls] == ["GET", "DELETE", "GET"]
    q = parse_qs(urlsplit(t.calls[1]["url"]).query)
    assert q["origClientOrderId"] == ["bot_2_ETHUSDC"]
    assert q["symbol"] == ["ETHUSDC"]
    assert "orderId" not in q
    assert t.calls[2]["url"].split("?")[0].endswith("/api/v3/openOrders")


def test_rate_limit_with_http_date_retry_after(monkeypatch, sleeps):
    t = _Transport(
        _Resp(429, {"code": -1003, "msg": "Too many requests"}, {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
        _Resp(200, []),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().klines("BTCUSDC") == []
    # a date in the past means "retry now"
    assert sleeps == [0.0]


def test_unparseable_retry_after_falls_back_to_backoff(monkeypatch, sleeps):
    t = _Transport(_Resp(418, {"code": -1003, "msg": "banned"}, {"Retry-After": "soon"}), _Resp(200, []))
    monkeypatch.setattr(client_mod.requests, "request", t)

    assert _client().klines("BTCUSDC") == []
    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 10.0


def _posts(t):
    return [c for c in t.calls if c["method"] == "POST"]


def test_order_timeout_is_not_resent_when_exchange_has_it(monkeypatch, sleeps):
    t = _Transport(
        requests.ReadTimeout("read timed out"),
        _Resp(200, {"orderId": 11, "status": "FILLED", "executedQty": "0.010", "cummulativeQuoteQty": "1.0"}),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)

    out = _client().create_order("BTCUSDC", "BUY", "0.010", client_order_id="bot_3_BTCUSDC")

    assert out["orderId"] == 11
    assert len(_posts(t)) == 1
    lookup = t.calls[1]
    assert lookup["method"] == "GET"
    assert parse_qs(urlsplit(lookup["url"]).query)["origClientOrderId"] == ["bot_3_BTCUSDC"]


def test_order_resent_only_after_exchange_reports_it_unknown(monkeypatch, sleeps):
    t = _Transport(
        _Resp(503, {"code": -1007, "msg": "Timeout waiting for response from backend server."}),
        _Resp(400, {"code": -2013, "msg": "Order does not exist."}),
        _Resp(200, {"orderId": 12, "status": "FILLED"}),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)

    out = _client().create_order("BTCUSDC", "SELL", "0.010", client_order_id="bot_exit_4_BTCUSDC")

    assert out["orderId"] == 12
    posts = _posts(t)
    assert len(posts) == 2
    ids = {parse_qs(urlsplit(p["url"]).query)["newClientOrderId"][0] for p in posts}
    assert ids == {"bot_exit_4_BTCUSDC"}


def test_order_outcome_unknown_when_lookup_fails(monkeypatch, sleeps):
    t = _Transport(
        requests.ReadTimeout("read timed out"),
        requests.ConnectionError("reset"),
        requests.ConnectionError("reset"),
    )
    monkeypatch.setattr(client_mod.requests, "request", t)

    with pytest.raises(BinanceOrderStatusUnknown):
        _client(max_retries=1).create_order("BTCUSDC", "BUY", "0.010", client_order_id="bot_5_BTCUSDC")
    assert len(_posts(t)) == 1


def test_order_gets_client_id_when_none_given(monkeypatch, sleeps):
    t = _Transport(_Resp(200, {"orderId": 13, "status": "FILLED"}))
    monkeypatch.setattr(client_mod.requests, "request", t)

    _client().create_order("BTCUSDC", "BUY", "0.010")

    q = parse_qs(urlsplit(t.calls[0]["url"]).query)
    assert q["newClientOrderId"][0].startswith("sf_")
