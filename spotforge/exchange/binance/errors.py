from __future__ import annotations

from typing import Optional


class BinanceError(RuntimeError):
    """Base for every error raised by the spot client."""


class BinanceAPIError(BinanceError):
    """
    Client-side / validation rejection (4xx with a Binance error payload).
    Never retried: resending the same request would fail the same way.
    """

    def __init__(self, status: int, code: Optional[int], msg: str):
        self.status = status
        self.code = code
        self.msg = msg
        super().__init__(f"Binance HTTP {status} code={code}: {msg}")


class BinanceTransientError(BinanceError):
    """Rate limit, 5xx, timeout or connection error that survived every retry."""


class BinanceOrderStatusUnknown(BinanceTransientError):
    """
    A non-idempotent request timed out or hit a 5xx, so whether the exchange applied it
    is unknown. create_order only lets this escape when the follow-up lookup failed too:
    the order may have filled, and resending it could fill twice.
    """
