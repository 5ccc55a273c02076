from spotforge.core.config import Settings
from spotforge.exchange.binance.errors import BinanceTransientError
from spotforge.symbols.universe import SymbolDiscovery, parse_symbols, select_top_by_volume

TICKERS = [
    {"symbol": "SOLUSDC", "quoteVolume": "9000000", "priceChangePercent": "2.5"},
    {"symbol": "DOGEUSDC", "quoteVolume": "20000000", "priceChangePercent": "1.0"},
    {"symbol": "ADAUSDC", "quoteVolume": "8000000", "priceChangePercent": "-3.0"},
    {"symbol": "XRPUSDC", "quoteVolume": "50000000", "priceChangePercent": "4.0"},
    {"symbol": "BNBUSDT", "quoteVolume": "90000000", "priceChangePercent": "4.0"},
    {"symbol": "LTCUSDC", "quoteVolume": "100", "priceChangePercent": "9.0"},
    {"symbol": "DOTUSDC", "quoteVolume": "7000000", "priceChangePercent": "0.05"},
]


class _TickerClient:
    def __init__(self, tickers=None):
        self.tickers = tickers or []
        self.calls = 0
        self.error = None

    def ticker_24h(self, symbol=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self.tickers


class _Clock:
    def __init__(self):
        self.t = 1_000.0

    def __call__(self):
        return self.t


def test_parse_symbols_dedupes_and_uppercases():
    assert parse_symbols(" btcusdc,ETHUSDC,btcusdc,, ") == ["BTCUSDC", "ETHUSDC"]
    assert parse_symbols(None) == []


def test_select_top_by_volume():
    out = select_top_by_volume(
        TICKERS, quote_suffix="USDC", min_quote_volume=5_000_000, top_n=2, exclude=["XRPUSDC"]
    )
    # XRP excluded, ADA falling, DOT below min gain, LTC thin, BNB wrong quote
    assert out == ["DOGEUSDC", "SOLUSDC"]


def test_manual_mode_applies_exclusions():
    s = Settings(SYMBOLS="BTCUSDC,ETHUSDC,XRPUSDC", EXCLUDE_SYMBOLS="XRPUSDC")
    sel = SymbolDiscovery(_TickerClient(), s).refresh()
    assert sel.symbols == ["BTCUSDC", "ETHUSDC"]
    assert sel.source == "manual"


def test_auto_mode_merges_manual_and_caches():
    client = _TickerClient(TICKERS)
    clock = _Clock()
    s = Settings(AUTO_SYMBOLS=True, MANUAL_SYMBOLS="BTCUSDC", AUTO_TOP_N=2, SYMBOL_REFRESH_MINUTES=60)
    disc = SymbolDiscovery(client, s, clock=clock)

    sel = disc.refresh()
    assert sel.source == "auto"
    assert sel.symbols == ["BTCUSDC", "XRPUSDC", "DOGEUSDC"]

    clock.t += 30 * 60
    disc.refresh()
    assert client.calls == 1

    clock.t += 31 * 60
    disc.refresh()
    assert client.calls == 2


def test_failed_refresh_keeps_previous_set():
    client = _TickerClient(TICKERS)
    clock = _Clock()
    s = Settings(AUTO_SYMBOLS=True, MANUAL_SYMBOLS="BTCUSDC", AUTO_TOP_N=1)
    disc = SymbolDiscovery(client, s, clock=clock)
    first = disc.refresh()

    client.error = BinanceTransientError("down")
    assert disc.refresh(force=True).symbols == first.symbols


def test_first_refresh_failure_falls_back_to_manual():
    client = _TickerClient()
    client.error = BinanceTransientError("down")
    s = Settings(AUTO_SYMBOLS=True, MANUAL_SYMBOLS="BTCUSDC")
    sel = SymbolDiscovery(client, s).refresh()
    assert sel.symbols == ["BTCUSDC"]
    assert sel.source == "manual"
