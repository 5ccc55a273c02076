import pytest

from spotforge.persistence.db import DB

from fakes import FakeSpotClient


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit live trading accidentally.
    """
    monkeypatch.setenv("BINANCE_BASE_URL", "https://testnet.binance.vision")
    monkeypatch.setenv("BINANCE_API_KEY", "test-key")
    monkeypatch.setenv("BINANCE_API_SECRET", "test-secret")
    monkeypatch.setenv("STRATEGY", "simple")
    monkeypatch.setenv("SYMBOLS", "BTCUSDC")
    monkeypatch.setenv("TRADING_ENABLED", "false")
    monkeypatch.setenv("AUTO_SYMBOLS", "false")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "bot.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "test.db"))


@pytest.fixture
def fake_client():
    return FakeSpotClient(prices={"BTCUSDC": 100.0, "ETHUSDC": 50.0})
