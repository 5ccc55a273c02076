import asyncio

import pytest

from spotforge.core.config import Settings
from spotforge.core.models import Position, PositionStatus
from spotforge.exchange.binance.errors import BinanceTransientError
from spotforge.runner.runner import BotRunner, RunnerAlreadyRunning, build_strategy
from spotforge.strategy.base import Decision, Signal, Strategy
from spotforge.strategy.macd import MacdStrategy

from fakes import FakeSpotClient, kline_row


class _BuyEverything(Strategy):
    name = "stub"

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)

    def required_intervals(self, config):
        return [("1m", 5)]

    def decide(self, symbol, candles, config):
        if symbol in self.fail_on:
            raise RuntimeError("indicator blew up")
        price = candles["1m"][-1].close
        return Decision(symbol=symbol, signal=Signal.BUY, score=9.0, reason="score=9", price=price)


def _client():
    c = FakeSpotClient(prices={"BTCUSDC": 100.0, "ETHUSDC": 50.0}, balance=1000.0)
    c.klines_by_symbol["BTCUSDC"] = [kline_row(i, 100.0) for i in range(5)]
    c.klines_by_symbol["ETHUSDC"] = [kline_row(i, 50.0) for i in range(5)]
    c.kline_errors["XRPUSDC"] = BinanceTransientError("timeout")
    return c


def _runner(client, **overrides):
    params = dict(SYMBOLS="BTCUSDC,ETHUSDC,XRPUSDC", TRADING_ENABLED=True, ORDER_DELAY_SECONDS=0)
    params.update(overrides)
    return BotRunner(client, s=Settings(**params))


def test_build_strategy():
    assert isinstance(build_strategy("macd"), MacdStrategy)
    assert build_strategy("simple").name == "simple"
    with pytest.raises(ValueError):
        build_strategy("grid")


def test_iteration_isolates_fetch_failures():
    client = _client()
    r = _runner(client)
    r.strategy = _BuyEverything()

    summary = r.run_once()

    assert summary["symbols"] == ["BTCUSDC", "ETHUSDC", "XRPUSDC"]
    assert set(summary["failures"]) == {"XRPUSDC"}
    assert [d["symbol"] for d in summary["decisions"]] == ["BTCUSDC", "ETHUSDC"]
    assert all(res["success"] for res in summary["results"])
    assert {p["symbol"] for p in r.open_positions()} == {"BTCUSDC", "ETHUSDC"}
    assert r.cycle_count == 1
    assert len(r.decision_log.recent()) == 2


def test_strategy_error_becomes_hold():
    client = _client()
    r = _runner(client, SYMBOLS="BTCUSDC,ETHUSDC")
    r.strategy = _BuyEverything(fail_on={"ETHUSDC"})

    summary = r.run_once()

    by_symbol = {d["symbol"]: d for d in summary["decisions"]}
    assert by_symbol["ETHUSDC"]["signal"] == "HOLD"
    assert by_symbol["ETHUSDC"]["reason"] == "strategy_error:RuntimeError"
    assert by_symbol["BTCUSDC"]["signal"] == "BUY"
    assert [o["symbol"] for o in client.orders] == ["BTCUSDC"]


def test_gate_blocks_entries_but_not_exits():
    client = _client()
    r = _runner(client, TRADING_ENABLED=False)
    r.strategy = _BuyEverything()
    p = r.positions.create(
        Position(
            symbol="BTCUSDC",
            entry_price=100.0,
            quantity=1.0,
            stop_loss_price=96.0,
            take_profit_price=105.0,
            initial_stop_loss_price=96.0,
            highest_price=100.0,
            trailing_enabled=True,
        )
    )
    client.prices["BTCUSDC"] = 95.0

    summary = r.run_once()

    assert summary["entries"] == "skipped"
    assert summary["gate_reason"] == "trading_disabled"
    assert summary["monitor"]["exits"] == ["stopped_out"]
    assert r.positions.get(p.id).status == PositionStatus.STOPPED_OUT
    assert [o["side"] for o in client.orders] == ["SELL"]
    assert r.cooldowns()[0]["reason"] == "stop_loss"


def test_overlapping_iteration_skipped():
    r = _runner(_client())
    r._cycle_lock.acquire()
    try:
        assert r.run_once() == {"skipped": True, "reason": "cycle_already_running"}
    finally:
        r._cycle_lock.release()
    assert r.cycle_count == 0


def test_flags_persist_across_runner_instances():
    client = _client()
    r = _runner(client)
    r.set_kill_switch(True)
    assert r.status()["flags"]["kill_switch"] is True

    again = BotRunner(client, s=r.s, db=r.db)
    assert again.status()["flags"] == {"kill_switch": True, "trading_enabled": True}
    assert again.run_once()["gate_reason"] == "kill_switch_active"


def test_strategy_config_update_round_trip():
    r = _runner(_client())
    cfg = r.update_strategy_config({"buy_score_threshold": 6})
    assert cfg["buy_score_threshold"] == 6.0
    assert r.strategy_config()["buy_score_threshold"] == 6.0


def test_start_requires_event_loop():
    with pytest.raises(RuntimeError):
        _runner(_client()).start()


def test_start_stop_lifecycle():
    r = _runner(_client(), TRADING_ENABLED=False, LOOP_SECONDS=0.01)

    async def scenario():
        status = r.start()
        assert status["running"] is True
        with pytest.raises(RunnerAlreadyRunning):
            r.start()

        for _ in range(200):
            if r.cycle_count:
                break
            await asyncio.sleep(0.01)

        assert r.stop() is True
        await r.wait_stopped(timeout=5)

    asyncio.run(scenario())

    assert r.is_running() is False
    assert r.cycle_count >= 1
    assert r.stop() is False


def test_start_rejects_fatal_config():
    r = _runner(_client(), MAX_TRADING_CAPITAL_PERCENT=0)

    async def scenario():
        with pytest.raises(ValueError):
            r.start()

    asyncio.run(scenario())
    assert r.is_running() is False


def test_failed_cycle_audit_keeps_iteration_result():
    client = _client()
    r = _runner(client, SYMBOLS="BTCUSDC")
    r.strategy = _BuyEverything()
    write_event = r.audit.event

    def flaky_event(event_type, *args, **kwargs):
        if event_type == "CYCLE":
            raise OSError("disk full")
        return write_event(event_type, *args, **kwargs)

    r.audit.event = flaky_event

    summary = r.run_once()

    assert r.cycle_count == 1
    assert r.last_summary is summary
    assert summary["results"][0]["success"] is True


def test_position_stats_accessors():
    client = _client()
    r = _runner(client, SYMBOLS="BTCUSDC")
    r.strategy = _BuyEverything()
    r.run_once()
    (p,) = r.open_positions()

    client.prices["BTCUSDC"] = 90.0
    assert r.close_position(p["id"]).success

    stats = r.position_stats("BTCUSDC")
    assert stats["total_positions"] == 1
    assert stats["open_positions"] == 0
    assert stats["losing_trades"] == 1
    assert stats["win_rate"] == 0.0
    assert stats["worst_trade"] < 0

    (day,) = r.daily_stats()
    assert day["total_trades"] == 1
    assert day["total_pnl"] == pytest.approx(stats["total_pnl"])
