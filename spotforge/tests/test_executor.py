import pytest

from spotforge.core.models import Position, PositionStatus
from spotforge.exchange.binance.errors import BinanceAPIError, BinanceOrderStatusUnknown
from spotforge.exchange.binance.filters import FilterCache
from spotforge.execution.executor import OrderExecutor, fill_summary, quote_commission
from spotforge.persistence.audit import Audit
from spotforge.persistence.orders import OrderStore
from spotforge.persistence.positions import PositionStore
from spotforge.persistence.state_store import BotStateStore
from spotforge.risk.cooldown import SymbolCooldown
from spotforge.risk.gate import RiskGate
from spotforge.strategy.base import Decision, Signal
from spotforge.strategy.config_cache import StrategyConfig


def _executor(db, client, tmp_path, *, trading=True):
    state = BotStateStore(db)
    state.seed(kill_switch=False, trading_enabled=trading)
    positions = PositionStore(db)
    sleeps = []
    ex = OrderExecutor(
        client,
        filters=FilterCache(client),
        orders=OrderStore(db),
        positions=positions,
        risk_gate=RiskGate(state_store=state, positions=positions),
        cooldown=SymbolCooldown(),
        config_provider=StrategyConfig,
        base_asset="USDC",
        max_capital_percent=80.0,
        min_notional_buffer=1.2,
        order_delay_seconds=0.5,
        audit=Audit(db, str(tmp_path / "audit.jsonl")),
        sleep=sleeps.append,
    )
    return ex, sleeps


def _buy(symbol="BTCUSDC", price=100.0):
    return Decision(symbol=symbol, signal=Signal.BUY, score=6.0, reason="score=6", price=price)


def _position(ex, symbol="BTCUSDC", qty=1.0, entry=100.0):
    return ex.positions.create(
        Position(
            symbol=symbol,
            entry_price=entry,
            quantity=qty,
            stop_loss_price=entry * 0.96,
            take_profit_price=entry * 1.05,
            initial_stop_loss_price=entry * 0.96,
            highest_price=entry,
            trailing_enabled=True,
        )
    )


def test_fill_summary_nets_base_commission():
    resp = {
        "executedQty": "2.0",
        "cummulativeQuoteQty": "201.0",
        "fills": [
            {"commission": "0.001", "commissionAsset": "BTC"},
            {"commission": "0.5", "commissionAsset": "USDC"},
        ],
    }
    avg, executed, fee = fill_summary(resp, "BTC")
    assert avg == pytest.approx(100.5)
    assert executed == 2.0
    assert fee == pytest.approx(0.001)


def test_buy_opens_position(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)

    res = ex.execute_buy(_buy())

    assert res.success, res.reason
    assert res.reason == "order_placed"
    # 1000 free * 80% = 800 capital, 2% risk = 16, stop 4% below 100 -> 4 units
    assert float(fake_client.orders[0]["quantity"]) == pytest.approx(4.0, abs=0.001)
    assert fake_client.orders[0]["client_order_id"].startswith("bot_")

    (p,) = ex.positions.open_positions("BTCUSDC")
    assert p.quantity == pytest.approx(4.0, abs=0.001)
    assert p.entry_price == pytest.approx(100.0)
    assert p.stop_loss_price < p.entry_price < p.take_profit_price
    assert p.highest_price == p.entry_price
    assert p.initial_stop_loss_price == p.stop_loss_price

    (order,) = ex.orders.list("BTCUSDC")
    assert order.status == "FILLED"
    assert order.side == "BUY"


def test_second_buy_blocked_by_position_cap(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    assert ex.execute_buy(_buy()).success

    res = ex.execute_buy(_buy())
    assert not res.success
    assert res.reason.startswith("max_open_positions_reached")
    assert len(fake_client.orders) == 1


def test_cooldown_blocks_buy(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    ex.cooldown.add("BTCUSDC", "stop_loss")

    res = ex.execute_buy(_buy())
    assert not res.success
    assert res.reason == "symbol_on_cooldown:stop_loss"
    assert fake_client.orders == []


def test_buy_denied_when_trading_disabled(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path, trading=False)
    res = ex.execute_buy(_buy())
    assert res.reason == "trading_disabled"
    assert fake_client.orders == []


def test_buy_without_balance(db, fake_client, tmp_path):
    fake_client.balance = 0.0
    ex, _ = _executor(db, fake_client, tmp_path)
    assert ex.execute_buy(_buy()).reason == "no_usdc_balance"


def test_exchange_rejection_is_recorded(db, fake_client, tmp_path):
    fake_client.reject_orders["BTCUSDC"] = BinanceAPIError(400, -2010, "Account has insufficient balance")
    ex, _ = _executor(db, fake_client, tmp_path)

    res = ex.execute_buy(_buy())

    assert not res.success
    assert res.reason == "exchange_rejected:-2010:Account has insufficient balance"
    assert ex.positions.open_positions() == []
    (order,) = ex.orders.list()
    assert order.status == "REJECTED"


def test_batch_isolates_failures_and_paces_orders(db, fake_client, tmp_path):
    fake_client.reject_orders["ETHUSDC"] = BinanceAPIError(400, -1013, "Filter failure")
    ex, sleeps = _executor(db, fake_client, tmp_path)

    hold = Decision(symbol="XRPUSDC", signal=Signal.HOLD, score=0.0, reason="score=0")
    results = ex.execute_decisions([_buy("ETHUSDC", 50.0), hold, _buy("BTCUSDC")])

    assert [(r.symbol, r.success) for r in results] == [("ETHUSDC", False), ("BTCUSDC", True)]
    assert sleeps == [0.5]


def test_sell_without_position(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    res = ex.execute_sell(Decision(symbol="BTCUSDC", signal=Signal.SELL, score=-6.0, reason="score=-6"))
    assert not res.success
    assert res.reason == "no_open_position"


def test_sell_closes_open_positions(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    p = _position(ex)

    res = ex.execute_sell(Decision(symbol="BTCUSDC", signal=Signal.SELL, score=-6.0, reason="score=-6", price=100.0))

    assert res.success
    assert ex.positions.get(p.id).status == PositionStatus.CLOSED
    assert ex.cooldown.get("BTCUSDC").reason == "manual_sell"
    assert fake_client.orders[-1]["side"] == "SELL"
    assert fake_client.orders[-1]["client_order_id"].startswith("bot_exit_")


def test_exit_deferred_below_min_notional(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    p = _position(ex, qty=0.05)

    res = ex.close_position(p, PositionStatus.STOPPED_OUT, price=100.0)

    assert not res.success
    assert res.action == "EXIT_DEFERRED"
    assert res.reason == "exit_deferred:below_min_notional"
    assert ex.positions.get(p.id).is_open
    assert fake_client.orders == []


def test_forced_exit_sells_below_minimums(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    p = _position(ex, qty=0.05)

    res = ex.close_position(p, PositionStatus.CLOSED, price=100.0, force=True)

    assert res.success
    assert fake_client.orders[-1]["quantity"] == "0.050"
    assert ex.positions.get(p.id).status == PositionStatus.CLOSED


def test_close_applies_terminal_status_once(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    p = _position(ex)
    fake_client.prices["BTCUSDC"] = 95.0

    first = ex.close_position(p, PositionStatus.STOPPED_OUT, price=95.0)
    second = ex.close_position(p, PositionStatus.STOPPED_OUT, price=95.0)

    assert first.success
    assert first.reason == "stopped_out"
    assert second.reason == "position_not_open"
    assert len(fake_client.orders) == 1

    cd = ex.cooldown.get("BTCUSDC")
    assert cd.reason == "stop_loss"
    assert cd.loss_percent == pytest.approx(-5.0)

    events = [e["event_type"] for e in ex.audit.recent(10)]
    assert "POSITION_CLOSE" in events


def test_expired_buy_opens_no_position(db, fake_client, tmp_path):
    fake_client.order_overrides["BTCUSDC"] = {
        "status": "EXPIRED",
        "executedQty": "0.00000000",
        "cummulativeQuoteQty": "0.00000000",
        "fills": [],
    }
    ex, _ = _executor(db, fake_client, tmp_path)

    res = ex.execute_buy(_buy())

    assert not res.success
    assert res.reason == "order_not_filled:EXPIRED"
    assert ex.positions.open_positions() == []
    (order,) = ex.orders.list("BTCUSDC")
    assert order.status == "EXPIRED"


def test_expired_buy_with_partial_fill_tracks_filled_qty(db, fake_client, tmp_path):
    fake_client.order_overrides["BTCUSDC"] = {
        "status": "EXPIRED",
        "executedQty": "1.50000000",
        "cummulativeQuoteQty": "150.00000000",
    }
    ex, _ = _executor(db, fake_client, tmp_path)

    assert ex.execute_buy(_buy()).success
    (p,) = ex.positions.open_positions("BTCUSDC")
    assert p.quantity == pytest.approx(1.5)


def test_buy_with_unknown_outcome_is_recorded_not_opened(db, fake_client, tmp_path):
    fake_client.reject_orders["BTCUSDC"] = BinanceOrderStatusUnknown("POST /api/v3/order outcome unknown")
    ex, _ = _executor(db, fake_client, tmp_path)

    res = ex.execute_buy(_buy())

    assert not res.success
    assert res.reason.startswith("order_status_unknown:")
    assert ex.positions.open_positions() == []
    (order,) = ex.orders.list("BTCUSDC")
    assert order.status == "UNKNOWN"
    assert order.client_order_id.startswith("bot_")


def test_unfilled_exit_keeps_position_open(db, fake_client, tmp_path):
    ex, _ = _executor(db, fake_client, tmp_path)
    p = _position(ex)
    fake_client.order_overrides["BTCUSDC"] = {"status": "EXPIRED", "executedQty": "0", "fills": []}

    res = ex.close_position(p, PositionStatus.STOPPED_OUT, price=95.0)

    assert res.reason == "order_not_filled:EXPIRED"
    assert ex.positions.get(p.id).is_open
    assert ex.cooldown.get("BTCUSDC") is None


def test_quote_commission_values_base_fees_and_skips_bnb():
    resp = {
        "fills": [
            {"price": "100", "commission": "0.4", "commissionAsset": "USDC"},
            {"price": "100", "commission": "0.001", "commissionAsset": "BTC"},
            {"price": "100", "commission": "0.01", "commissionAsset": "BNB"},
        ]
    }
    assert quote_commission(resp, "BTC", "USDC") == pytest.approx(0.5)


def test_close_records_realized_pnl_and_commission(db, fake_client, tmp_path):
    fee = {"price": "100", "qty": "4.000", "commission": "0.4", "commissionAsset": "USDC"}
    fake_client.order_overrides["BTCUSDC"] = {"fills": [fee]}
    ex, _ = _executor(db, fake_client, tmp_path)
    assert ex.execute_buy(_buy()).success
    (p,) = ex.positions.open_positions("BTCUSDC")
    assert p.entry_commission == pytest.approx(0.4)
    assert p.realized_pnl is None

    fake_client.prices["BTCUSDC"] = 110.0
    exit_fee = {"price": "110", "qty": "4.000", "commission": "0.44", "commissionAsset": "USDC"}
    fake_client.order_overrides["BTCUSDC"] = {"fills": [exit_fee]}
    res = ex.close_position(p, PositionStatus.TAKE_PROFIT, price=110.0)

    assert res.success
    closed = ex.positions.get(p.id)
    assert closed.realized_pnl == pytest.approx(40.0, abs=0.05)
    assert closed.realized_pnl_percent == pytest.approx(10.0)
    assert closed.exit_commission == pytest.approx(0.44)

    stats = ex.positions.stats()
    assert stats["winning_trades"] == 1
    assert stats["win_rate"] == 100.0
    assert stats["total_commission"] == pytest.approx(0.84)
    assert stats["net_pnl"] == pytest.approx(40.0 - 0.84, abs=0.05)
    assert stats["by_status"]["TAKE_PROFIT"] == 1
