import pytest

from spotforge.core.models import Position, PositionStatus
from spotforge.execution.position_manager import TrailingParams, evaluate_position, sl_tp_prices, validate_sl_tp

TRAILING = TrailingParams(enabled=True, activation_percent=3.0, distance_percent=2.0)


def _pos(**kw) -> Position:
    base = dict(
        symbol="BTCUSDC",
        entry_price=100.0,
        quantity=1.0,
        stop_loss_price=96.0,
        take_profit_price=110.0,
        initial_stop_loss_price=96.0,
        highest_price=100.0,
        trailing_enabled=True,
    )
    base.update(kw)
    return Position(**base)


def test_sl_tp_prices_long():
    sl, tp = sl_tp_prices(100.0, 4.0, 5.0)
    assert sl == pytest.approx(96.0)
    assert tp == pytest.approx(105.0)
    validate_sl_tp("LONG", 100.0, sl, tp)


def test_validate_sl_tp_rejects_inverted():
    with pytest.raises(ValueError):
        validate_sl_tp("LONG", 100.0, 101.0, 110.0)
    with pytest.raises(ValueError):
        validate_sl_tp("LONG", 100.0, 95.0, 99.0)


def test_stop_hit():
    upd = evaluate_position(_pos(), 95.0, TRAILING)
    assert upd.exit_status == PositionStatus.STOPPED_OUT
    assert upd.reason == "stop_loss_hit"


def test_take_profit_hit():
    upd = evaluate_position(_pos(), 110.0, TRAILING)
    assert upd.exit_status == PositionStatus.TAKE_PROFIT


def test_below_activation_holds():
    upd = evaluate_position(_pos(), 102.0, TRAILING)
    assert upd.exit_status is None
    assert upd.reason == "hold"
    assert upd.highest_price == 102.0
    assert not upd.stop_moved


def test_trailing_raises_from_highest():
    upd = evaluate_position(_pos(), 104.0, TRAILING)
    assert upd.stop_moved
    assert upd.stop_loss_price == pytest.approx(104.0 * 0.98)


def test_trailing_floor_at_entry():
    params = TrailingParams(enabled=True, activation_percent=1.0, distance_percent=5.0)
    upd = evaluate_position(_pos(), 102.0, params)
    assert upd.stop_loss_price == pytest.approx(100.0)


def test_trailing_disabled_on_position_or_config():
    assert not evaluate_position(_pos(trailing_enabled=False), 104.0, TRAILING).stop_moved
    off = TrailingParams(enabled=False, activation_percent=3.0, distance_percent=2.0)
    assert not evaluate_position(_pos(), 104.0, off).stop_moved


def test_trailing_stop_never_decreases():
    p = _pos()
    stops = [p.stop_loss_price]
    for price in [101, 103, 105, 104, 106, 105.5, 107, 106, 108, 107.5]:
        upd = evaluate_position(p, float(price), TRAILING)
        if upd.exit_status is not None:
            break
        p.highest_price = upd.highest_price
        p.stop_loss_price = upd.stop_loss_price
        stops.append(p.stop_loss_price)

    assert stops == sorted(stops)
    assert p.highest_price == 108.0
    assert p.stop_loss_price == pytest.approx(108.0 * 0.98)
