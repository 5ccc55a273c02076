from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from spotforge.core.models import COOLDOWN_REASON_FOR_STATUS, Order, Position, PositionStatus
from spotforge.exchange.binance.errors import BinanceAPIError, BinanceError, BinanceOrderStatusUnknown
from spotforge.exchange.binance.filters import format_qty, round_qty
from spotforge.execution.position_manager import sl_tp_prices, validate_sl_tp
from spotforge.strategy.base import Decision, Signal
from spotforge.symbols.sizing import (
    ZeroPriceRisk,
    quantity_for_risk,
    risk_amount,
    size_entry,
    size_exit,
    trading_capital,
)

log = logging.getLogger("spotforge.executor")

# an EXPIRED MARKET order may still carry a partial fill; executedQty decides
FILLED_STATUSES = ("FILLED", "PARTIALLY_FILLED")


# =========================
# Execution Result
# =========================
@dataclass
class ExecResult:
    symbol: str
    action: str
    success: bool
    reason: str
    order_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _now_ms() -> int:
    return int(time.time() * 1000)


def fill_summary(response: Dict[str, Any], base_asset: str = "") -> Tuple[Optional[float], Optional[float], float]:
    """
    (avg_fill_price, executed_qty, base_commission) from a FULL order response.
    None where the response does not say.
    """
    try:
        executed = float(response.get("executedQty") or 0.0)
        quote = float(response.get("cummulativeQuoteQty") or 0.0)
    except (TypeError, ValueError):
        return None, None, 0.0

    avg = quote / executed if executed > 0 and quote > 0 else None
    commission = 0.0
    if base_asset:
        for f in response.get("fills") or []:
            if (f.get("commissionAsset") or "").upper() == base_asset:
                try:
                    commission += float(f.get("commission") or 0.0)
                except (TypeError, ValueError):
                    continue
    return avg, (executed if executed > 0 else None), commission


def quote_commission(response: Dict[str, Any], base_asset: str, quote_asset: str) -> float:
    """
    Fees of a FULL order response in the quote asset. Base-asset fees are valued at
    their fill price; fees in any other asset (BNB) have no price here and are skipped.
    """
    total = 0.0
    for f in response.get("fills") or []:
        asset = (f.get("commissionAsset") or "").upper()
        try:
            fee = float(f.get("commission") or 0.0)
            px = float(f.get("price") or 0.0)
        except (TypeError, ValueError):
            continue
        if asset == quote_asset:
            total += fee
        elif asset == base_asset:
            total += fee * px
    return total


# =========================
# Order Executor
# =========================
class OrderExecutor:
    """
    Turns BUY/SELL decisions into exchange-compliant MARKET orders.

    Every failure comes back as ExecResult(success=False, reason=...); one symbol's
    failure never aborts the batch.
    """

    def __init__(
        self,
        client,
        *,
        filters,
        orders,
        positions,
        risk_gate,
        cooldown,
        config_provider: Callable[[], Any],
        base_asset: str = "USDC",
        max_capital_percent: float = 80.0,
        min_notional_buffer: float = 1.2,
        order_delay_seconds: float = 0.5,
        audit=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.filters = filters
        self.orders = orders
        self.positions = positions
        self.risk_gate = risk_gate
        self.cooldown = cooldown
        self.config_provider = config_provider
        self.base_asset = base_asset.upper()
        self.max_capital_percent = float(max_capital_percent)
        self.min_notional_buffer = float(min_notional_buffer)
        self.order_delay_seconds = float(order_delay_seconds)
        self.audit = audit
        self.sleep = sleep

        # one exit at a time: the monitor and a manual close must not both sell
        self._exit_lock = threading.Lock()

    # ---------------- INTERNAL HELPERS ----------------

    def _audit(self, event_type: str, symbol: str, action: str, details: dict) -> None:
        if self.audit is None:
            return
        try:
            self.audit.event(event_type, symbol=symbol, action=action, details=details)
        except Exception as e:
            log.warning("audit write failed (%s %s): %s", event_type, symbol, e)

    def _record_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        status: str,
        client_order_id: str,
        request: dict,
        response: dict,
    ) -> Order:
        ref = response.get("orderId")
        return self.orders.add(
            Order(
                symbol=symbol,
                side=side,
                qty=qty,
                status=status,
                exchange_order_ref=str(ref) if ref is not None else None,
                client_order_id=client_order_id,
                request_snapshot=request,
                response_snapshot=response,
            )
        )

    def _fail(self, symbol: str, action: str, reason: str, **details) -> ExecResult:
        log.warning("%s %s rejected: %s", action, symbol, reason)
        return ExecResult(symbol=symbol, action=action, success=False, reason=reason, details=details)

    # ---------------- BATCH ----------------

    def execute_decisions(self, decisions: List[Decision]) -> List[ExecResult]:
        """Sequential on purpose: every BUY re-reads the balance it sizes from."""
        results: List[ExecResult] = []
        submitted = 0
        for d in decisions:
            if not d.actionable:
                continue
            if submitted and self.order_delay_seconds > 0:
                self.sleep(self.order_delay_seconds)
            try:
                if d.signal == Signal.BUY:
                    res = self.execute_buy(d)
                else:
                    res = self.execute_sell(d)
            except Exception as e:
                log.error("execution failed for %s: %s", d.symbol, e, exc_info=True)
                res = ExecResult(d.symbol, d.signal.value, False, f"error:{type(e).__name__}:{e}")
            results.append(res)
            submitted += 1
        return results

    # ---------------- ENTRY ----------------

    def execute_buy(self, decision: Decision) -> ExecResult:
        symbol = decision.symbol.upper()
        action = "BUY"

        cd = self.cooldown.get(symbol)
        if cd is not None:
            return self._fail(
                symbol,
                action,
                f"symbol_on_cooldown:{cd.reason}",
                remaining_seconds=round(self.cooldown.remaining_seconds(symbol), 1),
            )

        cfg = self.config_provider()

        try:
            price = float(self.client.ticker_price(symbol))
        except BinanceError as e:
            if not decision.price:
                return self._fail(symbol, action, f"price_unavailable:{e}")
            price = float(decision.price)

        try:
            free = float(self.client.free_balance(self.base_asset))
        except BinanceError as e:
            return self._fail(symbol, action, f"balance_unavailable:{e}")
        if free <= 0:
            return self._fail(symbol, action, f"no_{self.base_asset.lower()}_balance")

        capital = trading_capital(free, self.max_capital_percent)
        risk = risk_amount(capital, cfg.risk_per_trade_percent)
        stop, take = sl_tp_prices(price, cfg.stop_loss_percent, cfg.take_profit_percent)

        try:
            raw_qty = quantity_for_risk(risk, price, stop)
        except ZeroPriceRisk as e:
            return self._fail(symbol, action, "zero_price_risk", error=str(e))

        try:
            flt = self.filters.get(symbol)
        except (BinanceError, ValueError) as e:
            return self._fail(symbol, action, f"filters_unavailable:{e}")

        sz = size_entry(
            symbol=symbol,
            price=price,
            raw_qty=raw_qty,
            filters=flt,
            capital=capital,
            min_notional_buffer=self.min_notional_buffer,
        )
        if not sz.ok:
            return self._fail(symbol, action, sz.reason, **sz.details)

        verdict = self.risk_gate.validate_order(symbol, risk)
        if not verdict.allowed:
            return self._fail(symbol, action, verdict.reason)

        try:
            validate_sl_tp("LONG", price, stop, take)
        except ValueError as e:
            return self._fail(symbol, action, "invalid_sl_tp", error=str(e))

        log.info(
            "BUY %s qty=%s @ ~%.8f notional=%.2f capital=%.2f risk=%.2f sl=%.8f tp=%.8f",
            symbol, sz.qty_str, price, sz.notional, capital, risk, stop, take,
        )

        client_order_id = f"bot_{_now_ms()}_{symbol}"
        request = {"symbol": symbol, "side": "BUY", "type": "MARKET", "quantity": sz.qty_str}
        try:
            response = self.client.create_order(
                symbol, "BUY", sz.qty_str, order_type="MARKET", client_order_id=client_order_id
            )
        except BinanceAPIError as e:
            self._record_order(symbol, "BUY", sz.qty, "REJECTED", client_order_id, request,
                               {"status": e.status, "code": e.code, "msg": e.msg})
            return self._fail(symbol, action, f"exchange_rejected:{e.code}:{e.msg}")
        except BinanceOrderStatusUnknown as e:
            self._record_order(symbol, "BUY", sz.qty, "UNKNOWN", client_order_id, request, {"error": str(e)})
            log.error("BUY %s outcome unknown, check client order %s on the exchange: %s", symbol, client_order_id, e)
            return self._fail(symbol, action, f"order_status_unknown:{e}")
        except BinanceError as e:
            return self._fail(symbol, action, f"exchange_error:{e}")

        response = response or {}
        status = str(response.get("status") or "NEW")
        order = self._record_order(symbol, "BUY", sz.qty, status, client_order_id, request, response)

        avg, executed, fee_base = fill_summary(response, flt.base_asset)
        if not executed:
            return self._fail(symbol, action, f"order_not_filled:{status}", order_ref=order.exchange_order_ref)
        if status not in FILLED_STATUSES:
            log.warning("BUY %s ended %s with %s filled; tracking the filled part", symbol, status, executed)
        entry = avg or price
        qty = executed - fee_base
        if entry != price:
            stop, take = sl_tp_prices(entry, cfg.stop_loss_percent, cfg.take_profit_percent)

        pos = self.positions.create(
            Position(
                symbol=symbol,
                entry_price=entry,
                quantity=qty,
                current_price=entry,
                stop_loss_price=stop,
                take_profit_price=take,
                initial_stop_loss_price=stop,
                highest_price=entry,
                trailing_enabled=bool(cfg.trailing_stop_enabled),
                entry_order_ref=order.exchange_order_ref,
                entry_commission=quote_commission(response, flt.base_asset, flt.quote_asset or self.base_asset),
            )
        )

        log.info("position opened %s id=%s entry=%.8f qty=%s", symbol, pos.id, entry, qty)
        self._audit(
            "POSITION_OPEN",
            symbol,
            "BUY",
            {"position_id": pos.id, "entry": entry, "qty": qty, "sl": stop, "tp": take,
             "order_ref": order.exchange_order_ref, "score": decision.score, "reason": decision.reason},
        )
        return ExecResult(
            symbol=symbol,
            action=action,
            success=True,
            reason="order_placed",
            order_ref=order.exchange_order_ref,
            details={"position_id": pos.id, "qty": qty, "entry_price": entry, "notional": sz.notional},
        )

    # ---------------- EXIT ----------------

    def execute_sell(self, decision: Decision) -> ExecResult:
        """A SELL signal closes every OPEN position on the symbol (status CLOSED)."""
        symbol = decision.symbol.upper()
        open_positions = self.positions.open_positions(symbol)
        if not open_positions:
            return ExecResult(symbol, "SELL", False, "no_open_position")

        results = [self.close_position(p, PositionStatus.CLOSED, price=decision.price) for p in open_positions]
        ok = all(r.success for r in results)
        return ExecResult(
            symbol=symbol,
            action="SELL",
            success=ok,
            reason="positions_closed" if ok else ";".join(r.reason for r in results if not r.success),
            order_ref=results[-1].order_ref,
            details={"closed": [r.details.get("position_id") for r in results if r.success]},
        )

    def close_position(
        self,
        position: Position,
        status: PositionStatus,
        price: Optional[float] = None,
        force: bool = False,
    ) -> ExecResult:
        """
        Sell the position's quantity at market and apply the terminal status once.
        Below minNotional / minQty the exit is deferred (position stays OPEN) unless forced.
        """
        symbol = position.symbol.upper()
        action = "EXIT"

        with self._exit_lock:
            current = self.positions.get(position.id) if position.id is not None else position
            if current is None or not current.is_open:
                return ExecResult(symbol, action, False, "position_not_open", details={"position_id": position.id})

            try:
                px = float(price) if price else float(self.client.ticker_price(symbol))
                flt = self.filters.get(symbol)
            except (BinanceError, ValueError) as e:
                return self._fail(symbol, action, f"exit_unavailable:{e}", position_id=current.id)

            sz = size_exit(symbol=symbol, price=px, qty=current.quantity, filters=flt)
            if sz.ok:
                qty, qty_str = sz.qty, sz.qty_str
            elif force:
                q = round_qty(Decimal(str(current.quantity)), flt.step_size)
                if q <= 0:
                    return self._fail(symbol, action, "qty_zero_after_rounding", position_id=current.id)
                qty, qty_str = float(q), format_qty(q, flt.step_size)
                log.warning("forced exit %s below exchange minimums (%s)", symbol, sz.reason)
            else:
                log.warning(
                    "exit deferred %s id=%s: %s (notional=%.4f min=%.4f)",
                    symbol, current.id, sz.reason, sz.notional, sz.min_notional_required,
                )
                return ExecResult(
                    symbol, "EXIT_DEFERRED", False, f"exit_deferred:{sz.reason}",
                    details={"position_id": current.id, "status": status.value},
                )

            client_order_id = f"bot_exit_{_now_ms()}_{symbol}"
            request = {"symbol": symbol, "side": "SELL", "type": "MARKET", "quantity": qty_str}
            try:
                response = self.client.create_order(
                    symbol, "SELL", qty_str, order_type="MARKET", client_order_id=client_order_id
                )
            except BinanceAPIError as e:
                self._record_order(symbol, "SELL", qty, "REJECTED", client_order_id, request,
                                   {"status": e.status, "code": e.code, "msg": e.msg})
                return self._fail(symbol, action, f"exchange_rejected:{e.code}:{e.msg}", position_id=current.id)
            except BinanceOrderStatusUnknown as e:
                self._record_order(symbol, "SELL", qty, "UNKNOWN", client_order_id, request, {"error": str(e)})
                log.error("SELL %s id=%s outcome unknown, check client order %s on the exchange: %s",
                          symbol, current.id, client_order_id, e)
                return self._fail(symbol, action, f"order_status_unknown:{e}", position_id=current.id)
            except BinanceError as e:
                return self._fail(symbol, action, f"exchange_error:{e}", position_id=current.id)

            response = response or {}
            order_status = str(response.get("status") or "NEW")
            order = self._record_order(symbol, "SELL", qty, order_status, client_order_id, request, response)
            avg, executed, _ = fill_summary(response)
            if not executed:
                return self._fail(symbol, action, f"order_not_filled:{order_status}",
                                  position_id=current.id, order_ref=order.exchange_order_ref)
            if executed < qty:
                log.warning("SELL %s id=%s filled %s of %s (%s); remainder left on the account",
                            symbol, current.id, executed, qty, order_status)
            exit_price = avg or px
            sold = min(executed, current.quantity)
            realized = (exit_price - current.entry_price) * sold
            exit_fee = quote_commission(response, flt.base_asset, flt.quote_asset or self.base_asset)

            closed = self.positions.close(
                current.id,
                status,
                exit_price,
                order.exchange_order_ref,
                realized_pnl=realized,
                realized_pnl_percent=current.pnl_percent(exit_price),
                exit_commission=exit_fee,
            )
            if not closed:
                log.error("position %s was closed concurrently after SELL %s", current.id, order.exchange_order_ref)

        pnl = current.pnl_percent(exit_price)
        self.cooldown.add(
            symbol,
            COOLDOWN_REASON_FOR_STATUS[status],
            loss_percent=round(pnl, 4) if pnl < 0 else None,
        )
        log.info("position closed %s id=%s status=%s exit=%.8f pnl=%.2f%%",
                 symbol, current.id, status.value, exit_price, pnl)
        self._audit(
            "POSITION_CLOSE",
            symbol,
            status.value,
            {"position_id": current.id, "exit": exit_price, "qty": sold, "pnl_percent": pnl, "pnl": realized,
             "commission": current.entry_commission + exit_fee, "order_ref": order.exchange_order_ref,
             "forced": force},
        )
        return ExecResult(
            symbol=symbol,
            action=action,
            success=True,
            reason=status.value.lower(),
            order_ref=order.exchange_order_ref,
            details={"position_id": current.id, "exit_price": exit_price, "pnl_percent": pnl, "pnl": realized},
        )
