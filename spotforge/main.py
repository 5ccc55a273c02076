import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from spotforge.core.config import settings
from spotforge.runner.runner import BotRunner, RunnerAlreadyRunning

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("spotforge.api")

app = FastAPI(title="SpotForge Bot")
_runner: Optional[BotRunner] = None


def get_runner() -> BotRunner:
    global _runner
    if _runner is None:
        _runner = BotRunner.from_settings(settings)
    return _runner


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        for w in settings.validate_runtime():
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error("%s", e)
        raise


@app.on_event("shutdown")
async def _shutdown_runner():
    if _runner is not None and _runner.stop():
        try:
            await _runner.wait_stopped(timeout=30)
        except asyncio.TimeoutError:
            log.warning("runner did not stop within 30s")


# ---------------- RUNNER ----------------


@app.get("/")
def root():
    return {"service": "spotforge", **get_runner().status()}


@app.post("/runner/start")
async def runner_start():
    runner = get_runner()
    try:
        return {"status": "started", **runner.start()}
    except RunnerAlreadyRunning:
        raise HTTPException(status_code=409, detail="already_running")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/runner/stop")
async def runner_stop():
    runner = get_runner()
    if not runner.stop():
        return {"status": "not_running", **runner.status()}
    return {"status": "stopping", **runner.status()}


@app.get("/runner/status")
def runner_status():
    runner = get_runner()
    return {**runner.status(), "last_summary": runner.last_summary}


@app.post("/runner/once")
async def runner_once():
    return await asyncio.to_thread(get_runner().run_once)


# ---------------- SYMBOLS / POSITIONS ----------------


@app.get("/symbols")
def symbols():
    return get_runner().symbols()


@app.get("/positions/open")
def positions_open():
    return get_runner().open_positions()


@app.get("/positions/closed")
def positions_closed(limit: int = 100):
    return get_runner().closed_positions(limit=max(1, min(limit, 1000)))


@app.get("/positions/stats")
def positions_stats(symbol: Optional[str] = None):
    return get_runner().position_stats(symbol)


@app.get("/stats/daily")
def stats_daily(days: int = 30):
    return get_runner().daily_stats(days=max(1, min(days, 365)))


@app.post("/positions/{position_id}/close")
def position_close(position_id: int, force: bool = True):
    res = get_runner().close_position(position_id, force=force)
    if not res.success and res.reason == "position_not_found":
        raise HTTPException(status_code=404, detail=res.reason)
    return {
        "symbol": res.symbol,
        "success": res.success,
        "reason": res.reason,
        "order_ref": res.order_ref,
        "details": res.details,
    }


@app.post("/positions/{position_id}/stop-loss")
def position_stop_loss(position_id: int, stop_loss_price: float = Body(..., embed=True)):
    try:
        new = get_runner().update_stop_loss(position_id, stop_loss_price)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if new is None:
        raise HTTPException(status_code=404, detail="open_position_not_found")
    return {"position_id": position_id, "stop_loss_price": new}


# ---------------- COOLDOWNS ----------------


@app.get("/cooldowns")
def cooldowns():
    return get_runner().cooldowns()


@app.delete("/cooldowns/{symbol}")
def cooldown_remove(symbol: str):
    return {"symbol": symbol.upper(), "removed": get_runner().remove_cooldown(symbol)}


@app.delete("/cooldowns")
def cooldowns_clear():
    return {"cleared": get_runner().clear_cooldowns()}


# ---------------- CONFIG / FLAGS ----------------


@app.get("/strategy/config")
def strategy_config():
    return get_runner().strategy_config()


@app.put("/strategy/config")
def strategy_config_update(changes: Dict[str, Any] = Body(...)):
    try:
        return get_runner().update_strategy_config(changes)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/bot/trading-enabled")
def bot_trading_enabled(on: bool):
    get_runner().set_trading_enabled(on)
    return get_runner().status()["flags"]


@app.post("/bot/kill-switch")
def bot_kill_switch(on: bool):
    get_runner().set_kill_switch(on)
    return get_runner().status()["flags"]


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50):
    return get_runner().audit.recent(limit=max(1, min(limit, 500)))


@app.get("/debug/settings")
def debug_settings():
    return settings.public_dict()
