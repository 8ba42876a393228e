import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

import claimfleet.constants as C
from claimfleet.alerts import make_alert_sink
from claimfleet.config import RunConfig, cfg, load_run_config, redact, save_run_config
from claimfleet.errors import ControlError, LedgerError
from claimfleet.gateway import LedgerGateway
from claimfleet.logging_config import recent_logs, setup_logging
from claimfleet.orchestrator import Orchestrator
from claimfleet.sqlite_store import SQLiteWalletStore

setup_logging()
log = logging.getLogger("claimfleet.app")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

to = cfg["timeout"]
RPC_URLS: list[str] = cfg["ledger"]["rpc_urls"]


async def _probe_rippled(url: str, max_retries: int = 5, retry_delay: float = 2.0) -> bool:
    """Check a rippled RPC endpoint answers server_info. Never raises."""
    payload = {"method": "server_info", "params": [{}]}
    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=to["rpc"]) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info("RPC endpoint %s responding (attempt %s/%s)", url, attempt, max_retries)
                return True
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info("RPC %s not ready (attempt %s/%s): %s - retrying in %ss", url, attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
    log.error("RPC endpoint %s unreachable after %s attempts", url, max_retries)
    return False


def build_orchestrator() -> Orchestrator:
    bot = cfg["bot"]
    gateway = LedgerGateway(
        RPC_URLS,
        rpc_timeout=to["rpc"],
        submit_timeout=to["submit"],
        horizon=bot["horizon"],
    )
    return Orchestrator(
        gateway,
        SQLiteWalletStore(cfg["store"]["db_path"]),
        make_alert_sink(cfg["alerts"]["webhook_url"]),
        load_run_config(),
        tick_interval=bot["tick_interval"],
        maintenance_interval=bot["maintenance_interval"],
        lookahead=timedelta(minutes=bot["lookahead_minutes"]),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        try:
            async with asyncio.timeout(to["startup"]):
                for url in RPC_URLS:
                    await _probe_rippled(url)
        except TimeoutError:
            log.error("Startup probe timed out after %ss; continuing", to["startup"])
        orchestrator = build_orchestrator()
        app.state.orchestrator = orchestrator
    log.info("Ready. Run config %s", "loaded" if orchestrator.config else "missing, POST /config")
    try:
        yield
    finally:
        log.info("Shutting down...")
        await orchestrator.stop(drain=True)
        await orchestrator.alerts.close()
        log.info("Shutdown complete")


app = FastAPI(
    title="claimfleet",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Bot", "description": "Start, stop and inspect the bot"},
        {"name": "Config", "description": "Run configuration"},
        {"name": "Wallets", "description": "Target wallet intake and status"},
    ],
)

r_bot = APIRouter(prefix="/bot", tags=["Bot"])
r_config = APIRouter(prefix="/config", tags=["Config"])
r_wallets = APIRouter(prefix="/wallets", tags=["Wallets"])


class ScheduleReq(BaseModel):
    secrets: list[str]


class ForceRunReq(BaseModel):
    secret: str


def _orchestrator(request: Request | WebSocket) -> Orchestrator:
    return request.app.state.orchestrator


def _control_error(e: ControlError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def _public(record: dict) -> dict:
    rec = dict(record)
    rec["secret"] = redact(rec.get("secret", ""))
    return rec


@app.get("/health")
def health():
    return {"status": "ok"}


@r_bot.post("/start")
async def start_bot(request: Request):
    orch = _orchestrator(request)
    try:
        started = orch.start()
    except ControlError as e:
        raise _control_error(e) from e
    return {"started": started, "message": "bot started" if started else "bot already running"}


@r_bot.post("/stop")
async def stop_bot(request: Request):
    stopped = await _orchestrator(request).stop()
    return {"stopped": stopped, "message": "bot stopped" if stopped else "bot was not running"}


@r_bot.get("/status")
async def bot_status(request: Request):
    orch = _orchestrator(request)
    return {**orch.status(), "summary": await orch.store.summary_counts()}


@r_config.get("")
async def get_config(request: Request):
    config = _orchestrator(request).config
    return config.redacted() if config else {}


@r_config.post("")
async def set_config(request: Request, config: RunConfig):
    save_run_config(config)
    _orchestrator(request).update_config(config)
    return config.redacted()


@r_wallets.post("")
async def schedule_wallets(request: Request, req: ScheduleReq):
    stats = await _orchestrator(request).schedule_new(req.secrets)
    return stats.as_dict()


@r_wallets.get("")
async def list_wallets(request: Request, status: str | None = None):
    store = _orchestrator(request).store
    records = await (store.list_by_status(status) if status else store.list_all())
    return [_public(r) for r in records]


@r_wallets.get("/summary")
async def wallets_summary(request: Request):
    return await _orchestrator(request).store.summary_counts()


@r_wallets.post("/force-run")
async def force_run(request: Request, req: ForceRunReq):
    try:
        message = await _orchestrator(request).force_run(req.secret)
    except ControlError as e:
        raise _control_error(e) from e
    return {"message": message}


@r_wallets.post("/clear")
async def clear_wallets(request: Request):
    try:
        n = await _orchestrator(request).clear_wallets()
    except ControlError as e:
        raise _control_error(e) from e
    return {"cleared": n}


@r_wallets.get("/{address}")
async def wallet_details(request: Request, address: str):
    try:
        return await _orchestrator(request).wallet_details(address)
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=e.describe()) from e
    except TimeoutError as e:
        raise HTTPException(status_code=504, detail="ledger did not answer in time") from e


@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(request: Request):
    """HTML dashboard; live numbers come over /ws."""
    orch = _orchestrator(request)
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "status": orch.status(),
            "summary": await orch.store.summary_counts(),
            "config": orch.config.redacted() if orch.config else None,
            "push_interval": C.STATUS_PUSH_INTERVAL,
        },
    )


async def _status_payload(orch: Orchestrator, log_cursor: int) -> tuple[dict, int]:
    lines, log_cursor = recent_logs.since(log_cursor)
    payload = {
        "running": orch.running,
        "summary": await orch.store.summary_counts(),
        "sponsors": orch.status()["sponsors"],
        "funding_failures": orch.funding_failures,
        "wallets": [_public(r) for r in await orch.store.list_all()],
        "logs": lines,
    }
    return payload, log_cursor


@app.websocket("/ws")
async def status_stream(websocket: WebSocket):
    """Push the bot status every STATUS_PUSH_INTERVAL seconds until the client goes away."""
    await websocket.accept()
    orch = _orchestrator(websocket)
    # Send the backlog on connect, then only new lines
    cursor = max(recent_logs.total - len(recent_logs.lines), 0)
    try:
        while True:
            payload, cursor = await _status_payload(orch, cursor)
            await websocket.send_json(payload)
            await asyncio.sleep(C.STATUS_PUSH_INTERVAL)
    except WebSocketDisconnect:
        log.debug("Status stream client disconnected")


app.include_router(r_bot)
app.include_router(r_config)
app.include_router(r_wallets)
