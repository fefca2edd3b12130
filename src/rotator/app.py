import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Literal

import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field, PositiveInt
from xrpl.constants import XRPLException

import rotator.constants as C
from rotator.accounts import AccountFactory, admin_from_seed, new_admin
from rotator.activity import IdleActivityDriver, PaymentChurnDriver, TradingContext
from rotator.checkpoint import SessionCheckpoint, list_sessions
from rotator.config import RPC, cfg
from rotator.lap_store import SQLiteLapStore
from rotator.laps import LapRunner, LapSettings
from rotator.ledger import Token, XRPLLedgerClient
from rotator.logging_config import setup_logging
from rotator.session import Session
from rotator.transfers import TransferSettings, sweep_workers

setup_logging()
log = logging.getLogger("rotator.app")


async def _probe_rippled(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the rippled RPC endpoint until it responds.

    Args:
        url: RPC endpoint URL
        max_retries: Maximum number of attempts
        retry_delay: Seconds to wait between attempts
    """
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=cfg["rippled"]["rpc_timeout"]) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise


@dataclass
class LapRun:
    session: Session
    checkpoint: SessionCheckpoint
    runner: LapRunner
    task: asyncio.Task

    @property
    def running(self) -> bool:
        return not self.task.done()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests hand in their own ledger and lap store before startup
    if getattr(app.state, "ledger", None) is None:
        st = cfg["startup"]
        if st["probe"]:
            async with asyncio.timeout(st["timeout"]):
                log.info("Probing RPC endpoint %s...", RPC)
                await _probe_rippled(RPC, st["probe_retries"], st["probe_delay"])
        app.state.ledger = XRPLLedgerClient.from_config(RPC, cfg)
    if getattr(app.state, "lap_store", None) is None:
        app.state.lap_store = SQLiteLapStore(db_path=cfg["state"]["db"])
    app.state.run = None
    log.info("Ready. Sessions in %s", _session_dir())

    try:
        yield
    finally:
        run: LapRun | None = app.state.run
        if run and run.running:
            log.info("Shutting down with lap %s in %s; cancelling", run.runner.lap_number, run.runner.phase)
            run.runner.context.stop()
            run.task.cancel()
            with suppress(asyncio.CancelledError):
                await run.task
        log.info("Shutdown complete")


app = FastAPI(
    title="XRPL Lap Rotator",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Laps", "description": "Start, pause and stop trading laps"},
        {"name": "Sessions", "description": "Saved sessions and cleanup"},
    ],
)

r_laps = APIRouter(prefix="/laps", tags=["Laps"])
r_sessions = APIRouter(prefix="/sessions", tags=["Sessions"])


class StartLapsReq(BaseModel):
    currency: str
    issuer: str
    workers: PositiveInt
    seed_xrp: Decimal = Field(gt=0)
    seed_token: Decimal = Field(ge=0)
    strategy: C.Strategy = C.Strategy.MAKER
    activity: Literal["idle", "churn"] = "idle"
    label: str = "session"
    pool: str | None = None


class ResumeSessionReq(BaseModel):
    name: str
    strategy: C.Strategy = C.Strategy.MAKER
    activity: Literal["idle", "churn"] = "idle"
    start_lap: PositiveInt | None = None
    # Generate and save this many new workers instead of reusing the latest set; needs seed_xrp
    regenerate_workers: PositiveInt | None = None
    # Fund the current workers from the admin before the first lap
    seed_xrp: Decimal | None = Field(default=None, gt=0)
    seed_token: Decimal = Field(default=Decimal(0), ge=0)


class ReplaceAdminReq(BaseModel):
    # Import this admin; a new one is generated when omitted
    seed: str | None = None


def _session_dir() -> Path:
    return Path(cfg["session"]["dir"])


def _checkpoint_for(path: Path) -> SessionCheckpoint:
    s = cfg["session"]
    return SessionCheckpoint(path, retries=int(s["write_retries"]), delay=float(s["write_retry_delay"]))


def _load_session(name: str) -> tuple[Session, SessionCheckpoint]:
    path = _session_dir() / name
    if Path(name).name != name or not path.is_file():
        raise HTTPException(status_code=404, detail=f"Session not found: {name}")
    checkpoint = _checkpoint_for(path)
    try:
        return checkpoint.load(), checkpoint
    except (ValueError, KeyError) as e:
        raise HTTPException(status_code=400, detail=f"Session {name} is unreadable: {e}")


def _current_run() -> LapRun | None:
    run: LapRun | None = app.state.run
    return run if run and run.running else None


def _driver(activity: str):
    if activity == "churn":
        a = cfg["activity"]
        return PaymentChurnDriver(
            app.state.ledger,
            amount=Decimal(a["churn_amount"]),
            interval=float(a["churn_interval"]),
            poll=float(cfg["laps"]["pause_poll"]),
        )
    return IdleActivityDriver()


def _runner(session: Session, checkpoint: SessionCheckpoint, strategy: C.Strategy, activity: str) -> LapRunner:
    return LapRunner(
        app.state.ledger,
        session.admin,
        session.token,
        checkpoint=checkpoint,
        factory=AccountFactory.after([session.admin, *session.workers]),
        context=TradingContext(),
        driver=_driver(activity),
        strategy=strategy,
        settings=LapSettings.from_config(cfg),
        transfer_settings=TransferSettings.from_config(cfg),
        lap_store=app.state.lap_store,
        session_name=checkpoint.path.name,
    )


def _launch(session: Session, checkpoint: SessionCheckpoint, runner: LapRunner, coro) -> LapRun:
    task = asyncio.create_task(coro, name=f"laps-{checkpoint.path.name}")

    def _done(t: asyncio.Task) -> None:
        if t.cancelled():
            log.info("Lap run for %s cancelled", checkpoint.path.name)
        elif t.exception() is not None:
            log.error("Lap run for %s crashed: %r", checkpoint.path.name, t.exception())
        else:
            log.info("Lap run for %s halted: %s", checkpoint.path.name, runner.halt_reason)

    task.add_done_callback(_done)
    app.state.run = LapRun(session=session, checkpoint=checkpoint, runner=runner, task=task)
    return app.state.run


@app.get("/health")
def health():
    return {"status": "ok"}


@r_laps.post("/start")
async def start_laps(req: StartLapsReq):
    """Generate a worker set, save a new session, seed the workers and start lapping."""
    if _current_run():
        raise HTTPException(status_code=400, detail="Laps already running")

    admin = admin_from_seed(cfg["admin"]["seed"])
    token = Token(currency=req.currency, issuer=req.issuer)
    available = await app.state.ledger.get_token_balance(admin.address, token)
    if available < req.seed_token:
        raise HTTPException(status_code=400, detail=f"Admin holds {available} {token.currency}, {req.seed_token} requested")

    workers = AccountFactory().generate(req.workers)
    session = Session(admin=admin, token=token, label=req.label, workers=workers, pool=req.pool)
    checkpoint = SessionCheckpoint.for_session(
        session, _session_dir(), retries=int(cfg["session"]["write_retries"]), delay=float(cfg["session"]["write_retry_delay"])
    )
    if not await checkpoint.save(session):
        raise HTTPException(status_code=500, detail=f"Could not write session {checkpoint.path}")

    runner = _runner(session, checkpoint, req.strategy, req.activity)
    log.info("Starting laps for %s with %s workers", checkpoint.path.name, len(workers))
    _launch(session, checkpoint, runner, runner.seed_and_run(workers, req.seed_xrp, req.seed_token))
    return {
        "status": "started",
        "session": checkpoint.path.name,
        "workers": [w.address for w in workers],
    }


@r_laps.post("/resume-session")
async def resume_session(req: ResumeSessionReq):
    """Pick a saved session back up with its latest worker set."""
    if _current_run():
        raise HTTPException(status_code=400, detail="Laps already running")

    session, checkpoint = _load_session(req.name)
    if req.regenerate_workers:
        if req.seed_xrp is None:
            raise HTTPException(status_code=400, detail="regenerate_workers needs seed_xrp to fund the new set")
        fresh = AccountFactory.after([session.admin, *session.workers]).generate(req.regenerate_workers)
        if not await checkpoint.append(fresh):
            raise HTTPException(status_code=500, detail=f"Could not write session {checkpoint.path}")
        log.info("Generated %s new workers for %s", len(fresh), req.name)
        session = checkpoint.load()
    workers = session.current_workers()
    if not workers:
        raise HTTPException(status_code=400, detail=f"Session {req.name} has no workers")

    start_lap = req.start_lap
    if start_lap is None:
        laps = await app.state.lap_store.all(session=checkpoint.path.name)
        start_lap = max((lap.number for lap in laps), default=0) + 1

    runner = _runner(session, checkpoint, req.strategy, req.activity)
    log.info("Resuming %s at lap %s with %s workers", req.name, start_lap, len(workers))
    if req.seed_xrp is not None:
        coro = runner.seed_and_run(workers, req.seed_xrp, req.seed_token, start_lap=start_lap)
    else:
        coro = runner.run(workers, start_lap=start_lap)
    _launch(session, checkpoint, runner, coro)
    return {"status": "resumed", "session": req.name, "lap": start_lap, "workers": len(workers)}


@r_laps.post("/pause")
async def pause_laps():
    run = _current_run()
    if not run:
        raise HTTPException(status_code=400, detail="Laps not running")
    run.runner.context.pause()
    return {"status": "paused", "phase": run.runner.phase}


@r_laps.post("/resume")
async def resume_laps():
    run = _current_run()
    if not run:
        raise HTTPException(status_code=400, detail="Laps not running")
    run.runner.context.resume()
    return {"status": "resumed", "phase": run.runner.phase}


@r_laps.post("/stop")
async def stop_laps(wait: bool = False):
    """Stop after the current lap's collection. With wait=true, return once halted."""
    run = _current_run()
    if not run:
        raise HTTPException(status_code=400, detail="Laps not running")
    run.runner.context.stop()
    if wait:
        await run.task
        return {"status": "stopped", "lap": run.runner.lap_number, "reason": run.runner.halt_reason}
    return {"status": "stopping", "phase": run.runner.phase}


@r_laps.get("/status")
async def laps_status():
    run: LapRun | None = app.state.run
    if run is None:
        return {"running": False, "active": False, "phase": C.LapPhase.IDLE, "lap": 0, "workers": 0, "session": None}
    runner = run.runner
    return {
        "running": run.running,
        "active": runner.context.active,
        "phase": runner.phase,
        "lap": runner.lap_number,
        "workers": len(runner.workers),
        "session": run.checkpoint.path.name,
        "halt_reason": runner.halt_reason,
    }


@r_laps.get("/history")
async def laps_history(session: str | None = None):
    laps = await app.state.lap_store.all(session=session)
    return [lap.to_dict() for lap in laps]


@r_sessions.get("")
async def sessions():
    return [p.name for p in list_sessions(_session_dir())]


@r_sessions.get("/{name}")
async def session_detail(name: str):
    session, _ = _load_session(name)
    return session.public_view()


@r_sessions.post("/{name}/admin")
async def replace_session_admin(name: str, req: ReplaceAdminReq):
    """Swap the session's admin for an imported or newly generated one. Fund it before resuming."""
    run = _current_run()
    if run and run.checkpoint.path.name == name:
        raise HTTPException(status_code=400, detail=f"Laps are running on {name}")

    _, checkpoint = _load_session(name)
    try:
        admin = admin_from_seed(req.seed) if req.seed else new_admin()
    except (XRPLException, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid admin seed: {e}")
    if not await checkpoint.replace_admin(admin):
        raise HTTPException(status_code=500, detail=f"Could not write session {checkpoint.path}")
    return {"session": name, "admin": admin.address}


@r_sessions.post("/{name}/sweep")
async def sweep_session(name: str):
    """Pull everything from every worker the session ever had back to its admin."""
    run = _current_run()
    if run and run.checkpoint.path.name == name:
        raise HTTPException(status_code=400, detail=f"Laps are running on {name}")

    session, _ = _load_session(name)
    result = await sweep_workers(
        app.state.ledger, session.admin, session.workers, session.token, settings=TransferSettings.from_config(cfg)
    )
    return {
        "session": name,
        "workers": len(session.workers),
        "token_collected": result.token_collected,
        "native_collected": result.native_collected,
    }


app.include_router(r_laps)
app.include_router(r_sessions)
