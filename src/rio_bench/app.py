import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, PositiveInt, NonNegativeFloat, NonNegativeInt

import rio_bench.constants as C
from rio_bench.chain import SubstrateChain, probe_node
from rio_bench.config import cfg, deep_update
from rio_bench.driver import Benchmark
from rio_bench.errors import NodeUnavailable
from rio_bench.logging_config import setup_logging

setup_logging()
log = logging.getLogger("rio_bench.app")

OVERALL_STARTUP_TIMEOUT = 120


@asynccontextmanager
async def lifespan(app: FastAPI):
    node = app.state.config["node"]
    if node["probe"]:
        async with asyncio.timeout(OVERALL_STARTUP_TIMEOUT):
            log.info("Probing RPC endpoint...")
            await probe_node(node["rpc_url"], node["probe_retries"], node["probe_delay"])
    log.info("Node is ready. Waiting for benchmark requests")

    try:
        yield
    finally:
        log.info("Shutting down...")
        task = app.state.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    log.info("Shutdown complete")


app = FastAPI(
    title="Rio Bench",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Bench", "description": "Start, stop and follow benchmark runs"},
        {"name": "State", "description": "Results of finished runs"},
    ],
)
app.state.config = cfg
app.state.connect = SubstrateChain.connect
app.state.task = None
app.state.bench = None
app.state.started_at = None
app.state.last_report = None

r_bench = APIRouter(prefix="/bench", tags=["Bench"])
r_state = APIRouter(prefix="/state", tags=["State"])


class RunReq(BaseModel):
    scenario: C.Scenario | None = None
    total: PositiveInt | None = None
    per_loop: PositiveInt | None = None
    watch_timeout: NonNegativeFloat | None = None
    max_in_flight: NonNegativeInt | None = None


def _running() -> bool:
    return app.state.task is not None and not app.state.task.done()


def _config_for(req: RunReq) -> dict:
    o: dict = {"accounts": {}, "bench": {}}
    if req.scenario is not None:
        o["scenario"] = str(req.scenario)
    if req.total is not None:
        o["accounts"]["total"] = req.total
    if req.per_loop is not None:
        o["accounts"]["per_loop"] = req.per_loop
    if req.watch_timeout is not None:
        o["bench"]["watch_timeout"] = req.watch_timeout
    if req.max_in_flight is not None:
        o["bench"]["max_in_flight"] = req.max_in_flight
    return deep_update(copy.deepcopy(app.state.config), o)


async def _run(bench: Benchmark) -> None:
    try:
        await bench.run()
    finally:
        app.state.last_report = bench.report
        await bench.chain.close()


@app.get("/health")
def health():
    return {"status": "ok"}


@r_bench.post("/start")
async def start_bench(req: RunReq | None = None):
    """Connect to the node and start a benchmark run in the background."""
    if _running():
        raise HTTPException(status_code=400, detail="Benchmark already running")

    conf = _config_for(req or RunReq())
    try:
        chain = await app.state.connect(conf)
    except NodeUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    try:
        bench = Benchmark(conf, chain)
    except ValueError as e:
        await chain.close()
        raise HTTPException(status_code=400, detail=str(e))
    app.state.bench = bench
    app.state.started_at = perf_counter()
    app.state.task = asyncio.create_task(_run(bench), name="benchmark")
    log.info("Started %s benchmark (%s accounts)", bench.scenario, bench.total)
    return {"status": "started", "scenario": str(bench.scenario), "total": bench.total, "per_loop": bench.per_loop}


@r_bench.post("/stop")
async def stop_bench():
    """Cancel the running benchmark and return its partial report."""
    if not _running():
        raise HTTPException(status_code=400, detail="Benchmark not running")

    log.info("Stopping benchmark")
    task = app.state.task
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    return {"status": "stopped", "report": app.state.bench.report.to_dict()}


@r_bench.get("/status")
async def bench_status():
    """Current run progress: the phase report being filled right now."""
    bench: Benchmark | None = app.state.bench
    if bench is None:
        return {"running": False, "report": None}

    current = bench.report.phases[-1].to_dict() if bench.report.phases else None
    return {
        "running": _running(),
        "scenario": str(bench.scenario),
        "current": current,
        "completed_phases": len(bench.report.phases),
        "uptime_seconds": perf_counter() - app.state.started_at if app.state.started_at else 0,
    }


@r_state.get("/report")
async def state_report():
    report = app.state.last_report
    if report is None:
        raise HTTPException(status_code=404, detail="No finished run yet")
    return report.to_dict()


app.include_router(r_bench)
app.include_router(r_state)
