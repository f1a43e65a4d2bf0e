import threading
from typing import List, Optional

from fastapi import FastAPI, BackgroundTasks, Query, HTTPException
from pydantic import BaseModel

from aggregation import NoDataError, aggregate
from bar_store import BarStore
from ohlcv import MINUTE_MS, LoaderError
from minute_loader import (
    setup_logging,
    shutdown_logging,
    build_health,
    start_background_sync,
    BinanceKlineClient,
    SyncEngine,
    STORE_FILE,
    SYNC_INTERVAL_SEC,
    AGG_WINDOW_MINUTES,
    AGG_BAR_COUNT,
)

app = FastAPI(title="Minute Bar Loader API")


class StatusResponse(BaseModel):
    fetching: bool
    error_message: str
    status_text: str
    total_minutes: int
    minutes_completed: int


class BarModel(BaseModel):
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class _Runtime:
    store: Optional[BarStore] = None
    engine: Optional[SyncEngine] = None
    worker: Optional[threading.Thread] = None


_runtime = _Runtime()


def configure(store: BarStore, engine: SyncEngine) -> None:
    """Attach the store and engine served by the endpoints."""
    _runtime.store = store
    _runtime.engine = engine


def _require_runtime():
    if _runtime.store is None or _runtime.engine is None:
        raise HTTPException(status_code=503, detail="Loader not initialised")
    return _runtime.store, _runtime.engine


@app.on_event("startup")
async def on_startup():
    logger = setup_logging(verbose=True)
    store = BarStore(STORE_FILE, logger)
    engine = SyncEngine(store, BinanceKlineClient(logger=logger), logger=logger)
    configure(store, engine)
    _runtime.worker = start_background_sync(engine, SYNC_INTERVAL_SEC, logger)


@app.on_event("shutdown")
async def on_shutdown():
    if _runtime.engine is not None:
        _runtime.engine.cancel()
    if _runtime.worker is not None:
        _runtime.worker.join(timeout=10)
    if _runtime.store is not None:
        _runtime.store.close()
    shutdown_logging()


@app.post("/sync")
async def sync_endpoint(background_tasks: BackgroundTasks):
    _, engine = _require_runtime()

    def task():
        try:
            engine.synchronize()
        except LoaderError as e:
            # The engine already recorded it in the status error message
            engine.logger.warning(f"Scheduled sync pass failed: {e}")

    background_tasks.add_task(task)
    return {"status": "scheduled"}


@app.get("/status", response_model=StatusResponse)
def status_endpoint():
    _, engine = _require_runtime()
    snap = engine.status.snapshot()
    return StatusResponse(
        fetching=snap["fetching"],
        error_message=snap["error_message"],
        status_text=snap["status_text"],
        total_minutes=snap["total_minutes"],
        minutes_completed=snap["minutes_completed"],
    )


@app.get("/bars", response_model=List[BarModel])
def bars_endpoint(
    window_minutes: int = Query(AGG_WINDOW_MINUTES, ge=1, le=1440),
    count: int = Query(AGG_BAR_COUNT, ge=1, le=5000),
):
    store, engine = _require_runtime()
    try:
        bars = aggregate(store, count, window_minutes * MINUTE_MS, logger=engine.logger)
    except NoDataError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [BarModel(**b.to_dict()) for b in bars]


@app.get("/health")
def health():
    store, _ = _require_runtime()
    return {"status": "ok", **build_health(store)}
