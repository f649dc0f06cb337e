from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from binsync import __version__
from binsync.api.routes import router as api_router
from binsync.api.websocket import router as websocket_router
from binsync.config import load_config
from binsync.engine import SyncEngine
from binsync.errors import BinNotFoundError, UnknownPipelineError
from binsync.models.store import FallbackStateStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config()
    engine = SyncEngine.from_config(config)
    await engine.start()

    app.state.config = config
    app.state.engine = engine

    yield

    await engine.stop()


app = FastAPI(
    title="Bin Sync Engine API",
    version=__version__,
    description="Bin state, collection verification and derived insights",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
app.include_router(websocket_router)


@app.exception_handler(BinNotFoundError)
async def bin_not_found(_: Request, exc: BinNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(UnknownPipelineError)
async def unknown_pipeline(_: Request, exc: UnknownPipelineError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def invalid_value(_: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/health")
async def health(request: Request) -> dict[str, str]:
    engine: SyncEngine = request.app.state.engine
    degraded = isinstance(engine.store, FallbackStateStore) and engine.store.degraded
    return {"status": "ok", "storage": "memory-fallback" if degraded else "ok"}
