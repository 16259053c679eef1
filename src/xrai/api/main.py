from __future__ import annotations

import logging
from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import get_settings
from ..domain.errors import (
    EmptyInputError,
    InvalidStateError,
    ParentNotFoundError,
    PersistenceError,
    TurnInProgressError,
)
from ..observability.metrics import metrics_middleware_factory
from .routers.code import router as code_router
from .routers.conversations import router as conversations_router
from .routers.libraries import router as libraries_router
from .routers.telemetry import router as telemetry_router

load_dotenv()  # Load environment variables from .env if present (TOGETHER_API_KEY, OPENAI_API_KEY, etc.)

app = FastAPI(title="XRAi Assistant API", version="0.1.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("xrai.api")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(conversations_router)
app.include_router(libraries_router)
app.include_router(code_router)
app.include_router(telemetry_router)

# CORS for the web playground dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(EmptyInputError)
async def empty_input_handler(request: Request, exc: EmptyInputError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(ParentNotFoundError)
async def parent_not_found_handler(request: Request, exc: ParentNotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(TurnInProgressError)
async def turn_in_progress_handler(request: Request, exc: TurnInProgressError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
    logger.exception("invalid_state", extra={"path": request.url.path})
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.warning("persistence_failed", extra={"path": request.url.path, "err": str(exc)})
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


@app.get("/")
def root():
    return {"name": "XRAi Assistant API", "version": "0.1.0"}


@app.get("/health")
def health():
    settings = get_settings()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": settings.store_impl,
            "default_library": settings.default_library_id,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
