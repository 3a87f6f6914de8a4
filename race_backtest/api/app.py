"""
FastAPI application factory for the backtest API.

Submitting a backtest returns immediately; the simulation runs on the
configured dispatcher (in-process tasks or the Redis job stream) and
clients poll for status and results.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from race_backtest.api.dependencies import cleanup_dependencies
from race_backtest.api.middleware.timeout import TimeoutMiddleware
from race_backtest.api.routes import backtest, health
from race_backtest.config.settings import Settings, get_settings
from race_backtest.observability.logging import bind_context, clear_context

logger = structlog.get_logger(__name__)

API_VERSION = "0.1.0"

API_DESCRIPTION = """
Simulate rule-based betting strategies against historical race data.

1. `POST /v1/backtest` with a strategy and a date range: 202 with a job id
2. `GET /v1/backtest/{job_id}` to follow progress
3. `GET /v1/backtest/{job_id}/result` once the job is completed
4. `DELETE /v1/backtest/{job_id}` to cancel a pending or running job

Every endpoint except `/health` requires an `X-API-KEY` header. Results are
simulations over past data and carry a disclaimer.
"""

REQUEST_ID_HEADERS = ("X-Request-ID", "X-Correlation-ID")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "Backtest API starting",
        job_store=settings.job_store_backend,
        dispatch=settings.job_dispatch_mode,
        data_source=settings.data_source_backend,
    )
    yield
    logger.info("Backtest API stopping")
    await cleanup_dependencies()


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Registered before the request-context middleware, so it runs inside it
    if settings.request_timeout_seconds > 0:
        app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = next(
            (request.headers[h] for h in REQUEST_ID_HEADERS if request.headers.get(h)),
            None,
        ) or uuid.uuid4().hex
        bind_context(request_id=request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response
        finally:
            clear_context()


def _add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
                "error_type": "internal",
            },
        )


def create_app() -> FastAPI:
    """Build the backtest API with middleware, handlers and routers attached."""
    settings = get_settings()

    app = FastAPI(
        title="Race Backtest API",
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Service health"},
            {"name": "backtest", "description": "Asynchronous strategy backtests"},
        ],
    )
    _add_middleware(app, settings)
    _add_exception_handlers(app)

    app.include_router(health.router, tags=["health"])
    app.include_router(backtest.router, tags=["backtest"])

    @app.get("/", include_in_schema=False)
    async def root():
        return {"service": "Race Backtest API", "version": API_VERSION, "docs": "/docs"}

    return app
