"""
Request timeout middleware.

Backtests execute outside the request cycle, so every endpoint is
expected to answer quickly. A request that runs past the limit gets
504 with a ``REQUEST_TIMEOUT`` error body.
"""

import asyncio

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Cut off requests that exceed ``timeout_seconds``."""

    def __init__(self, app, timeout_seconds: float = 30.0):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                method=request.method,
                path=request.url.path,
                limit_s=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={
                    "detail": {
                        "code": "REQUEST_TIMEOUT",
                        "message": f"Request exceeded {self.timeout_seconds:g}s",
                    }
                },
            )
