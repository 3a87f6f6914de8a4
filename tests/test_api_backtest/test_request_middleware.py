"""Tests for the request timeout and request-id middleware."""

import asyncio

from fastapi import FastAPI
from fastapi.testclient import TestClient

from race_backtest.api.middleware.timeout import TimeoutMiddleware


def _timeout_app(timeout_seconds: float) -> FastAPI:
    app = FastAPI()
    app.add_middleware(TimeoutMiddleware, timeout_seconds=timeout_seconds)

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(1)
        return {"ok": True}

    @app.get("/fast")
    async def fast():
        return {"ok": True}

    @app.get("/health")
    async def health():
        await asyncio.sleep(0.2)
        return {"status": "healthy"}

    return app


class TestTimeoutMiddleware:
    def test_slow_request_cut_off(self):
        client = TestClient(_timeout_app(0.05))
        response = client.get("/slow")
        assert response.status_code == 504
        assert response.json()["detail"]["code"] == "REQUEST_TIMEOUT"

    def test_fast_request_passes(self):
        client = TestClient(_timeout_app(0.5))
        assert client.get("/fast").json() == {"ok": True}

    def test_health_exempt(self):
        client = TestClient(_timeout_app(0.05))
        assert client.get("/health").status_code == 200


class TestRequestId:
    def test_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 32

    def test_propagated(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "corr-123"})
        assert response.headers["X-Request-ID"] == "corr-123"
