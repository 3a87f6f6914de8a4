"""Tests for the health endpoint."""

from unittest.mock import AsyncMock

from race_backtest.api.auth import verify_api_key
from race_backtest.api.dependencies import get_dispatcher
from race_backtest.jobs.queue import BacktestQueue
from race_backtest.jobs.runner import BacktestRunner
from race_backtest.jobs.worker import LocalDispatcher, QueueDispatcher


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["job_store"]["status"] == "healthy"
        assert data["components"]["job_store"]["details"] == {"backend": "InMemoryJobStore"}
        assert data["running_jobs"] == 0

    def test_store_down(self, client, job_store):
        job_store.health_check = AsyncMock(return_value=False)
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["components"]["job_store"]["status"] == "unhealthy"

    def test_store_error(self, client, job_store):
        job_store.health_check = AsyncMock(side_effect=RuntimeError("connection refused"))
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["components"]["job_store"]["details"] == {"error": "connection refused"}

    def test_local_dispatcher_job_count(self, app, client, job_manager, race_source):
        dispatcher = LocalDispatcher(BacktestRunner(job_manager, race_source), max_concurrent=1)

        async def _dispatcher():
            return dispatcher

        app.dependency_overrides[get_dispatcher] = _dispatcher
        assert client.get("/health").json()["running_jobs"] == 0

    def test_no_auth_required(self, app, client):
        app.dependency_overrides.pop(verify_api_key)
        assert client.get("/health").status_code == 200

    def test_root(self, client):
        assert client.get("/").json()["service"] == "Race Backtest API"

    def test_queue_mode_reports_stream(self, app, client):
        queue = BacktestQueue(redis_url="redis://localhost:6379/1", stream_name="bt_test")
        queue._redis = AsyncMock()
        queue._redis.ping = AsyncMock(side_effect=ConnectionError("refused"))
        dispatcher = QueueDispatcher(queue)

        async def _dispatcher():
            return dispatcher

        app.dependency_overrides[get_dispatcher] = _dispatcher
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["components"]["job_stream"]["status"] == "unhealthy"
        assert data["components"]["job_store"]["status"] == "healthy"
