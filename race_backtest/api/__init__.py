"""
FastAPI backtest service.

Provides REST API for asynchronous backtests:
- POST /v1/backtest - Submit a strategy and date range
- GET /v1/backtest/{job_id} - Job status and progress
- GET /v1/backtest/{job_id}/result - Summary, ledger, equity curve
- DELETE /v1/backtest/{job_id} - Cancel
- GET /health - Service health check
"""

from race_backtest.api.app import create_app
