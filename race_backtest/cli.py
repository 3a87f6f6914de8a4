"""
Command-line interface for race-backtest.

Provides commands to run the API and stream workers, initialize the
historical tables, and run or validate strategies locally.

Usage:
    race-backtest serve               # Run the HTTP API
    race-backtest worker              # Run a Redis Streams backtest worker
    race-backtest init-db             # Create historical race tables
    race-backtest health              # Check Redis / PostgreSQL
    race-backtest backtest validate   # Compile a strategy file
    race-backtest backtest run        # Run a backtest in the foreground
"""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import click

from race_backtest.config.settings import get_settings
from race_backtest.observability.logging import setup_logging
from race_backtest.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
def main(debug: bool, json_logs: bool) -> None:
    """Race Backtest - simulate betting strategies on historical races."""
    setup_logging("DEBUG" if debug else None, json_logs=True if json_logs else None)


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def serve(host: str | None, port: int | None, reload: bool, metrics_port: int | None) -> None:
    """Start the backtest API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    metrics_port = metrics_port or settings.metrics_port

    get_metrics().start_server(port=metrics_port)

    click.echo(f"Starting API server on {host}:{port}")
    click.echo(f"Metrics available on http://localhost:{metrics_port}/metrics")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "race_backtest.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command()
@click.option("--fixture", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Use a JSON race fixture instead of PostgreSQL")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def worker(fixture: str | None, metrics: bool, metrics_port: int | None) -> None:
    """Run a backtest worker consuming the Redis job stream."""
    from race_backtest.backtest.config import BacktestConfig
    from race_backtest.backtest.data_source import InMemoryDataSource
    from race_backtest.backtest.pg_source import PostgresDataSource
    from race_backtest.jobs.manager import JobManager
    from race_backtest.jobs.runner import BacktestRunner
    from race_backtest.jobs.store import RedisJobStore
    from race_backtest.jobs.worker import BacktestWorker
    from race_backtest.storage.database import Database

    async def run():
        config = BacktestConfig()
        store = RedisJobStore(job_ttl_seconds=config.job_ttl_seconds)
        await store.connect()

        database = None
        if fixture:
            data_source = InMemoryDataSource.from_fixture(fixture)
        else:
            database = Database()
            await database.connect()
            data_source = PostgresDataSource(database)

        runner = BacktestRunner(JobManager(store, config), data_source, config)
        service = BacktestWorker(runner)

        if metrics:
            get_metrics().start_server(port=metrics_port)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

        try:
            await service.start()
        finally:
            await store.close()
            if database is not None:
                await database.close()

    asyncio.run(run())


@main.command("init-db")
def init_db() -> None:
    """Create the historical race tables."""
    from race_backtest.backtest.pg_source import create_tables
    from race_backtest.storage.database import Database

    async def run():
        async with Database(read_only=False) as db:
            await create_tables(db)
        click.echo("Database initialized successfully")

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of Redis and PostgreSQL."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}

        try:
            from race_backtest.jobs.store import RedisJobStore
            async with RedisJobStore() as store:
                results["redis"] = await store.health_check()
        except Exception as e:
            results["redis"] = False
            logger.error("Redis health check failed", error=str(e))

        try:
            from race_backtest.storage.database import Database
            async with Database() as db:
                results["postgres"] = await db.health_check()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
        click.echo("-" * 40)

        if all(results.values()):
            click.echo(click.style("All services healthy!", fg="green"))
            sys.exit(0)
        click.echo(click.style("Some services unhealthy!", fg="red"))
        sys.exit(1)

    asyncio.run(check())


@main.group()
def backtest() -> None:
    """Strategy backtest commands."""


def _load_strategy(path: str):
    from race_backtest.strategy.errors import InvalidStrategyError
    from race_backtest.strategy.validator import load_strategy_file

    try:
        return load_strategy_file(path)
    except InvalidStrategyError as e:
        _print_issues(e)
        sys.exit(1)


def _print_issues(error) -> None:
    click.echo(click.style("Strategy is invalid:", fg="red"))
    for issue in error.issues:
        where = f" (at {issue.position})" if issue.position is not None else ""
        click.echo(f"  - {issue.path}: [{issue.code}] {issue.message}{where}")


def _fmt_float(value: float | None, suffix: str = "") -> str:
    return "N/A" if value is None else f"{value:,.2f}{suffix}"


@backtest.command("validate")
@click.argument("strategy_file", type=click.Path(exists=True, dir_okay=False))
def backtest_validate(strategy_file: str) -> None:
    """Parse and validate a strategy file (JSON or YAML).

    Example:
        race-backtest backtest validate strategies/favourite_drift.yaml
    """
    from race_backtest.strategy.errors import InvalidStrategyError
    from race_backtest.strategy.validator import compile_strategy

    strategy = _load_strategy(strategy_file)
    try:
        compiled = compile_strategy(strategy)
    except InvalidStrategyError as e:
        _print_issues(e)
        sys.exit(1)

    click.echo(click.style(f"Strategy '{strategy.id}' is valid", fg="green"))
    click.echo(f"  Rules:     {len(compiled.rules)}")
    for rule in compiled.rules:
        click.echo(f"    {rule.index + 1}. {rule.source}")
    click.echo(f"  Bet type:  {strategy.bet_type.value}")
    click.echo(f"  Stake:     {strategy.stake.kind}")
    click.echo(f"  Variables: {', '.join(sorted(compiled.variables))}")
    for warning in compiled.warnings:
        click.echo(click.style(f"  warning: {warning}", fg="yellow"))


@backtest.command("run")
@click.argument("strategy_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--start", "start_date", required=True, type=click.DateTime(formats=["%Y-%m-%d"]),
              help="Start date (inclusive)")
@click.option("--end", "end_date", required=True, type=click.DateTime(formats=["%Y-%m-%d"]),
              help="End date (inclusive)")
@click.option("--fixture", type=click.Path(exists=True, dir_okay=False), default=None,
              help="JSON race fixture (default: PostgreSQL)")
@click.option("--seed", type=int, default=None, help="Slippage seed (drawn when omitted)")
@click.option("--capital", type=float, default=None, help="Initial capital")
@click.option("--no-slippage", is_flag=True, help="Settle at decision-time odds")
@click.option("--output", type=click.Path(dir_okay=False), default=None,
              help="Write the full result as JSON")
def backtest_run(
    strategy_file: str,
    start_date: Any,
    end_date: Any,
    fixture: str | None,
    seed: int | None,
    capital: float | None,
    no_slippage: bool,
    output: str | None,
) -> None:
    """Run a backtest in the foreground and print the summary.

    Example:
        race-backtest backtest run strategy.json --start 2024-01-01 --end 2024-03-31 --fixture races.json
    """
    from race_backtest.backtest.config import BacktestConfig
    from race_backtest.backtest.data_source import InMemoryDataSource
    from race_backtest.backtest.executor import BacktestExecutor
    from race_backtest.backtest.pg_source import PostgresDataSource
    from race_backtest.backtest.schemas import DateRange
    from race_backtest.backtest.slippage import draw_seed
    from race_backtest.strategy.errors import EvaluationError, InvalidStrategyError
    from race_backtest.strategy.validator import compile_strategy
    from race_backtest.storage.database import Database

    start = start_date.date()
    end = end_date.date()
    if start > end:
        click.echo(click.style("Error: start date must be before end date", fg="red"))
        sys.exit(1)

    strategy = _load_strategy(strategy_file)
    try:
        compiled = compile_strategy(strategy)
    except InvalidStrategyError as e:
        _print_issues(e)
        sys.exit(1)

    config = BacktestConfig()
    if no_slippage:
        config = config.model_copy(update={"slippage_enabled": False})
    run_seed = seed if seed is not None else draw_seed()

    async def run():
        database = None
        if fixture:
            data_source = InMemoryDataSource.from_fixture(fixture)
        else:
            database = Database()
            await database.connect()
            data_source = PostgresDataSource(database)

        try:
            return await BacktestExecutor(config).execute(
                compiled,
                DateRange(start=start, end=end),
                data_source,
                seed=run_seed,
                initial_capital=capital,
            )
        finally:
            if database is not None:
                await database.close()

    click.echo(f"Running backtest '{strategy.id}': {start} to {end} (seed={run_seed})")
    for warning in compiled.warnings:
        click.echo(click.style(f"  warning: {warning}", fg="yellow"))

    try:
        result = asyncio.run(run())
    except EvaluationError as e:
        click.echo(click.style(f"Error: formula evaluation failed: {e}", fg="red"))
        sys.exit(1)

    s = result.summary
    click.echo("")
    click.echo(f"Backtest Results ({result.strategy_id})")
    click.echo("=" * 50)
    click.echo(f"  Races:          {s.total_races} ({s.matched_races} matched, "
               f"{result.execution.skipped_races} skipped)")
    click.echo(f"  Bets:           {s.total_bets} (W {s.wins} / L {s.losses} / R {s.refunds})")
    click.echo(f"  Win rate:       {_fmt_float(s.win_rate, '%')}")
    click.echo(f"  Staked:         {_fmt_float(s.total_staked)}")
    click.echo(f"  Profit:         {_fmt_float(s.total_profit)}")
    click.echo(f"  ROI:            {_fmt_float(s.roi, '%')}")
    click.echo(f"  Final capital:  {_fmt_float(s.final_capital)}")
    click.echo(f"  Max drawdown:   {_fmt_float(s.max_drawdown, '%')}")
    click.echo(f"  Sharpe ratio:   {_fmt_float(s.sharpe_ratio)}")
    click.echo(f"  Profit factor:  {_fmt_float(s.profit_factor)}")
    click.echo(f"  Streaks:        +{s.max_win_streak} / -{s.max_lose_streak}")

    if result.monthly:
        click.echo(f"\n  {'Month':<8} {'Bets':>6} {'Wins':>6} {'Profit':>14} {'ROI':>9}")
        click.echo(f"  {'-'*8} {'-'*6} {'-'*6} {'-'*14} {'-'*9}")
        for m in result.monthly:
            click.echo(
                f"  {m.month:<8} {m.bets:>6} {m.wins:>6} {m.profit:>14,.0f} {m.roi:>8.2f}%"
            )

    if output:
        Path(output).write_text(
            json.dumps(result.to_dict(), indent=2, default=str),
            encoding="utf-8",
        )
        click.echo(f"\nFull result written to {output}")


if __name__ == "__main__":
    main()
