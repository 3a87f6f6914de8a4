"""
Structured logging for the API, workers and CLI.

Every event carries ``service`` plus whatever is bound in the current
context: ``request_id`` inside the API, ``job_id`` while the runner
executes a backtest.
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from race_backtest.config.settings import get_settings

SERVICE_NAME = "race-backtest"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("asyncio", "asyncpg", "redis", "httpx", "uvicorn.access")


def _add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(log_level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Override for LOG_LEVEL.
        json_logs: Force JSON (True) or console (False) output. Defaults to
            JSON in production only.
    """
    settings = get_settings()
    level = log_level or settings.log_level
    as_json = settings.is_production if json_logs is None else json_logs

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_service,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs) -> None:
    """Attach fields (request_id, client_id, ...) to subsequent log events."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
