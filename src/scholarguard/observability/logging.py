"""
Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)``. This routes
those events, and plain stdlib records from aiohttp, aiosqlite and APScheduler,
through one handler: JSON lines when ``monitoring.log_file`` is set, the
console renderer otherwise. Values bound with ``bound_contextvars`` (the
orchestrator binds ``run_id``) are merged into every event.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, List

import structlog

if TYPE_CHECKING:
    from scholarguard.config.config import MonitoringConfig

# Libraries that log every request or job at INFO
_CHATTY_LOGGERS = ("aiohttp.access", "aiosqlite", "apscheduler.executors.default", "apscheduler.scheduler")


def configure_logging(config: MonitoringConfig) -> None:
    level = config.log_level.upper()
    pre_chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    handler: logging.Handler
    renderer: Any
    if config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        renderer = structlog.processors.JSONRenderer()
    else:
        handler = logging.StreamHandler(sys.stderr)
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level == "DEBUG" else logging.WARNING)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger("scholarguard.logging").info(
        "Logging configured", level=level, output=config.log_file or "console"
    )
