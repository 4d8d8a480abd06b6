"""
Pitboss — Structured Logging

All logging via structlog, rendered through the stdlib root logger so
library output and Pitboss output share one stream and one format.
Every entry carries the instance id of the monitor that wrote it.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pitboss.config import LoggingConfig


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(config: LoggingConfig, instance_id: str = "") -> None:
    """
    Route structlog through one stdout handler on the root logger.

    Replaces any handlers already installed, so calling it again (for a
    reload) does not duplicate output.
    """
    structlog.contextvars.clear_contextvars()
    if instance_id:
        structlog.contextvars.bind_contextvars(instance_id=instance_id)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(config.format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(_level(config.level))

    for name, level in config.levels.items():
        logging.getLogger(name).setLevel(_level(level))
