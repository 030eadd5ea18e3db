"""Structured logging: structlog rendered through stdlib logging on stderr.

The host process and the build worker share one stderr (the worker's stdout
carries JSON lines), so every record is tagged with the ``process`` that
emitted it.
"""

from __future__ import annotations

import logging
import logging.config
import os

import structlog

# compiler downloads go through httpx
_QUIET_LOGGERS = ("httpx", "httpcore")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "plain":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging(level: str | None = None, *, process: str = "host") -> None:
    """Configure structlog and stdlib logging.

    Reads from environment variables:
        XR_BUILDKIT_LOG_LEVEL  - log level (default: INFO), overridden by *level*
        XR_BUILDKIT_LOG_FORMAT - console | plain | json (default: console)
    """
    log_level = (level or os.environ.get("XR_BUILDKIT_LOG_LEVEL", "INFO")).upper()
    log_format = os.environ.get("XR_BUILDKIT_LOG_FORMAT", "console").lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(process=process)

    loggers: dict[str, dict[str, str]] = {"xr_buildkit": {"level": log_level}}
    for name in _QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": shared_processors,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        _renderer(log_format),
                    ],
                },
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "structlog",
                },
            },
            "root": {"handlers": ["stderr"], "level": log_level},
            "loggers": loggers,
        }
    )
