from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import structlog

DEFAULT_LOG_LEVEL = "INFO"


def configure_logging(service_name: str = "toolloop", level: str | int | None = None) -> None:
    """Route structlog events through stdlib logging as one JSON object per line."""
    resolved = level if level is not None else os.getenv("TOOL_LOOP_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logging.basicConfig(level=resolved, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    get_logger(service_name).info("logging_configured", level=logging.getLevelName(resolved))


def get_logger(component: str) -> structlog.BoundLogger:
    return structlog.get_logger(service=component)


def log_event(logger: structlog.BoundLogger, event_type: str, payload: Mapping[str, Any]) -> None:
    logger.info(event_type, **dict(payload))
