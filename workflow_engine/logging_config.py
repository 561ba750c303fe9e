"""
Logging Configuration

structlog setup for the engine. Every event emitted while a run is being
walked carries ``execution_id`` and ``workflow_id`` through contextvars, so
interleaved runs on one event loop stay distinguishable in the output.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor

# Prompts, AI completions and node outputs can be very large
MAX_FIELD_LENGTH = 2000

_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "asyncio")


def _app_context_processor(app_context: Dict[str, str]) -> Processor:
    def add_app_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in app_context.items():
            event_dict.setdefault(key, value)
        return event_dict
    return add_app_context


def truncate_long_values(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Shorten string fields longer than MAX_FIELD_LENGTH."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            event_dict[key] = f"{value[:MAX_FIELD_LENGTH]}... ({len(value)} chars)"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    app_name: str = "workflow-engine",
    environment: Optional[str] = None,
) -> None:
    """
    Configure structured logging

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: ``json`` for production, ``text`` for a console renderer
        app_name: Value of the ``app`` field on every event
        environment: Added as ``environment`` when given
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    app_context = {"app": app_name}
    if environment:
        app_context["environment"] = environment

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _app_context_processor(app_context),
        truncate_long_values,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_execution_context(execution_id: str, workflow_id: str) -> None:
    """Attach run identifiers to every event emitted by the current task."""
    structlog.contextvars.bind_contextvars(execution_id=execution_id, workflow_id=workflow_id)


def clear_execution_context() -> None:
    structlog.contextvars.unbind_contextvars("execution_id", "workflow_id")


def get_logger(name: str = __name__) -> Any:
    return structlog.get_logger(name)
