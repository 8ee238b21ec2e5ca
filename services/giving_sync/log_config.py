"""
Structured logging configuration using structlog.

Provides JSON logging with ISO timestamps and stdlib compatibility.
Sync runs bind ``sync_type`` and ``run_id`` into the context so every
line emitted during a run can be correlated.
"""

import logging
import sys
from typing import Any, Dict, Optional, TextIO

import structlog
from structlog.typing import FilteringBoundLogger

from .settings import GivingSyncSettings, get_settings


def configure_logging(
    config: Optional[GivingSyncSettings] = None,
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structlog with JSON output and stdlib compatibility.

    Args:
        config: Settings instance (defaults to the cached settings)
        log_level: Override log level from settings
        log_format: Override log format from settings
        stream: Output stream (defaults to stdout; the CLI logs to stderr so
            stdout carries only its JSON output)
    """
    config = config or get_settings()
    level = (log_level or config.log_level).upper()
    format_type = log_format or config.log_format
    stream = stream or sys.stdout

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, level),
    )

    def add_service_metadata(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", config.service_name)
        event_dict.setdefault("environment", config.environment)
        return event_dict

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        add_service_metadata,
    ]

    if format_type == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Development-friendly format
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def log_api_call(
    logger: FilteringBoundLogger,
    method: str,
    url: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **extra_context
) -> None:
    """
    Log an API call with structured information.

    Args:
        logger: Logger instance
        method: HTTP method
        url: Request URL
        status_code: Response status code
        duration_ms: Request duration in milliseconds
        **extra_context: Additional context to include
    """
    context = {
        "method": method,
        "url": url,
        **extra_context
    }

    if status_code is not None:
        context["status_code"] = status_code

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    # Choose log level based on status code
    if status_code and status_code >= 500:
        logger.error("API call failed", **context)
    elif status_code and status_code >= 400:
        logger.warning("API call client error", **context)
    else:
        logger.debug("API call completed", **context)
