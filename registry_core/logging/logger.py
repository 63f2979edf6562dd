"""
Unified Logging Configuration

The registry logs through structlog. Call ``configure_logging`` once at
process start-up; library code only asks for loggers.
"""
import structlog
import logging
import sys
from typing import Optional

from registry_core.config.settings import Settings, get_settings


def configure_logging(
    service_name: Optional[str] = None,
    log_level: Optional[str] = None,
    json_format: Optional[bool] = None,
    settings: Optional[Settings] = None
) -> None:
    """
    Configure structured logging for the registry process.

    Args:
        service_name: Name bound to every log line (defaults to SERVICE_NAME)
        log_level: Logging level (defaults to LOG_LEVEL)
        json_format: JSON output for production vs colored console for dev
        settings: Settings to read defaults from (defaults to get_settings())
    """
    settings = settings or get_settings()
    service_name = service_name or settings.SERVICE_NAME
    level_name = (log_level or settings.LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)
    if json_format is None:
        json_format = settings.json_logs

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.contextvars.bind_contextvars(service=service_name)

    # Silence noisy third-party loggers
    for logger_name in ("httpcore", "httpx", "asyncio"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger with the given name"""
    return structlog.get_logger(name)
