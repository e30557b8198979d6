############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# logging_config.py: Structured logging configuration using structlog
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from backend.app.settings import Settings, get_settings

# Event keys whose values must never reach a log sink
REDACTED_KEYS = frozenset({
    "token",
    "api_key",
    "telegram_token",
    "bot_token",
    "secrets",
    "encrypted_env",
    "personality",
    "config",
    "value",
})


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace values of secret-bearing keys before rendering."""
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = "***"
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structured logging for the application."""
    settings = settings or get_settings()

    # Determine log level
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Common processors for all log output
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    handlers: list[logging.Handler] = [console_handler]
    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(log_level)

    # Quiet noisy loggers (httpx logs full URLs at INFO)
    for logger_name in ["uvicorn.access", "httpx", "httpcore", "stripe"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_request_context(**kwargs: Any) -> None:
    """Bind request context variables for logging."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    """Clear request context variables."""
    structlog.contextvars.clear_contextvars()
