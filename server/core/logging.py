"""Structured logging configuration.

structlog renders on top of the stdlib ``logging`` module so that uvicorn,
SQLAlchemy and our own loggers share handlers and levels.
"""

import sys
import structlog
import logging
from pathlib import Path
from typing import Any, List, Optional
from core.config import Settings

# Event keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset([
    "access_token",
    "refresh_token",
    "authorization",
    "password",
    "token",
])


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking credentials passed as log fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=_handlers(settings, level), format="%(message)s")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_request_context(**values: Any) -> None:
    """Attach fields (user id, path) to every log line of the current request."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs: Any) -> None:
    """Log cache operations at debug level."""
    log_data = {"operation": operation, "cache_key": key, **kwargs}
    if hit is not None:
        log_data["cache_hit"] = hit
    logger.debug("Cache operation", **log_data)


def log_auth_event(logger: structlog.BoundLogger, event: str,
                   user_id: Optional[str] = None, **kwargs: Any) -> None:
    """Log authentication lifecycle events. Token fields are redacted."""
    logger.info("Auth event", auth_event=event, user_id=user_id, **kwargs)
