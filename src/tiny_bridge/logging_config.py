"""Structured logging configuration.

JSON output for production, colored console for development/testing.
Call configure_logging() once at process startup (CLI entry point, worker).
"""

import logging
import sys

import structlog

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "api_access_token",
        "authorization",
        "live_token",
        "password",
        "secret",
        "token",
    }
)


def _redact_sensitive_keys(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Redact values of sensitive keys in log events."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


JSON_ENVIRONMENTS: frozenset[str] = frozenset({"production", "staging"})


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
    *,
    colors: bool = True,
) -> None:
    """Configure structlog processor chain and stdlib root logger.

    Args:
        environment: 'production' or 'staging' for JSON output (one
            event per line, ready for log shipping), anything else for
            console output.
        log_level: Python log level name (DEBUG, INFO, WARNING, etc.).
        colors: Colorize console output. Ignored for JSON output.
            The CLI disables colors when stdout is not a TTY.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_sensitive_keys,
    ]

    renderer: structlog.types.Processor
    if environment in JSON_ENVIRONMENTS:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
