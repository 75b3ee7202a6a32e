"""Logging configuration utilities."""

import logging
import sys

import structlog
from structlog.contextvars import bound_contextvars


# Captured request bodies and service configs can carry these
SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "connection_string",
    "connectionstring",
}


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact sensitive fields in the structured log."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def resolve_level(log_level: str) -> int:
    """Map a level name such as ``info`` to its numeric value."""
    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")
    return level


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the agent and the stdlib loggers it uses."""
    level = resolve_level(log_level)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    # uvicorn's own access log is replaced by the request middleware
    logging.getLogger("uvicorn.access").disabled = True

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def deployment_context(service_name: str, directory: str):
    """Bind serviceName and localDirectory to every log line inside the block."""
    return bound_contextvars(serviceName=service_name, localDirectory=directory)
