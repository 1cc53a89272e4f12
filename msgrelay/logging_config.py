"""
Structured logging configuration using structlog.

All logs are output as JSON. Values under credential-like keys are replaced
before rendering, and identifiers should go through `mask_id`.
"""
import logging
import sys

import structlog

from msgrelay.config import settings

SENSITIVE_KEYS = ("credential", "secret", "token", "password", "authorization")


def redact_secrets(logger, method_name, event_dict):
    """structlog processor replacing values of credential-like keys."""
    for key in event_dict:
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def configure_logging(level: str | int | None = None):
    """Configure structlog for JSON output and return the root logger."""
    level = level if level is not None else settings.LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False)
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with context bound.

    Usage:
        log = get_logger(component="dispatch", job_id=job_id)
        log.info("target_sent", platform="telegram")
    """
    return logger.bind(**context)


def mask_id(value: str | None) -> str:
    """
    Mask an identifier for log output, keeping the first and last two characters.

    Identifiers of four characters or fewer are fully masked.
    """
    if not value or len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"
