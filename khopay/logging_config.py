"""
Structured logging for KhoAugment Pay.

JSON lines in every environment except local development, where the console
renderer is easier to read. Provider credentials and signatures must never
reach a log line, so a redaction processor masks them before rendering.
"""
import logging
import sys
from typing import Any, Dict

import structlog

from .config import settings

_SENSITIVE_KEYS = frozenset({
    "authorization",
    "cookie",
    "secret",
    "hash_secret",
    "secret_key",
    "access_key",
    "key1",
    "key2",
    "signature",
    "mac",
    "checksum",
    "vnp_securehash",
})


def _level() -> int:
    return logging.DEBUG if settings.DEBUG else logging.INFO


def add_service_context(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    event_dict.setdefault("service", "khoaugment-pay")
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    """Mask credential-like keys at the top level and one dict deep."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = "***"
        elif isinstance(value, dict):
            event_dict[key] = {
                k: "***" if str(k).lower() in _SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def configure_logging():
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=_level())

    if settings.ENVIRONMENT == "development":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_service_context,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str = __name__):
    return structlog.get_logger(name)
