"""structlog setup for the billing sync service.

One processor chain serves both structlog loggers and stdlib loggers
(uvicorn, stripe, SQLAlchemy) through ``ProcessorFormatter``, so every line
comes out as JSON in production or colored console output in dev.

Billing logs are easy to leak secrets into: webhook signature headers,
bearer tokens and processor keys are masked by ``redact_secrets`` before
anything is rendered.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "billing-sync"

REDACTED = "[redacted]"

# Event-dict keys whose values never reach the log output
SENSITIVE_KEYS = frozenset({
    "access_token",
    "api_key",
    "authorization",
    "sig_header",
    "stripe_signature",
    "stripe-signature",
    "token",
    "webhook_secret",
})

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "stripe", "sqlalchemy.engine", "botocore")


def add_correlation_id(logger, method, event_dict):
    """Attach the asgi-correlation-id request ID when inside a request."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def add_service(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(logger, method, event_dict):
    """Mask sensitive keys, including one level down in dict values."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if isinstance(k, str) and k.lower() in SENSITIVE_KEYS else v
                for k, v in value.items()
            }
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain for structlog and the stdlib root logger.

    Must run before the first ``structlog.get_logger()`` call is used,
    because loggers cache their chain on first use.
    """
    shared = _shared_processors()
    if json_logs:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    *renderers,
                ],
                "foreign_pre_chain": shared,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    })

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
