"""
Structured logging for the settlement service.

structlog passes every event to the stdlib root logger as record extras, and
python-json-logger writes one flat JSON object per record for our events and
for third-party loggers (uvicorn, SQLAlchemy, stripe) alike. Events carry the
bound request or job context.

The cron secret travels as a query parameter, so anything that logs URLs
(uvicorn access logs in particular) goes through ``SecretQueryFilter``.
"""
import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from marketplace_settlement.config import get_settings

_SECRET_QUERY = re.compile(r"(secret=)[^&\s\"']+")
_SENSITIVE_KEYS = frozenset({"secret", "cron_secret", "api_key", "stripe_secret_key"})

REDACTED = "***"


def redact_query_secret(text: str) -> str:
    """Mask the value of any ``secret=`` query parameter in a string."""
    return _SECRET_QUERY.sub(rf"\g<1>{REDACTED}", text)


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Tag every event with the service name, environment and settlement currency."""
    settings = get_settings()
    event_dict["service"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict.setdefault("currency", settings.currency)
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Drop credential values that were passed as log fields or inside URLs."""
    for key in list(event_dict):
        value = event_dict[key]
        if key in _SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "secret=" in value:
            event_dict[key] = redact_query_secret(value)
    return event_dict


class SecretQueryFilter(logging.Filter):
    """Masks ``?secret=`` in stdlib log records (uvicorn access lines)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.args = tuple(
                redact_query_secret(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        if isinstance(record.msg, str):
            record.msg = redact_query_secret(record.msg)
        return True


@contextmanager
def job_context(job: str, **values: Any) -> Iterator[None]:
    """Bind ``job`` (and extra fields) to every event logged inside the block."""
    structlog.contextvars.bind_contextvars(job=job, **values)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("job", *values)


# Attributes LogRecord sets itself; extras may not reuse them
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def protect_record_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Rename event keys that would collide with LogRecord attributes."""
    for key in [k for k in event_dict if k in _RECORD_ATTRIBUTES]:
        event_dict[f"{key}_"] = event_dict.pop(key)
    return event_dict


def json_formatter() -> jsonlogger.JsonFormatter:
    """One flat JSON object per record; structlog fields arrive as record extras."""
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
    )


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    By default structlog hands its event dict to the stdlib logger as record
    extras and python-json-logger writes them as one flat JSON object, the
    same shape as third-party records. ``DEBUG=true`` switches to structlog's
    console renderer for local runs.
    """
    settings = get_settings()

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
        redact_secrets,
    ]
    if settings.debug:
        processors[2:2] = [
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
        ]
        processors.append(structlog.dev.ConsoleRenderer())
        formatter: logging.Formatter = logging.Formatter("%(message)s")
    else:
        # Level, logger name and timestamp come from the record itself
        processors += [protect_record_fields, structlog.stdlib.render_to_log_kwargs]
        formatter = json_formatter()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(SecretQueryFilter())
    root_logger.addHandler(handler)

    # uvicorn installs its own handlers; the access log still needs masking
    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, SecretQueryFilter) for f in access_logger.filters):
        access_logger.addFilter(SecretQueryFilter())

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        console=settings.debug,
    )
