"""
Structured logging for the flow metrics service.

Events are snake_case and pick up context from structlog contextvars: the
HTTP middleware binds request_id, ingestion runs bind run_id and sync_type.
The Pipedrive API token travels as a query parameter, so it is scrubbed from
every rendered event and the HTTP client loggers are kept at WARNING.
"""

import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from flowmetrics.config import Settings, get_settings

# Third-party loggers that log full request URLs (and so the token) at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_API_TOKEN = re.compile(r"(api_token=)[^&\s\"']+")


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["severity"] = method_name.upper()
    return event_dict


def redact_api_token(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask api_token query values in any string field."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "api_token=" in value:
            event_dict[key] = _API_TOKEN.sub(r"\1***", value)
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure stdlib logging and structlog.

    JSON lines unless log_format is "console" or dev_mode is on.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Processor
    if settings.log_format == "json" and not settings.dev_mode:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=not settings.testing)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_severity,
            redact_api_token,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def ingestion_log_context(run_id: str, sync_type: str) -> Iterator[None]:
    """
    Bind run_id and sync_type to every event logged inside the block,
    including events from the per-entity tasks it spawns.
    """
    with structlog.contextvars.bound_contextvars(run_id=run_id, sync_type=sync_type):
        yield


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)
