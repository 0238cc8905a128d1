"""structlog setup shared by structlog loggers and stdlib ``logging``.

Service modules log through ``logging.getLogger(__name__)`` with ``extra=``
fields (``environment_id``, ``instance_id``, ``provider_instance_id``); the
middleware logs through structlog. Both are rendered by one
``ProcessorFormatter`` so every line carries the level, logger name, ISO
timestamp and the current request id.

Values under secret-bearing keys are masked before rendering. The agent bearer
token, the agent API key and the bootstrap script must never reach a log line
even when passed by mistake.

Usage::

    from toolbox_control.observability.logging import configure_logging, get_logger

    configure_logging()                 # once, at app startup
    get_logger(__name__).info("toolbox_refreshed", environment_id=env.id)
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, MutableMapping

import structlog

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[redacted]"
SECRET_KEYS = frozenset({
    "authorization",
    "agent_bearer_token",
    "bearer_token",
    "agent_api_key",
    "api_key",
    "service_role_key",
    "digitalocean_token",
    "user_data",
    "token",
})

# Every LogRecord has these; anything beyond them arrived through ``extra=``.
_STANDARD_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

EventDict = MutableMapping[str, Any]

_configured = False


def _add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


def _add_record_extras(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Copy ``extra=`` fields from a stdlib record into the event."""
    record = event_dict.get("_record")
    if record is None:
        return event_dict
    for key, value in vars(record).items():
        if key in _STANDARD_RECORD_ATTRS or key.startswith("_"):
            continue
        event_dict.setdefault(key, value)
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(*, level: str | None = None, json_output: bool | None = None) -> None:
    """Install the structlog pipeline on the root logger (idempotent).

    ``level`` defaults to ``LOG_LEVEL`` (INFO). ``json_output`` defaults to
    ``LOG_FORMAT != "console"``; console rendering is for local development.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") != "console"

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer(default=str)
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*pre_chain, _add_record_extras],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _redact_secrets,
            renderer,
        ],
    ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level, logging.INFO))

    # httpx logs every request URL at INFO, including agent hosts.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
