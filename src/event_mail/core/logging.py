"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from .config import LoggingSettings

NO_EVENT = "-"

_CURRENT_EVENT: ContextVar[str] = ContextVar("event_mail_current_event", default=NO_EVENT)


class EventContextFilter(logging.Filter):
    """Stamp each record with the event id of the surrounding refresh."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "event_id"):
            record.event_id = _CURRENT_EVENT.get()
        return True


@contextmanager
def event_context(event_id: str) -> Iterator[None]:
    """Attribute log records emitted inside the block to ``event_id``."""
    token = _CURRENT_EVENT.set(event_id)
    try:
        yield
    finally:
        _CURRENT_EVENT.reset(token)


def current_event_id() -> str:
    return _CURRENT_EVENT.get()


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for key/value logs."""
    return {
        "format": (
            "ts={asctime} level={levelname} logger={name} "
            "thread={threadName} event={event_id} msg={message!r}"
        ),
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": (
            "%(asctime)s %(levelname)s [%(threadName)s] [event=%(event_id)s] "
            "%(name)s %(message)s"
        ),
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "event_context": {"()": EventContextFilter},
        },
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["event_context"],
                "level": settings.level,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": settings.level,
        },
    }

    logging.config.dictConfig(dict_config)
    logging.getLogger(__name__).debug(
        "Logging configured (level=%s, structured=%s)",
        settings.level,
        settings.structured,
    )


__all__ = [
    "EventContextFilter",
    "NO_EVENT",
    "configure_logging",
    "current_event_id",
    "event_context",
]
