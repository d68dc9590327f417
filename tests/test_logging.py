"""Tests for logging utilities."""

from __future__ import annotations

import asyncio
import logging

from event_mail.core.config import LoggingSettings
from event_mail.core.logging import (
    NO_EVENT,
    EventContextFilter,
    configure_logging,
    current_event_id,
    event_context,
)
from event_mail.mailstore import StoreWorker


def _record() -> logging.LogRecord:
    return logging.LogRecord("event_mail.test", logging.INFO, __file__, 1, "msg", None, None)


def test_configure_logging_sets_root_level() -> None:
    """configure_logging should set the root logger level according to settings."""

    settings = LoggingSettings(level="DEBUG", structured=False)
    configure_logging(settings)
    assert logging.getLogger().level == logging.DEBUG


def test_structured_logging_uses_key_value_format() -> None:
    configure_logging(LoggingSettings(level="WARNING", structured=True))
    root = logging.getLogger()
    formats = [
        handler.formatter._fmt  # pylint: disable=protected-access
        for handler in root.handlers
        if handler.formatter is not None
    ]
    assert root.level == logging.WARNING
    assert any("level={levelname}" in (fmt or "") for fmt in formats)
    assert any("event={event_id}" in (fmt or "") for fmt in formats)


def test_event_context_stamps_records() -> None:
    record_filter = EventContextFilter()
    outside = _record()
    record_filter.filter(outside)
    with event_context("evt-1"):
        inside = _record()
        record_filter.filter(inside)

    assert outside.event_id == NO_EVENT
    assert inside.event_id == "evt-1"
    assert current_event_id() == NO_EVENT


def test_worker_jobs_inherit_event_context() -> None:
    async def scenario() -> str:
        with StoreWorker() as worker:
            with event_context("evt-2"):
                return await worker.run(current_event_id)

    assert asyncio.run(scenario()) == "evt-2"
