"""Snapshot capture of live message properties."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from ..core.datetime_utils import ensure_utc
from ..core.interfaces import MailHandle, MailStore, MailStoreError, PropertyTag
from ..core.models import MailSnapshot

LOGGER = logging.getLogger(__name__)


def read_property(store: MailStore, message: MailHandle, tag: PropertyTag) -> Any:
    """Read ``tag``; a missing or faulting property reads as ``None``."""
    try:
        return store.get_property(message, tag)
    except MailStoreError as exc:
        LOGGER.debug("Property %s unavailable: %s", tag, exc)
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _addresses(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(";")
    if not isinstance(value, Iterable):
        return ()
    return tuple(text for text in (_text(item) for item in value) if text)


def capture_snapshot(store: MailStore, message: MailHandle) -> MailSnapshot | None:
    """Copy the correlation-relevant properties of ``message``.

    Returns ``None`` for items without an entry id (not addressable later).
    Raises :class:`MailStoreError` only when the entry id itself faults.
    """
    entry_id = _text(store.get_property(message, PropertyTag.ENTRY_ID))
    if entry_id is None:
        return None
    received = read_property(store, message, PropertyTag.RECEIVED_AT)
    return MailSnapshot(
        entry_id=entry_id,
        store_id=_text(read_property(store, message, PropertyTag.STORE_ID)),
        internet_message_id=_text(
            read_property(store, message, PropertyTag.INTERNET_MESSAGE_ID)
        ),
        conversation_id=_text(
            read_property(store, message, PropertyTag.CONVERSATION_ID)
        ),
        subject=read_property(store, message, PropertyTag.SUBJECT),
        sender=_text(read_property(store, message, PropertyTag.SENDER)),
        recipients=_addresses(read_property(store, message, PropertyTag.RECIPIENTS)),
        received_at=ensure_utc(received) if isinstance(received, datetime) else None,
        in_reply_to=_text(read_property(store, message, PropertyTag.IN_REPLY_TO)),
    )


__all__ = ["capture_snapshot", "read_property"]
