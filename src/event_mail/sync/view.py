"""The caller's view of the event currently being worked on."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from ..core.models import Event, fold

LOGGER = logging.getLogger(__name__)


class EventView(Protocol):
    """Commit target of a refresh."""

    def is_showing(self, event_id: str) -> bool:
        """Return ``True`` while ``event_id`` is the event on display."""
        raise NotImplementedError

    def swap(self, event: Event) -> bool:
        """Replace the displayed event if it is still ``event.event_id``."""
        raise NotImplementedError


class EventViewState(EventView):
    """In-memory holder of the displayed event."""

    def __init__(self, event: Event | None = None) -> None:
        self._lock = threading.Lock()
        self._event = event

    @property
    def current(self) -> Event | None:
        return self._event

    def show(self, event: Event | None) -> None:
        """Switch the view to ``event`` (``None`` closes it)."""
        with self._lock:
            self._event = event

    def is_showing(self, event_id: str) -> bool:
        current = self._event
        return current is not None and fold(current.event_id) == fold(event_id)

    def swap(self, event: Event) -> bool:
        with self._lock:
            current = self._event
            if current is None or fold(current.event_id) != fold(event.event_id):
                LOGGER.debug(
                    "View no longer shows event %s; discarding refreshed copy",
                    event.event_id,
                )
                return False
            self._event = event
            return True


__all__ = ["EventView", "EventViewState"]
