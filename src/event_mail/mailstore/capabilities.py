"""Process-wide negotiation of optional store capabilities."""

from __future__ import annotations

import logging
import threading
from enum import StrEnum

LOGGER = logging.getLogger(__name__)


class CapabilityState(StrEnum):
    ASSUMED_SUPPORTED = "assumed-supported"
    CONFIRMED_UNSUPPORTED = "confirmed-unsupported"


class ConversationFilterCapability:
    """Tracks whether the store accepts conversation-id filter clauses.

    The state only moves from assumed-supported to confirmed-unsupported;
    once downgraded it stays that way for the lifetime of the instance.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = CapabilityState.ASSUMED_SUPPORTED

    @property
    def state(self) -> CapabilityState:
        return self._state

    @property
    def supported(self) -> bool:
        return self._state is CapabilityState.ASSUMED_SUPPORTED

    def mark_unsupported(self, context: str, error: BaseException | None = None) -> bool:
        """Downgrade to unsupported. Returns ``True`` only for the first call."""
        with self._lock:
            if self._state is CapabilityState.CONFIRMED_UNSUPPORTED:
                return False
            self._state = CapabilityState.CONFIRMED_UNSUPPORTED
        LOGGER.warning(
            "Conversation filter unsupported (%s): %s. "
            "Falling back to received-time filtering.",
            context,
            error,
        )
        return True


CONVERSATION_FILTER = ConversationFilterCapability()


__all__ = ["CONVERSATION_FILTER", "CapabilityState", "ConversationFilterCapability"]
