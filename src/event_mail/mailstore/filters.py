"""Store-side restriction filters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..core.datetime_utils import as_utc

FILTER_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"


def escape_filter_value(value: str) -> str:
    """Escape single quotes for use inside a quoted filter literal."""
    return value.replace("'", "''")


@dataclass(frozen=True, slots=True)
class StoreFilter:
    """Restriction passed to :meth:`MailStore.enumerate_folder`.

    ``received_since`` is a hard lower bound; ``conversation_id`` adds an
    equality clause that not every store supports.
    """

    received_since: datetime
    conversation_id: str | None = None

    @classmethod
    def received_after(cls, cutoff: datetime) -> StoreFilter:
        return cls(received_since=as_utc(cutoff))

    @classmethod
    def for_conversation(cls, conversation_id: str, cutoff: datetime) -> StoreFilter:
        return cls(received_since=as_utc(cutoff), conversation_id=conversation_id)

    def render(self) -> str:
        """Render the filter in the store's restriction syntax."""
        received = (
            f'[ReceivedTime] >= "{self.received_since.strftime(FILTER_TIMESTAMP_FORMAT)}"'
        )
        if self.conversation_id is None:
            return received
        conversation = f"[ConversationID] = '{escape_filter_value(self.conversation_id)}'"
        return f"{conversation} AND {received}"

    def __str__(self) -> str:
        return self.render()


__all__ = ["FILTER_TIMESTAMP_FORMAT", "StoreFilter", "escape_filter_value"]
