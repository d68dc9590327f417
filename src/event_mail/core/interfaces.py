"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterator, Sequence
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from .models import Event, EventChange, FolderKind, MailSnapshot

if TYPE_CHECKING:
    from ..mailstore.filters import StoreFilter
    from ..mailstore.worker import CancellationToken


class MailStoreError(RuntimeError):
    """Raised by a mail store adapter when the underlying store faults."""


class FilterUnsupportedError(MailStoreError):
    """Raised when the store rejects an optional filter clause."""


class RepositoryError(RuntimeError):
    """Raised when the event repository cannot complete an operation."""


class PropertyTag(StrEnum):
    """Message properties readable through :meth:`MailStore.get_property`."""

    ENTRY_ID = "entry_id"
    STORE_ID = "store_id"
    INTERNET_MESSAGE_ID = "internet_message_id"
    CONVERSATION_ID = "conversation_id"
    SUBJECT = "subject"
    SENDER = "sender"
    RECIPIENTS = "recipients"
    RECEIVED_AT = "received_at"
    IN_REPLY_TO = "in_reply_to"


class StoreHandle(Protocol):
    """Open handle on a message store (an account or data file)."""

    store_id: str

    def release(self) -> None:
        """Release the underlying store handle."""
        raise NotImplementedError


class FolderHandle(Protocol):
    """Open handle on a mail folder."""

    name: str

    def release(self) -> None:
        """Release the underlying folder handle."""
        raise NotImplementedError


class MailHandle(Protocol):
    """Open handle on a live message."""

    def release(self) -> None:
        """Release the underlying message handle."""
        raise NotImplementedError


class ItemCollection(Protocol):
    """Lazily enumerated, filtered folder contents."""

    def __iter__(self) -> Iterator[MailHandle]:
        """Yield message handles newest-first."""
        raise NotImplementedError

    def release(self) -> None:
        """Release the collection handle."""
        raise NotImplementedError


class MailStore(Protocol):
    """Read-only capability surface over the user's mailbox."""

    def resolve_by_id(
        self, entry_id: str, store_id: str | None = None
    ) -> MailHandle | None:
        """Return the message for ``entry_id`` or ``None`` when it does not exist."""
        raise NotImplementedError

    def list_stores(self) -> Sequence[StoreHandle]:
        """Return every accessible store."""
        raise NotImplementedError

    def default_store(self) -> StoreHandle | None:
        """Return the user's default store."""
        raise NotImplementedError

    def default_folder(self, store: StoreHandle, kind: FolderKind) -> FolderHandle | None:
        """Return a well-known folder of ``store`` or ``None`` if unavailable."""
        raise NotImplementedError

    def child_folders(self, folder: FolderHandle) -> Sequence[FolderHandle]:
        """Return the immediate child folders of ``folder``."""
        raise NotImplementedError

    def enumerate_folder(
        self, folder: FolderHandle, store_filter: StoreFilter, cutoff: datetime
    ) -> ItemCollection:
        """Return items matching ``store_filter`` newest-first.

        Implementations validate the filter eagerly and raise
        :class:`FilterUnsupportedError` before any item is produced.
        """
        raise NotImplementedError

    def get_property(self, message: MailHandle, tag: PropertyTag) -> Any:
        """Read a single property from a live message."""
        raise NotImplementedError


ChangeCallback = Callable[[EventChange], None]


class ChangeFeed(Protocol):
    """Publisher of event change notifications."""

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that unsubscribes it."""
        raise NotImplementedError


class EventRepository(ChangeFeed, Protocol):
    """Abstraction for event persistence."""

    def get_by_id(self, event_id: str) -> Event | None:
        """Return a fresh copy of the stored event."""
        raise NotImplementedError

    def list_events(self) -> list[Event]:
        """Return all stored events."""
        raise NotImplementedError

    def update(self, event: Event) -> None:
        """Persist ``event`` as a whole."""
        raise NotImplementedError

    def add_or_merge_mail(self, event_id: str, mail: MailSnapshot) -> Event | None:
        """Add ``mail`` to the event, merging with an existing member."""
        raise NotImplementedError

    def remove_mail(
        self, event_id: str, entry_id: str, internet_message_id: str | None = None
    ) -> Event | None:
        """Soft-remove a member from the event."""
        raise NotImplementedError

    def mark_all_read(self, event_id: str) -> Event | None:
        """Clear the unread highlight on every member."""
        raise NotImplementedError

    def create_from_mail(self, mail: MailSnapshot, title: str | None = None) -> Event:
        """Create a new event seeded from ``mail``."""
        raise NotImplementedError


class CatchUpTrigger(Protocol):
    """Pulls conversation members from the mailbox into an event."""

    def trigger_catch_up(
        self,
        event_id: str,
        conversation_ids: Collection[str],
        run_immediately: bool,
        timeout: float | None = None,
        use_full_history: bool = False,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Request a catch-up for ``conversation_ids`` of ``event_id``.

        An immediate run stops at the next suspension point once ``cancel``
        fires and stays within ``timeout`` seconds.
        """
        raise NotImplementedError


__all__ = [
    "CatchUpTrigger",
    "ChangeCallback",
    "ChangeFeed",
    "EventRepository",
    "FilterUnsupportedError",
    "FolderHandle",
    "ItemCollection",
    "MailHandle",
    "MailStore",
    "MailStoreError",
    "PropertyTag",
    "RepositoryError",
    "StoreHandle",
]
