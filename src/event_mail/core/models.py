"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, MutableSet
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .datetime_utils import utc_now


class EventStatus(StrEnum):
    """Lifecycle state of an event."""

    OPEN = "Open"
    ARCHIVED = "Archived"


class ChangeReason(StrEnum):
    """Reason attached to a repository change notification."""

    CREATED = "Created"
    UPDATED = "Updated"
    MAIL_APPENDED = "MailAppended"
    MAIL_REMOVED = "MailRemoved"
    DELETED = "Deleted"


class RefreshState(StrEnum):
    """States of the refresh pipeline."""

    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class FolderKind(StrEnum):
    """Well-known folders of a mail store."""

    INBOX = "Inbox"
    SENT = "Sent"
    DELETED = "Deleted"


def fold(value: str) -> str:
    """Return the comparison key used for case-insensitive identifiers."""
    return value.strip().casefold()


class CaseInsensitiveSet(MutableSet[str]):
    """Set of strings compared case-insensitively, keeping first-seen spelling."""

    __slots__ = ("_items",)

    def __init__(self, values: Iterable[str] = ()) -> None:
        self._items: dict[str, str] = {}
        for value in values:
            self.add(value)

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and fold(value) in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"CaseInsensitiveSet({list(self._items.values())!r})"

    def add(self, value: str) -> None:
        cleaned = value.strip()
        if cleaned:
            self._items.setdefault(fold(cleaned), cleaned)

    def discard(self, value: str) -> None:
        self._items.pop(fold(value), None)


@dataclass(frozen=True, slots=True)
class MailSnapshot:
    """Plain-data copy of a live mailbox message."""

    entry_id: str
    store_id: str | None
    internet_message_id: str | None
    conversation_id: str | None
    subject: str | None
    sender: str | None
    recipients: tuple[str, ...]
    received_at: datetime | None
    in_reply_to: str | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MailReference:
    """Persisted pointer from an event to a mailbox message."""

    entry_id: str
    store_id: str | None
    internet_message_id: str | None
    conversation_id: str | None = None
    subject: str | None = None
    sender: str | None = None
    recipients: tuple[str, ...] = ()
    received_at: datetime | None = None
    is_new: bool = True
    is_removed: bool = False


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Event:
    """A user-curated case aggregating correlated messages."""

    event_id: str
    title: str = ""
    status: EventStatus = EventStatus.OPEN
    created_on: datetime = field(default_factory=utc_now)
    last_updated_on: datetime = field(default_factory=utc_now)
    conversation_ids: list[str] = field(default_factory=list)
    related_subjects: CaseInsensitiveSet = field(default_factory=CaseInsensitiveSet)
    participants: CaseInsensitiveSet = field(default_factory=CaseInsensitiveSet)
    processed_message_ids: CaseInsensitiveSet = field(
        default_factory=CaseInsensitiveSet
    )
    not_found_message_ids: CaseInsensitiveSet = field(
        default_factory=CaseInsensitiveSet
    )
    mails: list[MailReference] = field(default_factory=list)

    def is_conversation_tracked(self, conversation_id: str | None) -> bool:
        if not conversation_id:
            return False
        key = fold(conversation_id)
        return any(fold(tracked) == key for tracked in self.conversation_ids)

    def track_conversation(self, conversation_id: str | None) -> bool:
        """Append ``conversation_id`` if not yet tracked; return ``True`` if added."""
        if not conversation_id or not conversation_id.strip():
            return False
        if self.is_conversation_tracked(conversation_id):
            return False
        self.conversation_ids.append(conversation_id.strip())
        return True

    def active_mails(self) -> list[MailReference]:
        return [mail for mail in self.mails if not mail.is_removed]


@dataclass(frozen=True, slots=True)
class EventChange:
    """Change notification emitted by the event repository."""

    event: Event
    reason: ChangeReason
    timestamp: datetime


@dataclass(slots=True)
class ValidationReport:
    """Outcome of validating the members of an event."""

    checked: int = 0
    unresolved: int = 0
    repaired: int = 0


@dataclass(frozen=True, slots=True)
class RefreshProgress:
    """Progress notification for a running refresh."""

    event_id: str
    percent: float
    message: str


@dataclass(slots=True)
class RefreshOutcome:
    """Result summary of a refresh request."""

    event_id: str
    state: RefreshState
    event: Event | None = None
    committed: bool = False
    discovered: int = 0
    repaired: int = 0


__all__ = [
    "CaseInsensitiveSet",
    "ChangeReason",
    "Event",
    "EventChange",
    "EventStatus",
    "FolderKind",
    "MailReference",
    "MailSnapshot",
    "RefreshOutcome",
    "RefreshProgress",
    "RefreshState",
    "ValidationReport",
    "fold",
]
