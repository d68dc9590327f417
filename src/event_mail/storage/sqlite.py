"""SQLite-backed event repository implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterable
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.interfaces import ChangeCallback, EventRepository, RepositoryError
from ..core.models import (
    CaseInsensitiveSet,
    ChangeReason,
    Event,
    EventChange,
    EventStatus,
    MailReference,
    MailSnapshot,
)
from ..correlation.membership import find_member, merge_snapshot
from ..correlation.subjects import normalize_subject

LOGGER = logging.getLogger(__name__)


class SqliteEventRepository(EventRepository):
    """Persist events and their mail references using SQLite.

    Every read returns a fresh copy; callers mutate their copy and hand it
    back through :meth:`update`. Change notifications are delivered after the
    write has been committed, on the thread that made the write.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._subscribers: list[ChangeCallback] = []
        self._enable_foreign_keys()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteEventRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # ChangeFeed API ------------------------------------------------------------
    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback`` for change notifications."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # EventRepository API -------------------------------------------------------
    def get_by_id(self, event_id: str) -> Event | None:
        """Return a fresh copy of the stored event."""
        with self._lock:
            return self._load(event_id)

    def list_events(self) -> list[Event]:
        """Return every stored event, most recently updated first."""
        with self._lock:
            rows = self._connection.execute(
                "SELECT event_id FROM events ORDER BY last_updated_on DESC"
            ).fetchall()
            events = [self._load(row["event_id"]) for row in rows]
        return [event for event in events if event is not None]

    def update(self, event: Event) -> None:
        """Persist ``event`` as a whole."""
        with self._lock:
            if self._load(event.event_id) is None:
                raise RepositoryError(f"Event {event.event_id} does not exist")
            self._save(event)
            stored = self._load(event.event_id)
        self._publish(stored, ChangeReason.UPDATED)

    def add_or_merge_mail(self, event_id: str, mail: MailSnapshot) -> Event | None:
        """Add ``mail`` to the event, merging with an existing member."""
        with self._lock:
            event = self._load(event_id)
            if event is None:
                LOGGER.warning("Cannot add mail to missing event %s", event_id)
                return None
            _, appended = merge_snapshot(event, mail)
            event.last_updated_on = utc_now()
            self._save(event)
            stored = self._load(event_id)
        LOGGER.debug(
            "%s mail %s in event %s",
            "Appended" if appended else "Merged",
            mail.internet_message_id or mail.entry_id,
            event_id,
        )
        self._publish(
            stored, ChangeReason.MAIL_APPENDED if appended else ChangeReason.UPDATED
        )
        return stored

    def remove_mail(
        self, event_id: str, entry_id: str, internet_message_id: str | None = None
    ) -> Event | None:
        """Soft-remove a member; it stays stored and is never rediscovered."""
        with self._lock:
            event = self._load(event_id)
            if event is None:
                return None
            member = find_member(
                event, internet_message_id=internet_message_id, entry_id=entry_id
            )
            if member is None or member.is_removed:
                return event
            member.is_removed = True
            member.is_new = False
            event.last_updated_on = utc_now()
            self._save(event)
            stored = self._load(event_id)
        self._publish(stored, ChangeReason.MAIL_REMOVED)
        return stored

    def mark_all_read(self, event_id: str) -> Event | None:
        """Clear ``is_new`` on every member and remember their message ids."""
        with self._lock:
            event = self._load(event_id)
            if event is None:
                return None
            for mail in event.mails:
                mail.is_new = False
                if mail.internet_message_id:
                    event.processed_message_ids.add(mail.internet_message_id)
            event.last_updated_on = utc_now()
            self._save(event)
            stored = self._load(event_id)
        self._publish(stored, ChangeReason.UPDATED)
        return stored

    def create_from_mail(self, mail: MailSnapshot, title: str | None = None) -> Event:
        """Create a new event seeded from ``mail``."""
        now = utc_now()
        event = Event(
            event_id=uuid.uuid4().hex,
            title=title or normalize_subject(mail.subject) or "(no subject)",
            created_on=now,
            last_updated_on=now,
        )
        member, _ = merge_snapshot(event, mail)
        member.is_new = False
        with self._lock:
            self._save(event)
            stored = self._load(event.event_id)
        if stored is None:
            raise RepositoryError(f"Event {event.event_id} was not persisted")
        LOGGER.info("Created event %s from mail %s", event.event_id, mail.entry_id)
        self._publish(stored, ChangeReason.CREATED)
        return stored

    def delete(self, event_id: str) -> bool:
        """Delete an event and its members; return ``True`` if it existed."""
        with self._lock:
            event = self._load(event_id)
            if event is None:
                return False
            with self._connection:
                self._connection.execute(
                    "DELETE FROM events WHERE event_id = ?", (event_id,)
                )
        self._publish(event, ChangeReason.DELETED)
        return True

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)

    def _load(self, event_id: str) -> Event | None:
        row = self._connection.execute(
            """
            SELECT
                event_id,
                title,
                status,
                created_on,
                last_updated_on,
                conversation_ids,
                related_subjects,
                participants,
                processed_message_ids,
                not_found_message_ids
            FROM events
            WHERE event_id = ?
            """,
            (event_id,),
        ).fetchone()
        if row is None:
            return None
        mail_rows = self._connection.execute(
            """
            SELECT
                entry_id,
                store_id,
                internet_message_id,
                conversation_id,
                subject,
                sender,
                recipients,
                received_at,
                is_new,
                is_removed
            FROM event_mails
            WHERE event_id = ?
            ORDER BY position
            """,
            (row["event_id"],),
        ).fetchall()
        return Event(
            event_id=row["event_id"],
            title=row["title"],
            status=EventStatus(row["status"]),
            created_on=parse_datetime(row["created_on"]) or utc_now(),
            last_updated_on=parse_datetime(row["last_updated_on"]) or utc_now(),
            conversation_ids=list(_decode_list(row["conversation_ids"])),
            related_subjects=CaseInsensitiveSet(_decode_list(row["related_subjects"])),
            participants=CaseInsensitiveSet(_decode_list(row["participants"])),
            processed_message_ids=CaseInsensitiveSet(
                _decode_list(row["processed_message_ids"])
            ),
            not_found_message_ids=CaseInsensitiveSet(
                _decode_list(row["not_found_message_ids"])
            ),
            mails=[_row_to_mail(mail_row) for mail_row in mail_rows],
        )

    def _save(self, event: Event) -> None:
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO events (
                        event_id,
                        title,
                        status,
                        created_on,
                        last_updated_on,
                        conversation_ids,
                        related_subjects,
                        participants,
                        processed_message_ids,
                        not_found_message_ids
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(event_id) DO UPDATE SET
                        title=excluded.title,
                        status=excluded.status,
                        last_updated_on=excluded.last_updated_on,
                        conversation_ids=excluded.conversation_ids,
                        related_subjects=excluded.related_subjects,
                        participants=excluded.participants,
                        processed_message_ids=excluded.processed_message_ids,
                        not_found_message_ids=excluded.not_found_message_ids
                    """,
                    (
                        event.event_id,
                        event.title,
                        str(event.status),
                        serialize_datetime(event.created_on),
                        serialize_datetime(event.last_updated_on),
                        _encode_list(event.conversation_ids),
                        _encode_list(event.related_subjects),
                        _encode_list(event.participants),
                        _encode_list(event.processed_message_ids),
                        _encode_list(event.not_found_message_ids),
                    ),
                )
                self._connection.execute(
                    "DELETE FROM event_mails WHERE event_id = ?", (event.event_id,)
                )
                self._connection.executemany(
                    """
                    INSERT INTO event_mails (
                        event_id,
                        position,
                        entry_id,
                        store_id,
                        internet_message_id,
                        conversation_id,
                        subject,
                        sender,
                        recipients,
                        received_at,
                        is_new,
                        is_removed
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            event.event_id,
                            position,
                            mail.entry_id,
                            mail.store_id,
                            mail.internet_message_id,
                            mail.conversation_id,
                            mail.subject,
                            mail.sender,
                            _encode_list(mail.recipients),
                            serialize_datetime(mail.received_at),
                            1 if mail.is_new else 0,
                            1 if mail.is_removed else 0,
                        )
                        for position, mail in enumerate(event.mails)
                    ],
                )
        except sqlite3.DatabaseError as exc:
            LOGGER.error(
                "Database error persisting event %s: %s",
                event.event_id,
                exc,
                exc_info=True,
            )
            raise RepositoryError(
                f"Failed to persist event {event.event_id}: {exc}"
            ) from exc

    def _publish(self, event: Event | None, reason: ChangeReason) -> None:
        if event is None:
            return
        with self._lock:
            subscribers = list(self._subscribers)
        change = EventChange(event=event, reason=reason, timestamp=utc_now())
        for callback in subscribers:
            try:
                callback(change)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                LOGGER.warning("Change subscriber failed for %s: %s", reason, exc)


def _encode_list(values: Iterable[str]) -> str:
    return json.dumps(list(values))


def _decode_list(value: str | None) -> list[str]:
    if not value:
        return []
    decoded = json.loads(value)
    return [str(item) for item in decoded]


def _row_to_mail(row: sqlite3.Row) -> MailReference:
    return MailReference(
        entry_id=row["entry_id"],
        store_id=row["store_id"],
        internet_message_id=row["internet_message_id"],
        conversation_id=row["conversation_id"],
        subject=row["subject"],
        sender=row["sender"],
        recipients=tuple(_decode_list(row["recipients"])),
        received_at=parse_datetime(row["received_at"]),
        is_new=bool(row["is_new"]),
        is_removed=bool(row["is_removed"]),
    )


__all__ = ["SqliteEventRepository"]
