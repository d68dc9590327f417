"""Tests for the SQLite-backed event repository."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from fakes import make_mail

from event_mail.core.config import StorageSettings
from event_mail.core.interfaces import RepositoryError
from event_mail.core.models import ChangeReason, Event, EventChange
from event_mail.storage import SqliteEventRepository


def test_create_from_mail_persists_correlation_state(tmp_path: Path) -> None:
    db_path = tmp_path / "events.db"
    with SqliteEventRepository(StorageSettings(db_path=db_path)) as repository:
        event = repository.create_from_mail(
            make_mail(
                "e-1",
                "<m1@x>",
                conversation_id="c-1",
                subject="RE: Launch plan",
                sender="Alice <Alice@Example.com>",
                recipients=("bob@example.com",),
            )
        )

    with SqliteEventRepository(StorageSettings(db_path=db_path)) as reopened:
        stored = reopened.get_by_id(event.event_id.upper())

    assert stored is not None
    assert stored.title == "Launch plan"
    assert stored.conversation_ids == ["c-1"]
    assert "launch plan" in stored.related_subjects
    assert set(stored.participants) == {"alice@example.com", "bob@example.com"}
    assert stored.mails[0].received_at == event.mails[0].received_at
    assert not stored.mails[0].is_new

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM event_mails").fetchone()[0]
    assert count == 1


def test_reads_return_independent_copies(tmp_path: Path) -> None:
    with SqliteEventRepository(StorageSettings(db_path=tmp_path / "e.db")) as repository:
        event = repository.create_from_mail(make_mail("e-1", "<m1@x>"))
        copy = repository.get_by_id(event.event_id)
        assert copy is not None
        copy.mails.clear()

        again = repository.get_by_id(event.event_id)

    assert again is not None
    assert len(again.mails) == 1


def test_add_or_merge_emits_appended_then_updated(tmp_path: Path) -> None:
    changes: list[EventChange] = []
    with SqliteEventRepository(StorageSettings(db_path=tmp_path / "e.db")) as repository:
        event = repository.create_from_mail(make_mail("e-1", "<m1@x>"))
        unsubscribe = repository.subscribe(changes.append)

        repository.add_or_merge_mail(event.event_id, make_mail("e-2", "<m2@x>"))
        merged = repository.add_or_merge_mail(
            event.event_id, make_mail("e-2-moved", "<M2@x>")
        )
        unsubscribe()
        repository.add_or_merge_mail(event.event_id, make_mail("e-3", "<m3@x>"))
        missing = repository.add_or_merge_mail("nope", make_mail("e-4", "<m4@x>"))

    assert [change.reason for change in changes] == [
        ChangeReason.MAIL_APPENDED,
        ChangeReason.UPDATED,
    ]
    assert merged is not None
    assert [mail.entry_id for mail in merged.mails] == ["e-1", "e-2-moved"]
    assert missing is None


def test_remove_and_mark_all_read(tmp_path: Path) -> None:
    changes: list[ChangeReason] = []
    with SqliteEventRepository(StorageSettings(db_path=tmp_path / "e.db")) as repository:
        event = repository.create_from_mail(make_mail("e-1", "<m1@x>"))
        repository.add_or_merge_mail(event.event_id, make_mail("e-2", "<m2@x>"))
        repository.subscribe(lambda change: changes.append(change.reason))

        removed = repository.remove_mail(event.event_id, "E-2")
        read = repository.mark_all_read(event.event_id)
        revived = repository.add_or_merge_mail(event.event_id, make_mail("e-2", "<m2@x>"))

    assert removed is not None
    assert removed.mails[1].is_removed
    assert read is not None
    assert "<m2@x>" in read.processed_message_ids
    assert all(not mail.is_new for mail in read.mails)
    assert revived is not None
    assert not revived.mails[1].is_removed
    assert not revived.mails[1].is_new
    assert changes == [
        ChangeReason.MAIL_REMOVED,
        ChangeReason.UPDATED,
        ChangeReason.UPDATED,
    ]


def test_update_requires_existing_event(tmp_path: Path) -> None:
    with SqliteEventRepository(StorageSettings(db_path=tmp_path / "e.db")) as repository:
        with pytest.raises(RepositoryError):
            repository.update(Event(event_id="ghost"))


def test_failing_subscriber_does_not_break_writes(tmp_path: Path) -> None:
    def explode(change: EventChange) -> None:
        raise RuntimeError("subscriber bug")

    with SqliteEventRepository(StorageSettings(db_path=tmp_path / "e.db")) as repository:
        repository.subscribe(explode)
        event = repository.create_from_mail(make_mail("e-1", "<m1@x>"))
        assert repository.delete(event.event_id)
        assert repository.get_by_id(event.event_id) is None
        assert repository.list_events() == []
