"""Tests for the IMAP mail store adapter."""

# pylint: disable=protected-access

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from event_mail.core.config import ImapSettings
from event_mail.core.interfaces import FilterUnsupportedError, PropertyTag
from event_mail.core.models import FolderKind
from event_mail.mailstore import StoreFilter, capture_snapshot
from event_mail.transport import ImapError, ImapMailStore
from event_mail.transport.imap_store import format_entry_id, imap_date, parse_entry_id

HEADERS = (
    b"Message-ID: <m1@example.com>\r\n"
    b"In-Reply-To: <root@example.com>\r\n"
    b"References: <root@example.com> <mid@example.com>\r\n"
    b"Subject: RE: Budget\r\n"
    b"From: Alice <alice@example.com>\r\n"
    b"To: Bob <bob@example.com>\r\n"
    b"Cc: carol@example.com\r\n\r\n"
)
FETCH_META = (
    b'1 (UID 42 X-GM-THRID 1700 INTERNALDATE "02-Jun-2025 10:00:00 +0000" '
    b"BODY[HEADER.FIELDS (MESSAGE-ID)] {200}"
)


def _store(capabilities: tuple[str, ...] = ("IMAP4REV1", "X-GM-EXT-1")):
    settings = ImapSettings(
        host="imap.test",
        port=993,
        username="user",
        app_password="password",
        use_ssl=False,
    )
    store = ImapMailStore(settings)
    connection = MagicMock()
    connection.capabilities = capabilities
    connection.select.return_value = ("OK", [b"10"])
    connection.response.return_value = ("UIDVALIDITY", [b"777"])

    def uid(command, *args):
        if command == "SEARCH":
            return "OK", [b"41 42 7"]
        if command == "FETCH":
            if args[0] == "42":
                return "OK", [(FETCH_META, HEADERS), b")"]
            return "OK", [None]
        raise AssertionError("Unexpected IMAP command")

    connection.uid.side_effect = uid
    store._connection = connection
    return store, connection


def test_entry_id_round_trip_with_separator_in_mailbox() -> None:
    entry_id = format_entry_id("Projects|2025", "777", 42)
    assert parse_entry_id(entry_id) == ("Projects|2025", "777", 42)
    assert parse_entry_id("not-an-entry") is None
    assert imap_date(datetime(2025, 3, 4, tzinfo=UTC)) == "04-Mar-2025"


def test_enumerate_folder_searches_with_thread_filter() -> None:
    store, connection = _store()
    folder = store.default_folder(store.default_store(), FolderKind.INBOX)
    cutoff = datetime(2025, 5, 20, tzinfo=UTC)

    items = store.enumerate_folder(
        folder, StoreFilter.for_conversation("1700", cutoff), cutoff
    )
    handles = list(items)

    connection.uid.assert_any_call(
        "SEARCH", None, "SINCE", "20-May-2025", "X-GM-THRID", "1700"
    )
    connection.select.assert_called_once_with('"INBOX"', readonly=True)
    assert [handle.uid for handle in handles] == [42]
    assert handles[0].entry_id == "INBOX|777|42"


def test_thread_filter_unsupported_without_gmail_extension() -> None:
    store, connection = _store(capabilities=("IMAP4REV1",))
    folder = store.default_folder(store.default_store(), FolderKind.SENT)
    cutoff = datetime(2025, 5, 20, tzinfo=UTC)

    with pytest.raises(FilterUnsupportedError):
        store.enumerate_folder(folder, StoreFilter.for_conversation("1700", cutoff), cutoff)
    connection.uid.assert_not_called()

    store.enumerate_folder(folder, StoreFilter.received_after(cutoff), cutoff)
    connection.uid.assert_any_call("SEARCH", None, "SINCE", "20-May-2025")


def test_snapshot_from_fetched_headers() -> None:
    store, _ = _store()

    handle = store.resolve_by_id("INBOX|777|42", store.store_id)
    assert handle is not None
    snapshot = capture_snapshot(store, handle)

    assert snapshot is not None
    assert snapshot.entry_id == "INBOX|777|42"
    assert snapshot.store_id == "imap://user@imap.test"
    assert snapshot.internet_message_id == "<m1@example.com>"
    assert snapshot.conversation_id == "1700"
    assert snapshot.in_reply_to == "<root@example.com>"
    assert snapshot.subject == "RE: Budget"
    assert snapshot.recipients == ("bob@example.com", "carol@example.com")
    assert snapshot.received_at == datetime(2025, 6, 2, 10, 0, tzinfo=UTC)


def test_thread_root_used_without_gmail_thread_ids() -> None:
    store, _ = _store(capabilities=("IMAP4REV1",))
    handle = store.resolve_by_id("INBOX|777|42")
    assert handle is not None
    handle.thread_id = None

    assert store.get_property(handle, PropertyTag.CONVERSATION_ID) == "<root@example.com>"
    handle.release()
    with pytest.raises(ImapError):
        store.get_property(handle, PropertyTag.SUBJECT)


def test_stale_entry_ids_resolve_to_none() -> None:
    store, _ = _store()

    assert store.resolve_by_id("INBOX|999|42") is None
    assert store.resolve_by_id("INBOX|777|7") is None
    assert store.resolve_by_id("INBOX|777|42", "imap://other@host") is None


def test_child_folders_lists_selectable_children() -> None:
    store, connection = _store()

    def list_folders(directory, pattern):
        if pattern == '""':
            return "OK", [b'(\\Noselect) "/" ""']
        return "OK", [
            b'(\\HasNoChildren) "/" "INBOX/Projects"',
            b'(\\Noselect \\HasChildren) "/" "INBOX/Hidden"',
        ]

    connection.list.side_effect = list_folders
    inbox = store.default_folder(store.default_store(), FolderKind.INBOX)

    children = store.child_folders(inbox)

    assert [child.name for child in children] == ["INBOX/Projects"]
    connection.list.assert_any_call('""', '"INBOX/%"')
