"""Tests for the identity resolver fallback chain."""

from __future__ import annotations

from fakes import FakeMailStore, fixed_clock, make_mail

from event_mail.core.interfaces import MailStoreError
from event_mail.core.models import FolderKind, MailReference
from event_mail.mailstore import ConversationFilterCapability, FolderScanner, IdentityResolver


def _resolver(store: FakeMailStore) -> IdentityResolver:
    scanner = FolderScanner(store, capability=ConversationFilterCapability())
    return IdentityResolver(store, scanner, lookback_days=7, clock=fixed_clock)


def _reference(entry_id: str, message_id: str | None, store_id: str | None = "store-1"):
    return MailReference(entry_id=entry_id, store_id=store_id, internet_message_id=message_id)


def test_entry_and_store_id_resolve_without_search() -> None:
    store = FakeMailStore()
    store.deliver(store.folder(FolderKind.INBOX), make_mail("e-1", "<m1@x>"))

    handle = _resolver(store).resolve(_reference("e-1", "<m1@x>"))

    assert handle is not None
    assert handle.snapshot.entry_id == "e-1"
    assert store.calls["resolve_by_id"] == 1
    assert store.calls["list_stores"] == 0
    handle.release()
    assert store.open_handles == 0


def test_moved_message_is_found_by_message_id() -> None:
    store = FakeMailStore()
    inbox = store.folder(FolderKind.INBOX)
    nested = store.add_child(store.add_child(inbox, "Projects"), "Q3")
    store.deliver(inbox, make_mail("e-1", "<m1@x>", age_days=2))
    store.move("e-1", nested, "e-1-moved")

    handle = _resolver(store).resolve(_reference("e-1", "<M1@X>"))

    assert handle is not None
    assert handle.snapshot.entry_id == "e-1-moved"
    # entry+store, entry only, then the re-resolve of the search hit
    assert store.calls["resolve_by_id"] == 3
    handle.release()
    assert store.open_handles == 0


def test_search_covers_other_stores_and_deleted_items() -> None:
    store = FakeMailStore()
    store.add_store("archive-pst")
    store.deliver(
        store.folder(FolderKind.DELETED, "archive-pst"), make_mail("gone", "<m2@x>")
    )

    handle = _resolver(store).resolve(_reference("stale", "<m2@x>"))

    assert handle is not None
    assert handle.snapshot.store_id == "archive-pst"
    handle.release()
    assert store.open_handles == 0


def test_message_outside_lookback_is_not_found() -> None:
    store = FakeMailStore()
    store.deliver(store.folder(FolderKind.SENT), make_mail("old", "<m3@x>", age_days=10))

    resolver = _resolver(store)

    assert resolver.resolve(_reference("stale", "<m3@x>")) is None
    assert resolver.resolve_snapshot(_reference("stale", None)) is None
    assert store.open_handles == 0


def test_store_fault_counts_as_strategy_failure() -> None:
    class FlakyStore(FakeMailStore):
        def resolve_by_id(self, entry_id, store_id=None):
            if store_id is not None:
                self.calls["resolve_by_id"] += 1
                raise MailStoreError("store offline")
            return super().resolve_by_id(entry_id, store_id)

    store = FlakyStore()
    store.deliver(store.folder(FolderKind.INBOX), make_mail("e-1", "<m1@x>"))

    snapshot = _resolver(store).resolve_snapshot(_reference("e-1", "<m1@x>"))

    assert snapshot is not None
    assert snapshot.entry_id == "e-1"
    assert store.calls["resolve_by_id"] == 2
    assert store.calls["list_stores"] == 0
    assert store.open_handles == 0
