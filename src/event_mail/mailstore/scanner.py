"""Time-windowed, optionally recursive enumeration of candidate messages."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import ExitStack
from datetime import datetime

from ..core.datetime_utils import as_utc
from ..core.interfaces import (
    FilterUnsupportedError,
    FolderHandle,
    ItemCollection,
    MailStore,
    MailStoreError,
)
from ..core.models import MailSnapshot, fold
from .capabilities import CONVERSATION_FILTER, ConversationFilterCapability
from .filters import StoreFilter
from .handles import acquired, release
from .properties import capture_snapshot
from .worker import CancellationToken

LOGGER = logging.getLogger(__name__)


def _folder_name(folder: FolderHandle) -> str:
    try:
        return folder.name
    except Exception:  # pylint: disable=broad-exception-caught
        return "<unknown>"


class FolderScanner:
    """Enumerate candidate snapshots from a folder tree.

    The conversation clause is only sent while ``capability`` reports support;
    after the first rejection every scan filters by received time and matches
    the conversation id in memory.
    """

    def __init__(
        self,
        store: MailStore,
        *,
        capability: ConversationFilterCapability | None = None,
    ) -> None:
        self._store = store
        self._capability = capability or CONVERSATION_FILTER

    @property
    def capability(self) -> ConversationFilterCapability:
        return self._capability

    def scan(
        self,
        folder: FolderHandle,
        cutoff: datetime,
        conversation_id: str | None = None,
        *,
        recursive: bool = False,
        cancel: CancellationToken | None = None,
    ) -> Iterator[MailSnapshot]:
        """Yield snapshots received at or after ``cutoff``, newest-first per folder.

        ``folder`` stays owned by the caller; child folders opened here are
        released before the generator finishes or is closed.
        """
        bound = as_utc(cutoff)
        wanted = conversation_id.strip() if conversation_id else None
        yield from self._scan_folder(folder, bound, wanted or None, recursive, cancel)

    # Internal helpers ---------------------------------------------------------
    def _scan_folder(
        self,
        folder: FolderHandle,
        cutoff: datetime,
        conversation_id: str | None,
        recursive: bool,
        cancel: CancellationToken | None,
    ) -> Iterator[MailSnapshot]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        name = _folder_name(folder)

        try:
            items, post_filter = self._open_items(folder, cutoff, conversation_id)
        except MailStoreError as exc:
            LOGGER.warning("Scanning folder '%s' failed: %s", name, exc)
            items, post_filter = None, False

        if items is not None:
            with acquired(items):
                yield from self._scan_items(
                    items, name, cutoff, conversation_id if post_filter else None, cancel
                )

        if not recursive:
            return

        try:
            children = list(self._store.child_folders(folder))
        except MailStoreError as exc:
            LOGGER.warning("Listing child folders of '%s' failed: %s", name, exc)
            return

        with ExitStack() as stack:
            for child in children:
                stack.callback(release, child)
            for child in children:
                yield from self._scan_folder(
                    child, cutoff, conversation_id, recursive, cancel
                )

    def _scan_items(
        self,
        items: ItemCollection,
        folder_name: str,
        cutoff: datetime,
        post_filter_conversation: str | None,
        cancel: CancellationToken | None,
    ) -> Iterator[MailSnapshot]:
        wanted = fold(post_filter_conversation) if post_filter_conversation else None
        try:
            for handle in items:
                with acquired(handle):
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    try:
                        snapshot = capture_snapshot(self._store, handle)
                    except MailStoreError as exc:
                        LOGGER.warning(
                            "Skipping unreadable item in folder '%s': %s",
                            folder_name,
                            exc,
                        )
                        continue
                if snapshot is None:
                    continue
                if snapshot.received_at is not None and snapshot.received_at < cutoff:
                    continue
                if wanted is not None and (
                    not snapshot.conversation_id
                    or fold(snapshot.conversation_id) != wanted
                ):
                    continue
                yield snapshot
        except MailStoreError as exc:
            LOGGER.warning("Enumeration of folder '%s' aborted: %s", folder_name, exc)

    def _open_items(
        self, folder: FolderHandle, cutoff: datetime, conversation_id: str | None
    ) -> tuple[ItemCollection, bool]:
        """Return the item collection and whether conversation post-filtering applies."""
        if conversation_id and self._capability.supported:
            try:
                return (
                    self._store.enumerate_folder(
                        folder,
                        StoreFilter.for_conversation(conversation_id, cutoff),
                        cutoff,
                    ),
                    False,
                )
            except FilterUnsupportedError as exc:
                self._capability.mark_unsupported(
                    f"folder '{_folder_name(folder)}'", exc
                )
        items = self._store.enumerate_folder(
            folder, StoreFilter.received_after(cutoff), cutoff
        )
        return items, conversation_id is not None


__all__ = ["FolderScanner"]
