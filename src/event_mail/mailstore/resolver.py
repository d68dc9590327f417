"""Resolution of persisted mail references into live message handles."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import ExitStack, closing
from datetime import datetime
from typing import TypeVar

from ..core.datetime_utils import lookback_cutoff, utc_now
from ..core.interfaces import MailHandle, MailStore, StoreHandle
from ..core.models import FolderKind, MailReference, MailSnapshot, fold
from .handles import acquired, release
from .properties import capture_snapshot
from .scanner import FolderScanner
from .worker import CancellationToken

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGE_ID_SEARCH_FOLDERS: tuple[tuple[FolderKind, bool], ...] = (
    (FolderKind.INBOX, True),
    (FolderKind.SENT, False),
    (FolderKind.DELETED, False),
)


class IdentityResolver:
    """Turn a :class:`MailReference` into a live handle via ordered fallbacks.

    1. entry id + store id, when the store id is known;
    2. entry id alone;
    3. a message-id search over every store, bounded to a short lookback.

    A store fault inside a strategy counts as that strategy failing. ``None``
    means the chain is exhausted, which is a normal outcome: the message may
    have been moved outside the window or deleted.
    """

    def __init__(
        self,
        store: MailStore,
        scanner: FolderScanner,
        *,
        lookback_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scanner = scanner
        self._lookback_days = lookback_days
        self._clock = clock

    def resolve(
        self, ref: MailReference, cancel: CancellationToken | None = None
    ) -> MailHandle | None:
        """Return a live handle for ``ref``; the caller must release it."""
        handle: MailHandle | None = None
        if ref.entry_id and ref.store_id:
            handle = self._attempt(
                "entry+store", lambda: self._store.resolve_by_id(ref.entry_id, ref.store_id)
            )
        if handle is None and ref.entry_id:
            handle = self._attempt(
                "entry", lambda: self._store.resolve_by_id(ref.entry_id)
            )
        if handle is None and ref.internet_message_id:
            handle = self.search_by_message_id(ref.internet_message_id, cancel=cancel)
        if handle is None:
            LOGGER.debug(
                "Unable to resolve mail Entry='%s' MsgId='%s'",
                ref.entry_id,
                ref.internet_message_id,
            )
        return handle

    def resolve_snapshot(
        self, ref: MailReference, cancel: CancellationToken | None = None
    ) -> MailSnapshot | None:
        """Resolve ``ref`` and copy the live message, releasing the handle."""
        with acquired(self.resolve(ref, cancel)) as handle:
            if handle is None:
                return None
            return capture_snapshot(self._store, handle)

    def search_by_message_id(
        self,
        message_id: str,
        cutoff: datetime | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> MailHandle | None:
        """Search every store for ``message_id`` within the lookback window."""
        target = fold(message_id)
        if not target:
            return None
        bound = cutoff or lookback_cutoff(self._lookback_days, now=self._clock())
        try:
            stores = list(self._store.list_stores())
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.debug("Listing stores failed during message-id search: %s", exc)
            return None

        with ExitStack() as stack:
            for store in stores:
                stack.callback(release, store)
            for store in stores:
                found = self._search_store(store, target, bound, cancel)
                if found is not None:
                    return self._attempt(
                        "message-id",
                        lambda found=found: self._store.resolve_by_id(
                            found.entry_id, found.store_id
                        ),
                    )
        return None

    # Internal helpers ---------------------------------------------------------
    def _search_store(
        self,
        store: StoreHandle,
        target: str,
        cutoff: datetime,
        cancel: CancellationToken | None,
    ) -> MailSnapshot | None:
        for kind, recursive in MESSAGE_ID_SEARCH_FOLDERS:
            folder = self._attempt(
                f"{kind} folder", lambda kind=kind: self._store.default_folder(store, kind)
            )
            if folder is None:
                continue
            with acquired(folder), closing(
                self._scanner.scan(folder, cutoff, recursive=recursive, cancel=cancel)
            ) as candidates:
                for candidate in candidates:
                    if (
                        candidate.internet_message_id
                        and fold(candidate.internet_message_id) == target
                    ):
                        return candidate
        return None

    def _attempt(self, strategy: str, call: Callable[[], T]) -> T | None:
        try:
            return call()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.debug("Resolution strategy '%s' failed: %s", strategy, exc)
            return None


__all__ = ["IdentityResolver", "MESSAGE_ID_SEARCH_FOLDERS"]
