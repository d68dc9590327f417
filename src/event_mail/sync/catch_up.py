"""Conversation catch-up: pull tracked threads from the mailbox into events."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Collection, Iterable
from contextlib import closing
from datetime import datetime

from ..core.datetime_utils import lookback_cutoff, utc_now
from ..core.interfaces import CatchUpTrigger, EventRepository, MailStore, MailStoreError
from ..core.models import EventStatus, FolderKind, fold
from ..correlation.matcher import MailMatcher
from ..mailstore.handles import acquired
from ..mailstore.scanner import FolderScanner
from ..mailstore.worker import CancellationToken

LOGGER = logging.getLogger(__name__)

CATCH_UP_FOLDERS: tuple[tuple[FolderKind, bool], ...] = (
    (FolderKind.INBOX, True),
    (FolderKind.SENT, False),
    (FolderKind.DELETED, False),
)


def distinct_conversation_ids(values: Iterable[str | None]) -> list[str]:
    """Trimmed, non-blank conversation ids without case-insensitive duplicates."""
    seen: set[str] = set()
    distinct: list[str] = []
    for value in values:
        if not value or not value.strip():
            continue
        key = fold(value)
        if key in seen:
            continue
        seen.add(key)
        distinct.append(value.strip())
    return distinct


class ConversationCatchUp(CatchUpTrigger):
    """Scan for members of tracked conversations and merge them into the event.

    Every completed run stamps the event through :meth:`EventRepository.update`,
    so a waiter always observes an ``Updated`` change even when nothing new
    was found.
    """

    def __init__(
        self,
        store: MailStore,
        scanner: FolderScanner,
        repository: EventRepository,
        matcher: MailMatcher | None = None,
        *,
        lookback_days: int = 14,
        full_history_days: int = 365,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._store = store
        self._scanner = scanner
        self._repository = repository
        self._matcher = matcher or MailMatcher()
        self._lookback_days = lookback_days
        self._full_history_days = full_history_days
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[str, list[str], bool]] = {}

    def trigger_catch_up(
        self,
        event_id: str,
        conversation_ids: Collection[str],
        run_immediately: bool,
        timeout: float | None = None,
        use_full_history: bool = False,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Run now, or queue for :meth:`run_pending` when not immediate."""
        ids = distinct_conversation_ids(conversation_ids)
        if not ids:
            return
        if not run_immediately:
            with self._lock:
                key = fold(event_id)
                _, queued, full = self._pending.get(key, (event_id, [], False))
                self._pending[key] = (
                    event_id,
                    distinct_conversation_ids([*queued, *ids]),
                    full or use_full_history,
                )
            LOGGER.debug("Queued catch-up for event %s (%s ids)", event_id, len(ids))
            return
        self.run(
            event_id,
            ids,
            use_full_history=use_full_history,
            timeout=timeout,
            cancel=cancel,
        )

    def run_pending(self, cancel: CancellationToken | None = None) -> int:
        """Run every queued catch-up; return the number of messages added."""
        with self._lock:
            queued = list(self._pending.values())
            self._pending.clear()
        added = 0
        for event_id, ids, full in queued:
            added += self.run(event_id, ids, use_full_history=full, cancel=cancel)
        return added

    def run(
        self,
        event_id: str,
        conversation_ids: Collection[str],
        *,
        use_full_history: bool = False,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> int:
        """Catch up ``conversation_ids`` for one event; return messages added.

        ``cancel`` aborts the scan with :class:`OperationCancelled`. Once
        ``timeout`` seconds have passed the remaining candidates are skipped
        and the event is stamped with what was found so far.
        """
        event = self._repository.get_by_id(event_id)
        if event is None:
            LOGGER.info("Catch-up skipped: event %s not found", event_id)
            return 0
        days = self._full_history_days if use_full_history else self._lookback_days
        cutoff = lookback_cutoff(days, now=self._clock())
        deadline = time.monotonic() + timeout if timeout is not None else None
        LOGGER.info(
            "Catch-up for event %s: %s conversation(s) since %s",
            event_id,
            len(conversation_ids),
            cutoff.isoformat(),
        )

        def out_of_time() -> bool:
            return deadline is not None and time.monotonic() > deadline

        added = 0
        try:
            default_store = self._store.default_store()
        except MailStoreError as exc:
            LOGGER.warning("Default store unavailable for catch-up: %s", exc)
            default_store = None

        with acquired(default_store):
            for conversation_id in distinct_conversation_ids(conversation_ids):
                if default_store is None:
                    break
                if out_of_time():
                    LOGGER.info("Catch-up for event %s hit its time budget", event_id)
                    break
                for kind, recursive in CATCH_UP_FOLDERS:
                    if out_of_time():
                        break
                    try:
                        folder = self._store.default_folder(default_store, kind)
                    except MailStoreError as exc:
                        LOGGER.warning("Folder %s unavailable for catch-up: %s", kind, exc)
                        continue
                    if folder is None:
                        continue
                    with acquired(folder), closing(
                        self._scanner.scan(
                            folder,
                            cutoff,
                            conversation_id,
                            recursive=recursive,
                            cancel=cancel,
                        )
                    ) as candidates:
                        for candidate in candidates:
                            if out_of_time():
                                break
                            if not self._matcher.matches(candidate, event):
                                continue
                            updated = self._repository.add_or_merge_mail(
                                event_id, candidate
                            )
                            if updated is not None:
                                event = updated
                            added += 1

        latest = self._repository.get_by_id(event_id)
        if latest is not None:
            latest.last_updated_on = self._clock()
            self._repository.update(latest)
        LOGGER.info("Catch-up for event %s added %s message(s)", event_id, added)
        return added


def catch_up_open_events(
    trigger: CatchUpTrigger,
    repository: EventRepository,
    cancel: CancellationToken | None = None,
) -> int:
    """Trigger conversation catch-up for every open event.

    Subject discovery is deliberately not part of this pass; it only runs on
    a manual refresh of a single event.
    """
    triggered = 0
    for event in repository.list_events():
        if cancel is not None:
            cancel.raise_if_cancelled()
        if event.status != EventStatus.OPEN:
            continue
        ids = distinct_conversation_ids(event.conversation_ids)
        if not ids:
            continue
        trigger.trigger_catch_up(
            event.event_id, ids, run_immediately=True, cancel=cancel
        )
        triggered += 1
    LOGGER.info("Catch-up pass triggered for %s open event(s)", triggered)
    return triggered


__all__ = [
    "CATCH_UP_FOLDERS",
    "ConversationCatchUp",
    "catch_up_open_events",
    "distinct_conversation_ids",
]
