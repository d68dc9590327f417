"""Subject-driven discovery of messages that bypassed conversation tracking."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import closing
from datetime import datetime

from ..core.datetime_utils import lookback_cutoff, utc_now
from ..core.interfaces import EventRepository, MailStore, MailStoreError
from ..core.models import Event, FolderKind
from ..correlation.matcher import MailMatcher
from ..correlation.membership import merge_snapshot
from ..mailstore.handles import acquired
from ..mailstore.scanner import FolderScanner
from ..mailstore.worker import CancellationToken

LOGGER = logging.getLogger(__name__)

# The top-level inbox recurses into its sub-folders; sent and deleted do not.
DISCOVERY_FOLDERS: tuple[tuple[FolderKind, bool], ...] = (
    (FolderKind.INBOX, True),
    (FolderKind.SENT, False),
    (FolderKind.DELETED, False),
)


class SubjectDiscovery:
    """Scan the default store and submit every matching candidate to the event."""

    def __init__(
        self,
        store: MailStore,
        scanner: FolderScanner,
        repository: EventRepository,
        matcher: MailMatcher | None = None,
        *,
        lookback_days: int = 14,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scanner = scanner
        self._repository = repository
        self._matcher = matcher or MailMatcher()
        self._lookback_days = lookback_days
        self._clock = clock

    def discover(self, event: Event, cancel: CancellationToken | None = None) -> int:
        """Return the number of messages added to ``event``.

        Runs on the store worker. ``event`` is a working copy; it is replaced
        by the repository's copy after every addition so a message seen in two
        folders is added only once.
        """
        if not event.related_subjects:
            return 0
        cutoff = lookback_cutoff(self._lookback_days, now=self._clock())
        LOGGER.info(
            "Searching related subjects for event %s since %s",
            event.event_id,
            cutoff.isoformat(),
        )

        try:
            default_store = self._store.default_store()
        except MailStoreError as exc:
            LOGGER.warning("Default store unavailable for discovery: %s", exc)
            return 0
        if default_store is None:
            return 0

        added = 0
        with acquired(default_store):
            for kind, recursive in DISCOVERY_FOLDERS:
                try:
                    folder = self._store.default_folder(default_store, kind)
                except MailStoreError as exc:
                    LOGGER.warning("Folder %s unavailable for discovery: %s", kind, exc)
                    continue
                if folder is None:
                    continue
                with acquired(folder), closing(
                    self._scanner.scan(folder, cutoff, recursive=recursive, cancel=cancel)
                ) as candidates:
                    for candidate in candidates:
                        if not self._matcher.matches(candidate, event):
                            continue
                        updated = self._repository.add_or_merge_mail(
                            event.event_id, candidate
                        )
                        added += 1
                        if updated is not None:
                            event = updated
                        else:
                            merge_snapshot(event, candidate)
        LOGGER.info("Subject discovery added %s message(s) to event %s", added, event.event_id)
        return added


__all__ = ["DISCOVERY_FOLDERS", "SubjectDiscovery"]
