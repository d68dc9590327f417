"""Validation and repair of drifted mailbox identifiers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.interfaces import EventRepository, MailStoreError
from ..core.models import Event, MailReference, MailSnapshot, ValidationReport, fold
from ..correlation.membership import find_member
from ..mailstore.resolver import IdentityResolver
from ..mailstore.worker import CancellationToken

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def _differs(current: str | None, resolved: str | None) -> bool:
    return fold(current or "") != fold(resolved or "")


class MailValidator:
    """Re-resolve every active member and repair stale identifiers.

    Unresolvable members are left untouched (never auto-removed). A member
    whose live entry id or store id drifted is re-added through the
    repository, which merges it by message id or entry id; the unread flag it
    had before the repair is restored afterwards.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        repository: EventRepository,
    ) -> None:
        self._resolver = resolver
        self._repository = repository

    def validate(
        self,
        event: Event,
        cancel: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> ValidationReport:
        """Validate ``event``'s non-removed members; runs on the store worker."""
        report = ValidationReport()
        members = event.active_mails()
        total = len(members)
        for index, mail in enumerate(members, start=1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if progress is not None:
                progress(index, total)
            report.checked += 1
            try:
                snapshot = self._resolver.resolve_snapshot(mail, cancel)
            except MailStoreError as exc:
                LOGGER.warning(
                    "Mail validation fault for event %s entry %s: %s",
                    event.event_id,
                    mail.entry_id,
                    exc,
                )
                continue
            if snapshot is None:
                report.unresolved += 1
                LOGGER.info(
                    "Mail validation failed for event %s Entry='%s' MsgId='%s'",
                    event.event_id,
                    mail.entry_id,
                    mail.internet_message_id,
                )
                continue
            entry_drift = _differs(mail.entry_id, snapshot.entry_id)
            store_drift = bool(snapshot.store_id) and _differs(
                mail.store_id, snapshot.store_id
            )
            if entry_drift or store_drift:
                if self._repair(event.event_id, mail, snapshot):
                    report.repaired += 1
        LOGGER.info(
            "Validated event %s: checked=%s unresolved=%s repaired=%s",
            event.event_id,
            report.checked,
            report.unresolved,
            report.repaired,
        )
        return report

    def _repair(self, event_id: str, mail: MailReference, snapshot: MailSnapshot) -> bool:
        was_new = mail.is_new
        LOGGER.info(
            "Refreshing identifiers for event %s MsgId='%s' NewEntry='%s'",
            event_id,
            mail.internet_message_id,
            snapshot.entry_id,
        )
        updated = self._repository.add_or_merge_mail(event_id, snapshot)
        if updated is None:
            return False
        refreshed = find_member(
            updated,
            internet_message_id=mail.internet_message_id,
            entry_id=snapshot.entry_id,
        )
        if refreshed is None:
            return False
        if refreshed.is_new != was_new:
            refreshed.is_new = was_new
            self._repository.update(updated)
        return True


__all__ = ["MailValidator", "ProgressCallback"]
