"""Keep the mailbox selection in step with the event's selected mail."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence

from ..core.models import MailReference, fold

LOGGER = logging.getLogger(__name__)

SelectInMailbox = Callable[[MailReference], Awaitable[None]]


class PreviewSynchronizer:
    """Debounced two-way selection mirror between an event and the mailbox.

    Selecting a member schedules a mailbox selection after ``debounce_seconds``;
    a newer selection cancels the pending one. Mailbox selection changes made
    while this object drives the mailbox are ignored. Any other mailbox change
    is user-driven: it cancels the pending preview and is mirrored back onto
    the event selection without scheduling a new preview.
    """

    def __init__(
        self,
        select_in_mailbox: SelectInMailbox,
        *,
        debounce_seconds: float = 0.3,
    ) -> None:
        self._select_in_mailbox = select_in_mailbox
        self._debounce_seconds = debounce_seconds
        self._selected: MailReference | None = None
        self._pending: asyncio.Task[None] | None = None
        self._programmatic = False
        self._suppress = False

    @property
    def selected(self) -> MailReference | None:
        return self._selected

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def select(self, mail: MailReference | None) -> None:
        """Select ``mail`` in the event and schedule its preview."""
        self._cancel_pending()
        self._selected = mail
        if mail is None or self._suppress:
            return
        self._pending = asyncio.get_running_loop().create_task(self._preview(mail))

    def on_mailbox_selection_changed(
        self, entry_id: str | None, members: Sequence[MailReference]
    ) -> MailReference | None:
        """Mirror a mailbox-side selection onto the event selection.

        Returns the member now selected, or ``None`` when the change was
        ignored or matched no member.
        """
        if self._programmatic:
            return None
        self._cancel_pending()
        if not entry_id:
            return None
        key = fold(entry_id)
        match = next(
            (
                mail
                for mail in members
                if not mail.is_removed and mail.entry_id and fold(mail.entry_id) == key
            ),
            None,
        )
        if match is None:
            return None
        self._suppress = True
        try:
            self.select(match)
        finally:
            self._suppress = False
        LOGGER.debug("Mirrored mailbox selection %s onto the event", entry_id)
        return match

    async def cancel(self) -> None:
        """Cancel the pending preview and wait for it to stop."""
        pending = self._pending
        self._cancel_pending()
        if pending is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await pending

    # Internal helpers ---------------------------------------------------------
    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def _preview(self, mail: MailReference) -> None:
        await asyncio.sleep(self._debounce_seconds)
        self._programmatic = True
        try:
            await self._select_in_mailbox(mail)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.warning("Preview of %s failed: %s", mail.entry_id, exc)
        finally:
            self._programmatic = False


__all__ = ["PreviewSynchronizer", "SelectInMailbox"]
