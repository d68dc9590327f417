"""One-shot waits on the repository change feed."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection
from types import TracebackType

from ..core.interfaces import ChangeFeed
from ..core.models import ChangeReason, EventChange, fold

LOGGER = logging.getLogger(__name__)

ChangePredicate = Callable[[EventChange], bool]

CATCH_UP_REASONS = frozenset({ChangeReason.MAIL_APPENDED, ChangeReason.UPDATED})


def catch_up_confirmed(
    event_id: str, conversation_ids: Collection[str]
) -> ChangePredicate:
    """Predicate for a change confirming a conversation catch-up of ``event_id``."""
    event_key = fold(event_id)
    tracked = {fold(value) for value in conversation_ids if value and value.strip()}

    def predicate(change: EventChange) -> bool:
        if fold(change.event.event_id) != event_key:
            return False
        if change.reason not in CATCH_UP_REASONS:
            return False
        if tracked and not any(
            fold(value) in tracked for value in change.event.conversation_ids
        ):
            return False
        return True

    return predicate


class ChangeWaiter:
    """Subscribe on entry, resolve on the first matching change, unsubscribe on exit.

    Notifications may arrive on any thread; the result is handed to the event
    loop that entered the waiter.
    """

    def __init__(self, feed: ChangeFeed, predicate: ChangePredicate) -> None:
        self._feed = feed
        self._predicate = predicate
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[EventChange] | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def __enter__(self) -> ChangeWaiter:
        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        self._unsubscribe = self._feed.subscribe(self._on_change)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def wait(self, timeout: float) -> EventChange | None:
        """Return the matching change, or ``None`` if ``timeout`` elapses first."""
        if self._future is None:
            raise RuntimeError("ChangeWaiter must be entered before waiting")
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except TimeoutError:
            return None

    def _on_change(self, change: EventChange) -> None:
        if self._loop is None or not self._predicate(change):
            return
        try:
            self._loop.call_soon_threadsafe(self._resolve, change)
        except RuntimeError:
            LOGGER.debug("Change arrived after the waiting loop closed")

    def _resolve(self, change: EventChange) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_result(change)


async def wait_for_change(
    feed: ChangeFeed, predicate: ChangePredicate, timeout: float
) -> EventChange | None:
    """Wait up to ``timeout`` seconds for the next change matching ``predicate``."""
    with ChangeWaiter(feed, predicate) as waiter:
        return await waiter.wait(timeout)


__all__ = [
    "CATCH_UP_REASONS",
    "ChangePredicate",
    "ChangeWaiter",
    "catch_up_confirmed",
    "wait_for_change",
]
