"""Single-flight, cancellable refresh of an event against the live mailbox."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..core.config import SyncSettings
from ..core.interfaces import CatchUpTrigger, EventRepository
from ..core.logging import event_context
from ..core.models import Event, RefreshOutcome, RefreshProgress, RefreshState
from ..mailstore.worker import CancellationToken, OperationCancelled, StoreWorker
from .catch_up import distinct_conversation_ids
from .changes import ChangeWaiter, catch_up_confirmed
from .discovery import SubjectDiscovery
from .validator import MailValidator
from .view import EventView

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[RefreshProgress], None]

CATCH_UP_DONE = 30.0
DISCOVERY_DONE = 50.0
RELOAD_DONE = 60.0
VALIDATION_DONE = 90.0


class CatchUpOrchestrator:
    """Compose catch-up, discovery, reload, validation and commit.

    Only one refresh runs at a time: a new request cancels the in-flight one
    and waits for it to wind down before starting. Repository writes made by
    a cancelled refresh stay committed; only its final view swap is dropped.
    Faults before the commit stage are logged and degrade; commit faults
    propagate to the caller.
    """

    def __init__(
        self,
        repository: EventRepository,
        worker: StoreWorker,
        view: EventView,
        *,
        validator: MailValidator,
        discovery: SubjectDiscovery | None = None,
        catch_up: CatchUpTrigger | None = None,
        settings: SyncSettings | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._repository = repository
        self._worker = worker
        self._view = view
        self._validator = validator
        self._discovery = discovery
        self._catch_up = catch_up
        self._settings = settings or SyncSettings()
        self._progress_callback = progress_callback
        self._state = RefreshState.IDLE
        self._generation = 0
        self._inflight: asyncio.Task[RefreshOutcome] | None = None
        self._running: set[asyncio.Task[RefreshOutcome]] = set()

    @property
    def state(self) -> RefreshState:
        return self._state

    async def refresh_event(self, event_id: str) -> RefreshOutcome:
        """Refresh ``event_id``, superseding any refresh already in flight.

        The new request takes the slot before anything is awaited, so any
        number of back-to-back requests leave exactly one refresh running.
        A refresh superseded by a newer request returns an outcome in the
        ``Cancelled`` state instead of raising.
        """
        superseded = self._cancel_running()
        self._generation += 1
        generation = self._generation
        task = asyncio.create_task(self._run(event_id, generation, superseded))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return RefreshOutcome(event_id=event_id, state=RefreshState.CANCELLED)
        finally:
            if self._inflight is task:
                self._inflight = None
                self._state = RefreshState.IDLE

    async def cancel(self) -> None:
        """Cancel the in-flight refresh, if any, and wait for it to stop."""
        superseded = self._cancel_running()
        if superseded:
            await asyncio.wait(superseded)

    # Pipeline -----------------------------------------------------------------
    def _cancel_running(self) -> list[asyncio.Task[RefreshOutcome]]:
        """Cancel every unfinished refresh task and return them.

        A task that is already winding down is not cancelled again, so its
        store job is still drained before it finishes.
        """
        pending = [task for task in self._running if not task.done()]
        fresh = [task for task in pending if not task.cancelling()]
        if fresh:
            LOGGER.info("Cancelling %s in-flight refresh(es)", len(fresh))
        for task in fresh:
            task.cancel()
        return pending

    def _set_state(self, generation: int, state: RefreshState) -> None:
        if generation == self._generation:
            self._state = state

    async def _run(
        self,
        event_id: str,
        generation: int,
        superseded: list[asyncio.Task[RefreshOutcome]],
    ) -> RefreshOutcome:
        with event_context(event_id):
            return await self._pipeline(event_id, generation, superseded)

    async def _pipeline(
        self,
        event_id: str,
        generation: int,
        superseded: list[asyncio.Task[RefreshOutcome]],
    ) -> RefreshOutcome:
        if superseded:
            await asyncio.wait(superseded)
        token = CancellationToken()
        self._set_state(generation, RefreshState.RUNNING)
        outcome = RefreshOutcome(event_id=event_id, state=RefreshState.RUNNING)
        LOGGER.info("Refresh started for event %s", event_id)
        try:
            event = self._repository.get_by_id(event_id)
            if event is None:
                LOGGER.warning("Refresh skipped: event %s not found", event_id)
                outcome.state = RefreshState.FAILED
                self._set_state(generation, RefreshState.FAILED)
                return outcome
            self._report(event_id, 5, "Preparing to refresh")

            conversation_ids = distinct_conversation_ids(event.conversation_ids)
            if conversation_ids:
                self._report(
                    event_id, 5, f"Syncing {len(conversation_ids)} conversation(s)"
                )
                await self._await_catch_up(event_id, conversation_ids, token)
            self._report(event_id, CATCH_UP_DONE, "Conversation catch-up finished")

            if event.related_subjects and self._discovery is not None:
                self._report(event_id, CATCH_UP_DONE, "Searching related subjects")
                current = self._repository.get_by_id(event_id) or event
                outcome.discovered = await self._discover(
                    self._discovery, current, token
                )
            self._report(event_id, DISCOVERY_DONE, "Reloading event data")

            refreshed = self._repository.get_by_id(event_id)
            self._report(event_id, RELOAD_DONE, "Validating mail availability")
            if refreshed is None:
                LOGGER.warning("Refresh unable to reload event %s", event_id)
                outcome.state = RefreshState.FAILED
                self._set_state(generation, RefreshState.FAILED)
                return outcome

            outcome.repaired = await self._validate(refreshed, token)
            self._report(event_id, VALIDATION_DONE, "Updating view")

            final = self._repository.get_by_id(event_id) or refreshed
            outcome.event = final
            outcome.committed = self._commit(final, generation)
            outcome.state = RefreshState.COMPLETED
            self._set_state(generation, RefreshState.COMPLETED)
            self._report(event_id, 100, "Refresh completed")
            LOGGER.info(
                "Refresh completed for event %s (mails=%s, committed=%s)",
                event_id,
                len(final.mails),
                outcome.committed,
            )
            return outcome
        except asyncio.CancelledError:
            token.cancel()
            self._set_state(generation, RefreshState.CANCELLED)
            LOGGER.info("Refresh for event %s cancelled", event_id)
            raise
        except Exception:
            self._set_state(generation, RefreshState.FAILED)
            LOGGER.exception("Refresh for event %s failed", event_id)
            raise

    async def _await_catch_up(
        self, event_id: str, conversation_ids: list[str], token: CancellationToken
    ) -> None:
        if self._catch_up is None:
            return
        loop = asyncio.get_running_loop()
        timeout = self._settings.catch_up_timeout_seconds
        deadline = loop.time() + timeout
        trigger = self._catch_up
        with ChangeWaiter(
            self._repository, catch_up_confirmed(event_id, conversation_ids)
        ) as waiter:
            try:
                await self._worker.run(
                    trigger.trigger_catch_up,
                    event_id,
                    conversation_ids,
                    True,
                    timeout,
                    True,
                    cancel=token,
                    token=token,
                )
            except OperationCancelled:
                raise asyncio.CancelledError() from None
            except Exception:  # pylint: disable=broad-exception-caught
                LOGGER.exception("Catch-up trigger failed for event %s", event_id)
                return
            # The scan and the confirmation share one time budget.
            change = await waiter.wait(max(0.0, deadline - loop.time()))
        if change is None:
            LOGGER.info(
                "Catch-up for event %s not confirmed within %.1fs; continuing",
                event_id,
                timeout,
            )
        else:
            LOGGER.info("Catch-up for event %s confirmed (%s)", event_id, change.reason)

    async def _discover(
        self, discovery: SubjectDiscovery, event: Event, token: CancellationToken
    ) -> int:
        try:
            return await self._worker.run(discovery.discover, event, token, token=token)
        except OperationCancelled:
            raise asyncio.CancelledError() from None
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception("Subject discovery failed for event %s", event.event_id)
            return 0

    async def _validate(self, event: Event, token: CancellationToken) -> int:
        loop = asyncio.get_running_loop()
        event_id = event.event_id
        span = VALIDATION_DONE - RELOAD_DONE

        def progress(current: int, total: int) -> None:
            percent = RELOAD_DONE + span * (current / total) if total else VALIDATION_DONE
            loop.call_soon_threadsafe(
                self._report, event_id, percent, f"Validating mail {current}/{total}"
            )

        try:
            report = await self._worker.run(
                self._validator.validate, event, token, progress, token=token
            )
        except OperationCancelled:
            raise asyncio.CancelledError() from None
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception("Mail validation failed for event %s", event_id)
            return 0
        return report.repaired

    def _commit(self, event: Event, generation: int) -> bool:
        if generation != self._generation:
            LOGGER.info(
                "Refresh for event %s superseded; discarding results", event.event_id
            )
            return False
        if not self._view.is_showing(event.event_id):
            LOGGER.info(
                "Refresh for event %s discarded: view switched to another event",
                event.event_id,
            )
            return False
        return self._view.swap(event)

    def _report(self, event_id: str, percent: float, message: str) -> None:
        if self._progress_callback is None:
            return
        try:
            self._progress_callback(RefreshProgress(event_id, percent, message))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.warning("Progress callback failed: %s", exc)


__all__ = ["CatchUpOrchestrator", "ProgressCallback"]
