"""Tests for the single-flight refresh orchestrator."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest
from fakes import FakeMailStore, RecordingView, SlowMailStore, fixed_clock, make_mail

from event_mail.core.config import StorageSettings, SyncSettings
from event_mail.core.models import Event, FolderKind, RefreshProgress, RefreshState
from event_mail.mailstore import (
    ConversationFilterCapability,
    FolderScanner,
    IdentityResolver,
    StoreWorker,
)
from event_mail.storage import SqliteEventRepository
from event_mail.sync import (
    CatchUpOrchestrator,
    ConversationCatchUp,
    MailValidator,
    SubjectDiscovery,
)


@dataclass
class Harness:
    store: FakeMailStore
    repository: SqliteEventRepository
    worker: StoreWorker
    scanner: FolderScanner
    event: Event

    def orchestrator(self, view, **overrides) -> CatchUpOrchestrator:
        resolver = IdentityResolver(
            self.store, self.scanner, lookback_days=7, clock=fixed_clock
        )
        options = {
            "validator": MailValidator(resolver, self.repository),
            "discovery": SubjectDiscovery(
                self.store, self.scanner, self.repository, clock=fixed_clock
            ),
            "catch_up": ConversationCatchUp(
                self.store, self.scanner, self.repository, clock=fixed_clock
            ),
            "settings": SyncSettings(catch_up_timeout_seconds=2.0),
        }
        options.update(overrides)
        return CatchUpOrchestrator(self.repository, self.worker, view, **options)


@pytest.fixture
def harness(tmp_path: Path) -> Iterator[Harness]:
    store = FakeMailStore()
    inbox = store.folder(FolderKind.INBOX)
    seed = store.deliver(
        inbox, make_mail("e-1", "<m1@x>", conversation_id="c-1", subject="Budget")
    )
    repository = SqliteEventRepository(StorageSettings(db_path=tmp_path / "events.db"))
    event = repository.create_from_mail(seed)
    worker = StoreWorker()
    scanner = FolderScanner(store, capability=ConversationFilterCapability())
    yield Harness(store, repository, worker, scanner, event)
    worker.close()
    repository.close()


class BlockingTrigger:
    """Catch-up trigger that blocks its first call until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def trigger_catch_up(
        self, event_id, conversation_ids, run_immediately, timeout=None,
        use_full_history=False, cancel=None,
    ) -> None:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        self.gate.wait(5.0)
        with self._lock:
            self.active -= 1


def test_refresh_runs_all_stages_and_commits(harness: Harness) -> None:
    store = harness.store
    inbox = store.folder(FolderKind.INBOX)
    store.deliver(
        store.folder(FolderKind.SENT),
        make_mail("e-2", "<m2@x>", conversation_id="c-1", subject="RE: Budget"),
    )
    store.deliver(
        store.add_child(inbox, "Finance"),
        make_mail(
            "e-3",
            "<m3@x>",
            conversation_id="c-7",
            subject="FW: Budget",
            sender="carol@example.com",
            recipients=("alice@example.com",),
        ),
    )
    store.move("e-1", store.folder(FolderKind.DELETED), "e-1-deleted")
    view = RecordingView(harness.event.event_id)
    progress: list[RefreshProgress] = []
    orchestrator = harness.orchestrator(view, progress_callback=progress.append)

    outcome = asyncio.run(orchestrator.refresh_event(harness.event.event_id))

    assert outcome.state is RefreshState.COMPLETED
    assert outcome.committed
    assert outcome.discovered == 1
    assert outcome.repaired == 1
    assert orchestrator.state is RefreshState.IDLE
    assert len(view.swapped) == 1
    committed = view.swapped[0]
    assert [mail.entry_id for mail in committed.mails] == ["e-1-deleted", "e-2", "e-3"]
    assert not committed.mails[0].is_new
    percents = [item.percent for item in progress]
    assert percents[0] == 5
    assert percents[-1] == 100
    assert percents == sorted(percents)
    assert store.open_handles == 0


def test_results_are_discarded_when_view_moved_on(harness: Harness) -> None:
    harness.store.deliver(
        harness.store.folder(FolderKind.SENT),
        make_mail("e-2", "<m2@x>", conversation_id="c-1"),
    )
    view = RecordingView("some-other-event")

    outcome = asyncio.run(
        harness.orchestrator(view).refresh_event(harness.event.event_id)
    )

    assert outcome.state is RefreshState.COMPLETED
    assert not outcome.committed
    assert view.swapped == []
    stored = harness.repository.get_by_id(harness.event.event_id)
    assert stored is not None
    assert len(stored.mails) == 2


def test_new_refresh_supersedes_in_flight_one(harness: Harness) -> None:
    trigger = BlockingTrigger()
    view = RecordingView(harness.event.event_id)
    orchestrator = harness.orchestrator(
        view,
        catch_up=trigger,
        settings=SyncSettings(catch_up_timeout_seconds=0.2),
    )
    event_id = harness.event.event_id

    async def scenario():
        first = asyncio.create_task(orchestrator.refresh_event(event_id))
        await asyncio.get_running_loop().run_in_executor(None, trigger.entered.wait, 5.0)
        second = asyncio.create_task(orchestrator.refresh_event(event_id))
        await asyncio.sleep(0.05)
        trigger.gate.set()
        return await first, await second

    first, second = asyncio.run(scenario())

    assert first.state is RefreshState.CANCELLED
    assert second.state is RefreshState.COMPLETED
    assert second.committed
    assert len(view.swapped) == 1
    assert trigger.calls == 2
    assert trigger.max_active == 1
    assert orchestrator.state is RefreshState.IDLE


def test_back_to_back_requests_leave_one_refresh_running(harness: Harness) -> None:
    trigger = BlockingTrigger()
    view = RecordingView(harness.event.event_id)
    orchestrator = harness.orchestrator(
        view,
        catch_up=trigger,
        settings=SyncSettings(catch_up_timeout_seconds=0.2),
    )
    event_id = harness.event.event_id

    async def scenario():
        first = asyncio.create_task(orchestrator.refresh_event(event_id))
        await asyncio.get_running_loop().run_in_executor(None, trigger.entered.wait, 5.0)
        second = asyncio.create_task(orchestrator.refresh_event(event_id))
        third = asyncio.create_task(orchestrator.refresh_event(event_id))
        await asyncio.sleep(0.05)
        trigger.gate.set()
        return await first, await second, await third

    first, second, third = asyncio.run(scenario())

    assert first.state is RefreshState.CANCELLED
    assert second.state is RefreshState.CANCELLED
    assert not second.committed
    assert third.state is RefreshState.COMPLETED
    assert third.committed
    assert trigger.calls == 2
    assert trigger.max_active == 1
    assert len(view.swapped) == 1
    assert orchestrator.state is RefreshState.IDLE


def test_external_cancellation_propagates(harness: Harness) -> None:
    trigger = BlockingTrigger()
    view = RecordingView(harness.event.event_id)
    orchestrator = harness.orchestrator(
        view,
        catch_up=trigger,
        settings=SyncSettings(catch_up_timeout_seconds=0.2),
    )

    async def scenario() -> None:
        task = asyncio.create_task(orchestrator.refresh_event(harness.event.event_id))
        await asyncio.get_running_loop().run_in_executor(None, trigger.entered.wait, 5.0)
        task.cancel()
        trigger.gate.set()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())

    assert view.swapped == []
    assert orchestrator.state is RefreshState.IDLE


def test_stage_faults_degrade_but_commit_faults_propagate(harness: Harness) -> None:
    class BrokenTrigger:
        def trigger_catch_up(self, *args, **kwargs) -> None:
            raise RuntimeError("catch-up exploded")

    class BrokenDiscovery:
        def discover(self, event, cancel=None) -> int:
            raise RuntimeError("discovery exploded")

    class BrokenView(RecordingView):
        def swap(self, event) -> bool:
            raise RuntimeError("view is gone")

    event_id = harness.event.event_id
    degraded = harness.orchestrator(
        RecordingView(event_id), catch_up=BrokenTrigger(), discovery=BrokenDiscovery()
    )
    outcome = asyncio.run(degraded.refresh_event(event_id))
    assert outcome.state is RefreshState.COMPLETED
    assert outcome.committed

    failing = harness.orchestrator(BrokenView(event_id))
    with pytest.raises(RuntimeError, match="view is gone"):
        asyncio.run(failing.refresh_event(event_id))
    assert failing.state is RefreshState.IDLE


def test_missing_event_fails_without_raising(harness: Harness) -> None:
    view = RecordingView("ghost")

    outcome = asyncio.run(harness.orchestrator(view).refresh_event("ghost"))

    assert outcome.state is RefreshState.FAILED
    assert view.swapped == []


def test_cancel_stops_conversation_scan_midway(tmp_path: Path) -> None:
    store = SlowMailStore(delay=0.02)
    inbox = store.folder(FolderKind.INBOX)
    seed = store.deliver(inbox, make_mail("e-0", "<m0@x>", conversation_id="c-1"))
    for index in range(1, 41):
        store.deliver(
            inbox,
            make_mail(f"e-{index}", f"<m{index}@x>", conversation_id="c-1", age_days=2),
        )
    scanner = FolderScanner(store, capability=ConversationFilterCapability())

    with (
        SqliteEventRepository(StorageSettings(db_path=tmp_path / "events.db")) as repository,
        StoreWorker() as worker,
    ):
        event = repository.create_from_mail(seed)
        orchestrator = CatchUpOrchestrator(
            repository,
            worker,
            RecordingView(event.event_id),
            validator=MailValidator(
                IdentityResolver(store, scanner, clock=fixed_clock), repository
            ),
            catch_up=ConversationCatchUp(store, scanner, repository, clock=fixed_clock),
            settings=SyncSettings(catch_up_timeout_seconds=30.0),
        )

        async def scenario():
            task = asyncio.create_task(orchestrator.refresh_event(event.event_id))
            await asyncio.get_running_loop().run_in_executor(
                None, store.first_read.wait, 5.0
            )
            await orchestrator.cancel()
            reads_at_cancel = store.reads
            return await task, reads_at_cancel

        outcome, reads_at_cancel = asyncio.run(scenario())
        stored = repository.get_by_id(event.event_id)

    assert outcome.state is RefreshState.CANCELLED
    assert reads_at_cancel < 41
    assert store.reads == reads_at_cancel
    assert stored is not None
    assert len(stored.mails) < 41
    assert store.open_handles == 0
