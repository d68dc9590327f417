"""Command-line entry point for event-mail."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from event_mail.core import AppSettings, configure_logging, load_app_settings
from event_mail.core.models import Event, RefreshProgress
from event_mail.mailstore import FolderScanner, IdentityResolver, StoreWorker
from event_mail.storage import SqliteEventRepository
from event_mail.sync import (
    CatchUpOrchestrator,
    ConversationCatchUp,
    EventViewState,
    MailValidator,
    SubjectDiscovery,
    catch_up_open_events,
)
from event_mail.transport import ImapError, ImapMailStore


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Event mail correlation engine")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "events", "refresh", "catch-up", "mark-read"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "event_id",
        nargs="?",
        default=None,
        help="Event identifier for the refresh and mark-read commands.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "info":
        print("event-mail is ready. Configure IMAP settings to get started.")
        print(f"IMAP host: {settings.imap.host}")
        print(f"Database path: {settings.storage.db_path}")
        return 0
    if command == "events":
        _list_events(settings)
        return 0
    if command == "catch-up":
        return _run_catch_up(settings)
    if not args.event_id:
        print(f"The {command} command requires an event id.")
        return 2
    if command == "mark-read":
        return _mark_read(settings, args.event_id)
    return asyncio.run(_run_refresh(settings, args.event_id))


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _describe(event: Event) -> str:
    unread = sum(1 for mail in event.active_mails() if mail.is_new)
    return (
        f"{event.event_id}  {event.status:<8}  "
        f"{len(event.active_mails()):>4} mail(s)  {unread:>3} new  {event.title}"
    )


def _list_events(settings: AppSettings) -> None:
    with SqliteEventRepository(settings.storage) as repository:
        events = repository.list_events()
    if not events:
        print("No events found.")
        return
    print(f"Showing {len(events)} event(s):")
    for event in events:
        print(_describe(event))


def _mark_read(settings: AppSettings, event_id: str) -> int:
    with SqliteEventRepository(settings.storage) as repository:
        event = repository.mark_all_read(event_id)
    if event is None:
        print(f"Event {event_id} not found.")
        return 1
    print(f"Marked {len(event.mails)} mail(s) of event {event_id} as read.")
    return 0


def _run_catch_up(settings: AppSettings) -> int:
    """Run a conversation catch-up pass over every open event."""
    try:
        with (
            ImapMailStore(settings.imap) as store,
            SqliteEventRepository(settings.storage) as repository,
        ):
            catch_up = ConversationCatchUp(
                store,
                FolderScanner(store),
                repository,
                lookback_days=settings.sync.conversation_lookback_days,
                full_history_days=settings.sync.full_history_days,
            )
            triggered = catch_up_open_events(catch_up, repository)
    except ImapError as exc:
        print(f"Catch-up failed: {exc}")
        return 1
    print(f"Caught up {triggered} open event(s).")
    return 0


async def _run_refresh(settings: AppSettings, event_id: str) -> int:
    """Refresh one event against the mailbox, printing progress."""

    def report(progress: RefreshProgress) -> None:
        print(f"[{progress.percent:5.1f}%] {progress.message}")

    try:
        with (
            ImapMailStore(settings.imap) as store,
            SqliteEventRepository(settings.storage) as repository,
            StoreWorker() as worker,
        ):
            # The adapter is connected on this thread but only used from the worker.
            scanner = FolderScanner(store)
            resolver = IdentityResolver(
                store,
                scanner,
                lookback_days=settings.sync.message_id_lookback_days,
            )
            view = EventViewState(repository.get_by_id(event_id))
            if view.current is None:
                print(f"Event {event_id} not found.")
                return 1
            orchestrator = CatchUpOrchestrator(
                repository,
                worker,
                view,
                validator=MailValidator(resolver, repository),
                discovery=SubjectDiscovery(
                    store,
                    scanner,
                    repository,
                    lookback_days=settings.sync.subject_lookback_days,
                ),
                catch_up=ConversationCatchUp(
                    store,
                    scanner,
                    repository,
                    lookback_days=settings.sync.conversation_lookback_days,
                    full_history_days=settings.sync.full_history_days,
                ),
                settings=settings.sync,
                progress_callback=report,
            )
            outcome = await orchestrator.refresh_event(event_id)
    except ImapError as exc:
        print(f"Refresh failed: {exc}")
        return 1

    print(
        f"Refresh {outcome.state}: discovered={outcome.discovered} "
        f"repaired={outcome.repaired}"
    )
    if view.current is not None:
        print(_describe(view.current))
    return 0


if __name__ == "__main__":
    main()
