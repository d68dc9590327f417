"""Refresh pipeline keeping events in step with the live mailbox."""

from .catch_up import ConversationCatchUp, catch_up_open_events
from .changes import ChangeWaiter, catch_up_confirmed, wait_for_change
from .discovery import SubjectDiscovery
from .orchestrator import CatchUpOrchestrator
from .preview import PreviewSynchronizer
from .validator import MailValidator
from .view import EventView, EventViewState

__all__ = [
    "CatchUpOrchestrator",
    "ChangeWaiter",
    "ConversationCatchUp",
    "EventView",
    "EventViewState",
    "MailValidator",
    "PreviewSynchronizer",
    "SubjectDiscovery",
    "catch_up_confirmed",
    "catch_up_open_events",
    "wait_for_change",
]
