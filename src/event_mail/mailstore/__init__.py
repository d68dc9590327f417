"""Read-only access to the live mailbox through a store adapter."""

from .capabilities import (
    CONVERSATION_FILTER,
    CapabilityState,
    ConversationFilterCapability,
)
from .filters import StoreFilter
from .handles import acquired, release
from .properties import capture_snapshot
from .resolver import IdentityResolver
from .scanner import FolderScanner
from .worker import CancellationToken, OperationCancelled, StoreWorker

__all__ = [
    "CONVERSATION_FILTER",
    "CancellationToken",
    "CapabilityState",
    "ConversationFilterCapability",
    "FolderScanner",
    "IdentityResolver",
    "OperationCancelled",
    "StoreFilter",
    "StoreWorker",
    "acquired",
    "capture_snapshot",
    "release",
]
