"""Transport adapters for external mailbox providers."""

from .imap_store import ImapError, ImapMailStore

__all__ = ["ImapError", "ImapMailStore"]
