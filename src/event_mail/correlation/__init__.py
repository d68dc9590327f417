"""Correlation rules linking mailbox messages to events."""

from .matcher import MailMatcher, MatchReason
from .membership import find_member, is_member, merge_snapshot
from .participants import canonicalize_address, participants_of
from .subjects import normalize_subject

__all__ = [
    "MailMatcher",
    "MatchReason",
    "canonicalize_address",
    "find_member",
    "is_member",
    "merge_snapshot",
    "normalize_subject",
    "participants_of",
]
