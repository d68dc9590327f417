"""Decides whether a live candidate belongs to an event."""

from __future__ import annotations

import logging
from enum import StrEnum

from ..core.models import Event, MailSnapshot
from .membership import is_member
from .participants import intersects, participants_of
from .subjects import normalize_subject

LOGGER = logging.getLogger(__name__)


class MatchReason(StrEnum):
    """Rule that accepted a candidate."""

    CONVERSATION = "conversation"
    SUBJECT_PARTICIPANT = "subject+participant"
    REPLY_CHAIN = "reply-chain"


class MailMatcher:
    """Ordered correlation rules; the first rule that holds wins.

    A generic subject alone never matches: subject matches also require a
    shared participant.
    """

    def match_reason(self, candidate: MailSnapshot, event: Event) -> MatchReason | None:
        """Return the rule accepting ``candidate`` or ``None``.

        Candidates that are already members (including soft-removed ones) are
        never matched, which keeps repeated scans idempotent.
        """
        if is_member(event, candidate):
            return None

        if event.is_conversation_tracked(candidate.conversation_id):
            return MatchReason.CONVERSATION

        subject = normalize_subject(candidate.subject)
        if (
            subject
            and subject in event.related_subjects
            and intersects(participants_of(candidate), event.participants)
        ):
            return MatchReason.SUBJECT_PARTICIPANT

        if (
            candidate.in_reply_to
            and candidate.in_reply_to in event.processed_message_ids
        ):
            return MatchReason.REPLY_CHAIN

        return None

    def matches(self, candidate: MailSnapshot, event: Event) -> bool:
        reason = self.match_reason(candidate, event)
        if reason is not None:
            LOGGER.debug(
                "Candidate %s matched event %s by %s",
                candidate.internet_message_id or candidate.entry_id,
                event.event_id,
                reason,
            )
        return reason is not None


__all__ = ["MailMatcher", "MatchReason"]
