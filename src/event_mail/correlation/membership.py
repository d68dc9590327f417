"""Membership lookup and merge rules for event mail lists."""

from __future__ import annotations

from ..core.models import Event, MailReference, MailSnapshot, fold
from .participants import participants_of
from .subjects import normalize_subject


def find_member(
    event: Event,
    *,
    internet_message_id: str | None,
    entry_id: str | None,
) -> MailReference | None:
    """Locate a member by message id, falling back to entry id.

    Soft-removed members are returned too; callers decide what removal means.
    """
    if internet_message_id and internet_message_id.strip():
        key = fold(internet_message_id)
        for mail in event.mails:
            if mail.internet_message_id and fold(mail.internet_message_id) == key:
                return mail
    if entry_id and entry_id.strip():
        key = fold(entry_id)
        for mail in event.mails:
            if fold(mail.entry_id) == key:
                return mail
    return None


def is_member(event: Event, mail: MailSnapshot) -> bool:
    return (
        find_member(
            event,
            internet_message_id=mail.internet_message_id,
            entry_id=mail.entry_id,
        )
        is not None
    )


def merge_snapshot(event: Event, mail: MailSnapshot) -> tuple[MailReference, bool]:
    """Merge ``mail`` into ``event`` in place.

    Returns the member and whether it was appended (``False`` on merge).
    """
    processed = bool(
        mail.internet_message_id
        and mail.internet_message_id in event.processed_message_ids
    )
    existing = find_member(
        event, internet_message_id=mail.internet_message_id, entry_id=mail.entry_id
    )
    if existing is not None:
        existing.entry_id = mail.entry_id
        if mail.store_id:
            existing.store_id = mail.store_id
        existing.internet_message_id = (
            mail.internet_message_id or existing.internet_message_id
        )
        existing.conversation_id = mail.conversation_id or existing.conversation_id
        existing.subject = mail.subject if mail.subject is not None else existing.subject
        existing.sender = mail.sender or existing.sender
        existing.recipients = mail.recipients or existing.recipients
        existing.received_at = mail.received_at or existing.received_at
        existing.is_removed = False
        if not processed:
            existing.is_new = True
        member, appended = existing, False
    else:
        member = MailReference(
            entry_id=mail.entry_id,
            store_id=mail.store_id,
            internet_message_id=mail.internet_message_id,
            conversation_id=mail.conversation_id,
            subject=mail.subject,
            sender=mail.sender,
            recipients=mail.recipients,
            received_at=mail.received_at,
            is_new=not processed,
        )
        event.mails.append(member)
        appended = True

    event.track_conversation(mail.conversation_id)
    subject = normalize_subject(mail.subject)
    if subject:
        event.related_subjects.add(subject)
    for address in participants_of(mail):
        event.participants.add(address)
    if mail.internet_message_id:
        event.not_found_message_ids.discard(mail.internet_message_id)
    return member, appended


__all__ = ["find_member", "is_member", "merge_snapshot"]
