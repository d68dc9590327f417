"""Participant address canonicalisation."""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import getaddresses

from ..core.models import MailReference, MailSnapshot


def canonicalize_address(raw: str | None) -> str | None:
    """Return the bare, lower-cased address from a header-style value.

    ``"Jane Doe <Jane@Example.com>"`` becomes ``"jane@example.com"``. Values
    without an ``@`` (exchange-style display names) are kept, lower-cased.
    """
    if raw is None:
        return None
    cleaned = raw.strip()
    if not cleaned:
        return None
    parsed = getaddresses([cleaned])
    if parsed:
        name, address = parsed[0]
        candidate = address or name
        if candidate and candidate.strip():
            return candidate.strip().lower()
    return cleaned.lower()


def canonical_participants(values: Iterable[str | None]) -> frozenset[str]:
    """Canonicalise every address in ``values``, dropping blanks."""
    participants: set[str] = set()
    for value in values:
        canonical = canonicalize_address(value)
        if canonical:
            participants.add(canonical)
    return frozenset(participants)


def participants_of(mail: MailSnapshot | MailReference) -> frozenset[str]:
    """Sender and recipients of ``mail`` as canonical addresses."""
    return canonical_participants((mail.sender, *mail.recipients))


def intersects(participants: Iterable[str], tracked: Iterable[str]) -> bool:
    """Return ``True`` when at least one canonical address is shared."""
    tracked_keys = {value.strip().lower() for value in tracked if value}
    return any(value in tracked_keys for value in participants)


__all__ = [
    "canonical_participants",
    "canonicalize_address",
    "intersects",
    "participants_of",
]
