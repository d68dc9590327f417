"""Subject canonicalisation used for coarse correlation."""

from __future__ import annotations

REPLY_FORWARD_PREFIXES: tuple[str, ...] = (
    "RE:",
    "FW:",
    "FWD:",
    "回复:",
    "转发:",
    "回覆:",
    "轉寄:",
    "回复：",
    "转发：",
    "回覆：",
    "轉寄：",
)

_FOLDED_PREFIXES = tuple(prefix.casefold() for prefix in REPLY_FORWARD_PREFIXES)


def normalize_subject(subject: str | None) -> str:
    """Strip leading reply/forward markers, e.g. ``"RE: FW: X"`` -> ``"X"``.

    Prefixes are matched case-insensitively and removed repeatedly until none
    remains, trimming whitespace after each removal.
    """
    if subject is None:
        return ""
    normalized = subject.strip()
    changed = True
    while changed and normalized:
        changed = False
        folded = normalized.casefold()
        for prefix in _FOLDED_PREFIXES:
            if folded.startswith(prefix):
                normalized = normalized[len(prefix) :].strip()
                changed = True
                break
    return normalized


__all__ = ["REPLY_FORWARD_PREFIXES", "normalize_subject"]
