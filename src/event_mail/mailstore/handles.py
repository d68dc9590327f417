"""Scoped acquisition of mail store handles.

Stores impose hard per-process handle ceilings, so every handle obtained from
an adapter is released on every exit path, including thrown faults.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol, TypeVar

LOGGER = logging.getLogger(__name__)


class Releasable(Protocol):
    def release(self) -> None:
        raise NotImplementedError


H = TypeVar("H", bound=Releasable)


def release(handle: Releasable | None) -> None:
    """Release ``handle``; release faults are logged and not re-raised."""
    if handle is None:
        return
    try:
        handle.release()
    except Exception as exc:  # pylint: disable=broad-exception-caught
        LOGGER.debug("Releasing %r raised; continuing: %s", handle, exc)


@contextmanager
def acquired(handle: H | None) -> Iterator[H | None]:
    """Yield ``handle`` and release it when the scope exits."""
    try:
        yield handle
    finally:
        release(handle)


__all__ = ["Releasable", "acquired", "release"]
