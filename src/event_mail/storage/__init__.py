"""Persistence backends for events."""

from .sqlite import SqliteEventRepository

__all__ = ["SqliteEventRepository"]
