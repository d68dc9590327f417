"""Correlate mailbox messages into long-lived events and keep them in sync."""

__version__ = "0.1.0"
