"""Single-owner worker context for mail store calls."""

from __future__ import annotations

import asyncio
import contextvars
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from types import TracebackType
from typing import Any, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised on the worker thread when a cancellation token fires."""


class CancellationToken:
    """Thread-safe cancellation flag checked at worker suspension points."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


class StoreWorker:
    """Runs every store call on one dedicated thread.

    Store handles are not safe to use from several threads, so the executor
    has exactly one worker; jobs from successive refreshes queue behind each
    other and never overlap.
    """

    def __init__(self, name: str = "mail-store") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> StoreWorker:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # Public API ---------------------------------------------------------------
    async def run(
        self,
        func: Callable[..., T],
        *args: Any,
        token: CancellationToken | None = None,
        **kwargs: Any,
    ) -> T:
        """Run ``func`` on the worker thread and await its result.

        If the awaiting task is cancelled, ``token`` is fired and the job is
        awaited to completion before :class:`asyncio.CancelledError` propagates.
        The job runs in a copy of the caller's context, so log records from
        the worker carry the same event id.
        """
        context = contextvars.copy_context()
        job = asyncio.wrap_future(
            self._executor.submit(context.run, partial(func, *args, **kwargs))
        )
        try:
            return await asyncio.shield(job)
        except asyncio.CancelledError:
            if token is not None:
                token.cancel()
            try:
                await job
            except OperationCancelled:
                LOGGER.debug("Worker job %s stopped after cancellation", func)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                LOGGER.debug("Worker job %s failed after cancellation: %s", func, exc)
            raise

    def close(self) -> None:
        """Stop accepting jobs and wait for the running one."""
        self._executor.shutdown(wait=True)


__all__ = ["CancellationToken", "OperationCancelled", "StoreWorker"]
