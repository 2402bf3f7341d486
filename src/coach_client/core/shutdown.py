"""Cooperative cancellation for in-flight setup and retry sequences."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Protocol, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")


class StopSignal(Protocol):
    """Protocol for stop signals checked by long-running loops."""

    def is_set(self) -> bool: ...


class CancellationToken:
    """
    One-shot cancellation flag honored at every suspension point of a run.

    A fresh token is created for each initialize/connect run, so cancelling
    it only affects the run it was handed to.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by cleanup")

    async def sleep(self, delay_s: float) -> None:
        """Sleep for delay_s, raising OperationCancelled as soon as the token is cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay_s, 0.0))
        except asyncio.TimeoutError:
            return
        raise OperationCancelled("Operation cancelled by cleanup")

    async def guard(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await `awaitable`, racing it against cancellation and an optional timeout.

        Raises:
            OperationCancelled: the token was cancelled first.
            asyncio.TimeoutError: the timeout elapsed first.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if waiter in done:
            raise OperationCancelled("Operation cancelled by cleanup")
        raise asyncio.TimeoutError(f"Timed out after {timeout}s")
