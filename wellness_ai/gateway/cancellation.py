"""Cancellation tokens for gateway calls.

A token is handed to ``ResilientGateway.call``. Cancelling it aborts the
in-flight adapter task (and with it the underlying httpx request), wakes any
admission wait or retry backoff, and removes queued items linked to it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from wellness_ai.gateway.errors import ProviderTimeoutError, RequestCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback %r failed", callback)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback when the token is cancelled (immediately if it already is)."""
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self, provider_id: str = "") -> None:
        if self.cancelled:
            raise RequestCancelledError(self.reason, provider_id)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    aw: Awaitable[T],
    token: CancelToken | None = None,
    timeout: float | None = None,
    provider_id: str = "",
) -> T:
    """Await ``aw`` unless the token is cancelled or the timeout elapses first.

    A result that arrives together with a cancellation wins: work the provider
    already did (and billed) is never thrown away.
    """
    token = token or CancelToken()
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())

    try:
        done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    if waiter in done:
        raise RequestCancelledError(token.reason, provider_id)

    waiter.cancel()
    raise ProviderTimeoutError(f"Timeout after {timeout}s", provider_id)
