"""Cooperative cancellation token shared by one run invocation."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from loguru import logger

from tether.core.errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    """One-way, idempotent cancel flag with an optional reason.

    The flag is checked at every suspension point of a run: before each
    transport request, between stream chunks, before each tool execution
    and while waiting for a confirmation.
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._cancelled = False
        self._event: asyncio.Event | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Later calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        logger.debug(f"Cancellation requested: {reason or 'no reason given'}")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self._reason!r})"


async def race(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the pending work is cancelled (best-effort abort) and
    ``CancellationError`` is raised.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        work.cancel()
        watcher.cancel()
        raise

    if work in done:
        watcher.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Abandoned operation failed after cancel: {e}")
    raise CancellationError(token.reason)
