"""Cooperative cancellation shared by every suspension point of a task.

The loop hands one CancellationToken to the stream read, the tool await
and the approval await. Cancelling the token wakes whichever of them is
pending; the awaited work is cancelled and OperationCancelled is raised in
its place.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """The task was cancelled while suspended."""


async def _next_item(iterator: AsyncIterator[T]) -> tuple[bool, T | None]:
    try:
        return False, await anext(iterator)
    except StopAsyncIteration:
        return True, None


def _discard(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if asyncio.iscoroutine(awaitable) and close is not None:
        close()


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first."""
        if self.cancelled:
            _discard(awaitable)
            raise OperationCancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        await asyncio.wait({task})
        raise OperationCancelled()

    async def iterate(self, stream: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield items from `stream` until it ends or the token fires."""
        iterator = aiter(stream)
        try:
            while True:
                finished, item = await self.run(_next_item(iterator))
                if finished:
                    return
                yield item  # type: ignore[misc]
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
