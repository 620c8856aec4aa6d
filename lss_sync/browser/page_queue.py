# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Serialized access to the shared browser page.

Every DOM operation is submitted as a coroutine function taking the page.
A single worker task runs them one after another in submission order, so
no two pollers ever drive the page at the same time.

Usage:
    queue = PageOperationQueue(page)
    queue.start()
    html = await queue.run(lambda page: page.content())
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from lss_sync.exceptions import PageQueueClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PageOperation = Callable[[Any], Awaitable[T]]


class PageOperationQueue:
    """Single-consumer queue owning a Playwright page."""

    def __init__(self, page: Any = None) -> None:
        self.page = page
        self._queue: asyncio.Queue[tuple[PageOperation[Any], asyncio.Future[Any]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Operations waiting for the worker."""
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker task (idempotent)."""
        if self._closed:
            raise PageQueueClosedError("Page queue is closed")
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(), name="page-operation-queue")

    async def run(self, operation: PageOperation[T]) -> T:
        """
        Submit an operation and wait for its result.

        Args:
            operation: Coroutine function receiving the page

        Returns:
            Whatever the operation returns; exceptions are re-raised here
        """
        if self._closed:
            raise PageQueueClosedError("Page queue is closed")
        self.start()

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put((operation, future))
        return await future

    async def _run_worker(self) -> None:
        while True:
            operation, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await operation(self.page)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(PageQueueClosedError("Page queue is closed"))
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Stop the worker and fail all operations still waiting."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        dropped = 0
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._queue.task_done()
            if not future.done():
                future.set_exception(PageQueueClosedError("Page queue is closed"))
                dropped += 1
        if dropped:
            logger.debug("Failed %d pending page operations on close", dropped)
