"""
Tests for the serialized page operation queue.
"""

import asyncio
from typing import Any

import pytest

from lss_sync.browser.page_queue import PageOperationQueue
from lss_sync.exceptions import PageQueueClosedError


class TestPageOperationQueue:
    """Tests for PageOperationQueue."""

    @pytest.mark.asyncio
    async def test_returns_operation_result(self) -> None:
        """Test the caller receives what the operation returned."""
        queue = PageOperationQueue(page="page")

        async def read(page: Any) -> str:
            return f"content of {page}"

        try:
            assert await queue.run(read) == "content of page"
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_operations_never_overlap(self) -> None:
        """Test concurrent submitters are served one at a time in order."""
        queue = PageOperationQueue(page=object())
        active = 0
        max_active = 0
        order: list[int] = []

        def make_operation(index: int) -> Any:
            async def operation(page: Any) -> int:
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                order.append(index)
                active -= 1
                return index

            return operation

        try:
            results = await asyncio.gather(*(queue.run(make_operation(i)) for i in range(5)))
        finally:
            await queue.close()

        assert results == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_error_propagates_and_worker_continues(self) -> None:
        """Test a failing operation raises at its caller only."""
        queue = PageOperationQueue(page=object())

        async def fail(page: Any) -> None:
            raise ValueError("navigation failed")

        async def succeed(page: Any) -> str:
            return "ok"

        try:
            with pytest.raises(ValueError, match="navigation failed"):
                await queue.run(fail)
            assert await queue.run(succeed) == "ok"
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_close_fails_pending_operations(self) -> None:
        """Test operations waiting behind a running one fail on close."""
        queue = PageOperationQueue(page=object())
        started = asyncio.Event()

        async def block(page: Any) -> None:
            started.set()
            await asyncio.sleep(60)

        async def never(page: Any) -> None:
            raise AssertionError("must not run")

        running = asyncio.create_task(queue.run(block))
        waiting = asyncio.create_task(queue.run(never))
        await started.wait()
        await asyncio.sleep(0)

        await queue.close()

        with pytest.raises(PageQueueClosedError):
            await running
        with pytest.raises(PageQueueClosedError):
            await waiting

    @pytest.mark.asyncio
    async def test_run_after_close(self) -> None:
        """Test submitting to a closed queue raises immediately."""
        queue = PageOperationQueue(page=object())
        await queue.close()

        async def read(page: Any) -> None:
            return None

        assert queue.closed is True
        with pytest.raises(PageQueueClosedError):
            await queue.run(read)
