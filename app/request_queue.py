"""Single-flight queue for upstream requests.

Every outbound call to the music API goes through one ``RequestQueue`` so
the upstream never sees more than one concurrent request from this
process.  Work is dispatched strictly in the order it was added.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[], Awaitable[Any]]


class QueuedRequest:
    """A deferred unit of work and the future its caller is waiting on."""

    __slots__ = ("work", "future", "label")

    def __init__(self, work: Work, future: asyncio.Future, label: str = ""):
        self.work = work
        self.future = future
        self.label = label


class RequestQueue:
    """FIFO dispatcher with a concurrency ceiling of one.

    ``add()`` is synchronous: the request is queued (and, if the queue is
    idle, dispatched) before it returns.  The capacity check and the
    ``active_count`` increment happen in the same step, with no await in
    between.
    """

    max_concurrent = 1

    def __init__(self) -> None:
        self._pending: Deque[QueuedRequest] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add(self, work: Callable[[], Awaitable[T]], *, label: str = "") -> "asyncio.Future[T]":
        """Queue *work*; the returned future settles with its outcome.

        Enqueued work is never cancelled: if the caller stops waiting, the
        work still runs and its result is dropped.
        """
        loop = asyncio.get_running_loop()
        item = QueuedRequest(work, loop.create_future(), label)
        self._pending.append(item)
        if label:
            logger.debug("Queued request: %s (%d pending)", label, len(self._pending))
        self._process_next()
        return item.future

    def _process_next(self) -> None:
        if self._active >= self.max_concurrent or not self._pending:
            return
        item = self._pending.popleft()
        self._active += 1
        task = asyncio.get_running_loop().create_task(self._run(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, item: QueuedRequest) -> None:
        try:
            result = await item.work()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
            elif not item.future.cancelled():
                logger.debug("Dropping error for settled request %s: %s", item.label, exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._process_next()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is active or pending (used on shutdown)."""

        async def _wait() -> None:
            while self._active or self._pending:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait(), timeout=timeout)
