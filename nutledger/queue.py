"""Serialized execution of wallet operations."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

GLOBAL_QUEUE_KEY = "global"


@dataclass
class QueuedTask:
    """Operation waiting to run, with the future its submitter awaits."""

    task_id: str
    func: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    prioritized: bool = False
    created_at: float = field(default_factory=time.time)


class _Lane:
    """One serial execution lane: a fast lane and a normal FIFO."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.prioritized: deque[QueuedTask] = deque()
        self.normal: deque[QueuedTask] = deque()
        self.event = asyncio.Event()
        self.processor: asyncio.Task[None] | None = None
        self.current: QueuedTask | None = None

    def pop(self) -> QueuedTask | None:
        if self.prioritized:
            return self.prioritized.popleft()
        if self.normal:
            return self.normal.popleft()
        return None

    def waiting(self) -> list[QueuedTask]:
        return [*self.prioritized, *self.normal]


class TaskQueue:
    """Runs submitted operations one at a time per lane.

    By default every operation shares one global lane. With ``per_key``
    enabled each key (a mint URL) gets its own lane, so operations on
    different mints may overlap while those on one mint stay serial.
    Prioritized tasks jump ahead of waiting normal tasks but never preempt
    the one already running.
    """

    def __init__(self, *, per_key: bool = False, task_timeout: float | None = 120.0) -> None:
        self.per_key = per_key
        self.task_timeout = task_timeout
        self._lanes: dict[str, _Lane] = {}
        self._running = True

    def _lane(self, key: str | None) -> _Lane:
        lane_key = key if (self.per_key and key) else GLOBAL_QUEUE_KEY
        lane = self._lanes.get(lane_key)
        if lane is None:
            lane = self._lanes[lane_key] = _Lane(lane_key)
        return lane

    def add_task(
        self,
        task_id: str,
        func: Callable[[], Awaitable[Any]],
        *,
        key: str | None = None,
        prioritized: bool = False,
    ) -> asyncio.Future[Any]:
        """Queue ``func`` and return a future for its result."""
        if not self._running:
            raise RuntimeError("Task queue has been shut down")

        lane = self._lane(key)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        queued = QueuedTask(
            task_id=task_id, func=func, future=future, prioritized=prioritized
        )
        (lane.prioritized if prioritized else lane.normal).append(queued)

        if lane.processor is None or lane.processor.done():
            lane.processor = asyncio.create_task(self._process(lane))
        lane.event.set()
        return future

    def add_prioritized_task(
        self,
        task_id: str,
        func: Callable[[], Awaitable[Any]],
        *,
        key: str | None = None,
    ) -> asyncio.Future[Any]:
        return self.add_task(task_id, func, key=key, prioritized=True)

    async def run(
        self,
        task_id: str,
        func: Callable[[], Awaitable[Any]],
        *,
        key: str | None = None,
        prioritized: bool = False,
    ) -> Any:
        """Queue ``func`` and wait for its result."""
        return await self.add_task(task_id, func, key=key, prioritized=prioritized)

    def cancel(self, task_id: str) -> bool:
        """Drop a task that has not started yet.

        Returns:
            True if a waiting task was removed
        """
        for lane in self._lanes.values():
            for pending in (lane.prioritized, lane.normal):
                for queued in pending:
                    if queued.task_id == task_id:
                        pending.remove(queued)
                        queued.future.cancel()
                        logger.debug("Cancelled queued task %s", task_id)
                        return True
        return False

    @property
    def size(self) -> int:
        """Number of tasks waiting to run."""
        return sum(len(lane.waiting()) for lane in self._lanes.values())

    @property
    def pending_task_ids(self) -> list[str]:
        return [q.task_id for lane in self._lanes.values() for q in lane.waiting()]

    @property
    def running_task_ids(self) -> list[str]:
        return [lane.current.task_id for lane in self._lanes.values() if lane.current]

    async def shutdown(self, *, drop_pending: bool = True) -> None:
        """Stop accepting tasks and wait for the lanes to drain.

        With ``drop_pending`` waiting tasks are cancelled; running tasks
        always finish.
        """
        self._running = False
        processors = []
        for lane in self._lanes.values():
            if drop_pending:
                for queued in lane.waiting():
                    queued.future.cancel()
                lane.prioritized.clear()
                lane.normal.clear()
            lane.event.set()
            if lane.processor is not None and not lane.processor.done():
                processors.append(lane.processor)
        if processors:
            await asyncio.gather(*processors)

    async def _process(self, lane: _Lane) -> None:
        """Background task working through one lane."""
        while True:
            queued = lane.pop()
            if queued is None:
                if not self._running:
                    return
                lane.event.clear()
                await lane.event.wait()
                continue

            if queued.future.done():
                # submitter stopped waiting
                continue

            lane.current = queued
            try:
                async with asyncio.timeout(self.task_timeout):
                    result = await queued.func()
            except TimeoutError:
                logger.error(
                    "Task %s timed out after %ss", queued.task_id, self.task_timeout
                )
                if not queued.future.done():
                    queued.future.set_exception(
                        TimeoutError(
                            f"Task {queued.task_id} timed out after {self.task_timeout}s"
                        )
                    )
            except asyncio.CancelledError:
                queued.future.cancel()
                raise
            except Exception as e:
                logger.debug("Task %s failed: %s", queued.task_id, e)
                if not queued.future.done():
                    queued.future.set_exception(e)
            else:
                if not queued.future.done():
                    queued.future.set_result(result)
            finally:
                lane.current = None
