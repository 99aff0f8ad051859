"""Fire-and-forget work that must never delay or fail a proxied response."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class BackgroundJob:
    name: str
    run: JobFactory
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundWorker:
    """Bounded queue drained by a small pool of asyncio tasks.

    Job failures are counted and logged; they never reach the caller.
    ``drain`` is the completion barrier used at shutdown.
    """

    def __init__(self, queue_size: int = 1000, workers: int = 2):
        self.queue_size = queue_size
        self.workers = max(1, workers)
        self.failure_count = 0
        self.dropped_count = 0
        self._queue: asyncio.Queue[BackgroundJob] | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        for idx in range(self.workers):
            task = asyncio.create_task(self._worker(idx), name=f"background-worker-{idx}")
            self._tasks.append(task)
        logger.info("Background worker started with queue_size=%s workers=%s", self.queue_size, self.workers)

    def submit(self, name: str, run: JobFactory) -> bool:
        if self._queue is None:
            logger.warning("Background worker not started; dropping job=%s", name)
            self.dropped_count += 1
            return False
        try:
            self._queue.put_nowait(BackgroundJob(name=name, run=run))
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.warning("Background queue full (size=%s). Dropping job=%s", self.queue_size, name)
            return False
        return True

    async def _worker(self, worker_id: int) -> None:
        assert self._queue is not None
        queue = self._queue

        while True:
            job = await queue.get()
            try:
                await job.run()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failure_count += 1
                logger.exception(
                    "Background worker %s failed job=%s failures=%d", worker_id, job.name, self.failure_count
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for queued jobs (bounded), then stop the worker tasks."""
        if self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Background queue drain timed out with %s job(s) pending", self._queue.qsize())

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
