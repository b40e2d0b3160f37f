"""Background task queue for fire-and-forget work such as thumbnail generation."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from common.constants import THUMBNAIL_WORKERS
from common.logging_config import get_logger

logger = get_logger(__name__)

Job = Callable[[], Awaitable[None]]


class BackgroundTaskQueue:
    """
    Fixed pool of worker tasks draining an asyncio.Queue.

    Jobs run detached from the request that submitted them. A failing job is
    logged and the worker moves on.
    """

    def __init__(self, workers: int = THUMBNAIL_WORKERS, name: str = "background"):
        self.workers = workers
        self.name = name
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning(f"Task queue {self.name} already running")
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run(index)) for index in range(self.workers)
        ]
        logger.info(f"Started task queue {self.name} ({self.workers} workers)")

    async def stop(self) -> None:
        """Stop the workers. Jobs still queued are dropped."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Stopped task queue {self.name}")

    def submit(self, job: Job, description: str = "job") -> bool:
        """
        Queue a job without waiting for it.

        Returns:
            False if the queue isn't running and the job was dropped
        """
        if not self._running or self._queue is None:
            logger.warning(f"Task queue {self.name} not running, dropping {description}")
            return False

        self._queue.put_nowait((job, description))
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self, index: int) -> None:
        while self._running:
            try:
                job, description = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                await job()
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception as e:
                logger.error(f"Background {description} failed: {e}", exc_info=True)
            self._queue.task_done()
