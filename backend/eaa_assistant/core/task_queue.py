"""In-process background work queue.

Fact extraction, frustration analysis and escalation notices run after the
answer has been returned. Jobs are submitted here instead of being spawned
with bare ``asyncio.create_task`` calls, so each one gets retries, failure
logging and an orderly drain at shutdown.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class BackgroundJob:
    """A unit of deferred work."""

    name: str
    factory: JobFactory
    max_attempts: int = 1
    context: dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


class BackgroundTaskQueue:
    """asyncio.Queue drained by a fixed pool of worker tasks."""

    def __init__(self, workers: int = 2, max_attempts: int = 2, retry_delay: float = 0.5) -> None:
        self._worker_count = max(1, workers)
        self._default_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._queue: asyncio.Queue[BackgroundJob] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._direct: set[asyncio.Task[None]] = set()
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending_direct(self) -> int:
        """Jobs scheduled on the loop while the queue was not started."""
        return len(self._direct)

    async def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"background-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Background queue started", extra={"workers": self._worker_count})

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, optionally waiting for queued jobs first."""
        if drain and self._direct:
            await asyncio.gather(*self._direct, return_exceptions=True)
        if not self._workers:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(
            "Background queue stopped",
            extra={"completed": self.completed, "failed": self.failed},
        )

    def submit(
        self,
        name: str,
        factory: JobFactory,
        *,
        max_attempts: int | None = None,
        **context: Any,
    ) -> BackgroundJob:
        """Queue a job. ``factory`` is called once per attempt to build the coroutine.

        When the queue has not been started (CLI scripts, some tests) the job
        is scheduled directly on the running loop with the same retry and
        logging behaviour.
        """
        job = BackgroundJob(
            name=name,
            factory=factory,
            max_attempts=max_attempts or self._default_attempts,
            context=context,
        )
        if self._queue is not None and self._workers:
            self._queue.put_nowait(job)
        else:
            task = asyncio.create_task(self._run(job), name=f"background-{name}")
            self._direct.add(task)
            task.add_done_callback(self._direct.discard)
        return job

    async def join(self) -> None:
        """Wait until every queued or directly scheduled job has been processed."""
        if self._queue is not None:
            await self._queue.join()
        if self._direct:
            await asyncio.gather(*self._direct, return_exceptions=True)

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: BackgroundJob) -> None:
        while job.attempts < job.max_attempts:
            job.attempts += 1
            try:
                await job.factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if job.attempts < job.max_attempts:
                    logger.warning(
                        "Background job failed, retrying",
                        extra={
                            "job": job.name,
                            "attempt": job.attempts,
                            "error": str(e),
                            **job.context,
                        },
                    )
                    await asyncio.sleep(self._retry_delay * job.attempts)
                    continue
                self.failed += 1
                logger.error(
                    "Background job failed permanently",
                    extra={
                        "job": job.name,
                        "attempts": job.attempts,
                        "error": str(e),
                        **job.context,
                    },
                    exc_info=True,
                )
                return
            self.completed += 1
            logger.debug("Background job completed", extra={"job": job.name, **job.context})
            return
