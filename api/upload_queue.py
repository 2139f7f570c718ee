"""
Bounded-concurrency scheduler for video publish jobs.

One UploadQueue is built by the application factory and stored on app.state;
nothing here is a module-level singleton. Jobs are zero-argument coroutine
functions. Each enqueue returns the asyncio.Task running it, so callers can
await the result or ignore it; a failing job is always logged and its
exception stays retrievable from the task.

Queued-but-not-started jobs live only in memory and are lost on restart.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]


class UploadQueue:
    """At most `concurrency` job bodies run at once; waiters start in roughly submission order."""

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._running = 0
        self._submitted = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> int:
        """Number of job bodies executing right now."""
        return self._running

    @property
    def pending(self) -> int:
        """Number of submitted jobs still waiting for a slot."""
        return len(self._tasks) - self._running

    async def _run(self, job_fn: JobFn, job_number: int):
        async with self._semaphore:
            self._running += 1
            try:
                return await job_fn()
            except asyncio.CancelledError:
                logger.warning(f"Upload job #{job_number} cancelled")
                raise
            except Exception:
                logger.exception(f"Upload job #{job_number} failed")
                raise
            finally:
                self._running -= 1

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Mark the exception as retrieved; it was already logged in _run
        if not task.cancelled():
            task.exception()

    def enqueue(self, job_fn: JobFn) -> asyncio.Task:
        """
        Submit a job. Must be called from inside a running event loop.

        Returns:
            The task wrapping the job; awaiting it yields the job's result or raises its error
        """
        self._submitted += 1
        task = asyncio.create_task(self._run(job_fn, self._submitted), name=f"upload-job-{self._submitted}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def join(self) -> None:
        """Wait until every job submitted so far (and any they submit) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding jobs, cancelling whatever is still running after timeout."""
        if not self._tasks:
            return
        logger.info(f"Upload queue shutting down with {len(self._tasks)} jobs outstanding")
        _, leftovers = await asyncio.wait(list(self._tasks), timeout=timeout)
        if not leftovers:
            return
        logger.warning(f"Cancelling {len(leftovers)} upload jobs still running after {timeout}s")
        for task in leftovers:
            task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)
