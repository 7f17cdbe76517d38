"""Work queue for asynchronous skill and unit execution.

Enables non-blocking skill execution with worker pools. Two logical queues
exist, one per job type, each drained by its own workers:

- execute-skill: drives a whole skill execution level by level
- execute-unit: runs one workflow unit on the workload engine

An execute-skill job holds its worker while it waits for a level, so the pools
are kept apart: waiting skill jobs can never occupy the workers that unit jobs
need to make progress.

Delayed jobs (retry backoff) are held by an event-loop timer and put on their
queue when the delay expires, so the handler that scheduled them returns
immediately and releases its worker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import JobType

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]


class QueuedJob(BaseModel):
    """Job envelope travelling through the queue."""

    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:8]}")
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=datetime.now)


class WorkQueue:
    """Async job queues with one worker pool per job type.

    Architecture:
    - One asyncio.Queue and one set of worker coroutines per job type
    - One handler per job type, registered before start()
    - Non-blocking enqueue; optional delay handled with loop timers
    - Handler exceptions are logged and absorbed so workers keep running

    Usage:
        queue = WorkQueue(skill_workers=2, unit_workers=4)
        queue.register_handler(JobType.EXECUTE_SKILL, executor.process_execution)
        queue.register_handler(JobType.EXECUTE_UNIT, executor.process_workflow)
        await queue.start()

        await queue.enqueue(JobType.EXECUTE_SKILL, {"execution_id": "..."})
    """

    def __init__(self, skill_workers: int = 2, unit_workers: int = 4):
        """Initialize work queue.

        Args:
            skill_workers: Concurrent execute-skill jobs. Further skill jobs wait
                in their queue until a worker frees up.
            unit_workers: Concurrent execute-unit jobs.
        """
        pool_sizes = {JobType.EXECUTE_SKILL: skill_workers, JobType.EXECUTE_UNIT: unit_workers}
        for job_type, size in pool_sizes.items():
            if size < 1:
                raise ValueError(f"{job_type.value} pool needs at least 1 worker, got {size}")

        self._pool_sizes = pool_sizes
        self._queues: dict[JobType, asyncio.Queue[QueuedJob]] = {
            job_type: asyncio.Queue() for job_type in JobType
        }
        self._handlers: dict[JobType, JobHandler] = {}
        self._workers: dict[JobType, list[asyncio.Task[None]]] = {
            job_type: [] for job_type in JobType
        }
        self._delayed: set[asyncio.TimerHandle] = set()
        self._running = False
        self._stats = {"processed_jobs": 0, "failed_jobs": 0, "delayed_jobs": 0}

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        """Register the coroutine invoked for a job type."""
        self._handlers[job_type] = handler

    async def start(self) -> None:
        """Start worker pools."""
        if self._running:
            logger.warning("WorkQueue already running")
            return

        missing = [t.value for t in JobType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for job types: {', '.join(missing)}")

        self._running = True
        for job_type, size in self._pool_sizes.items():
            self._workers[job_type] = [
                asyncio.create_task(self._worker(job_type, worker_id=i)) for i in range(size)
            ]
        logger.info(
            "WorkQueue started with "
            + ", ".join(f"{size} {t.value} workers" for t, size in self._pool_sizes.items())
        )

    async def stop(self, wait_for_completion: bool = True) -> None:
        """Stop worker pools.

        Args:
            wait_for_completion: If True, wait for queued and delayed jobs to be
                processed. Otherwise delayed jobs are dropped.
        """
        if not self._running:
            return

        if wait_for_completion:
            while True:
                for queue in self._queues.values():
                    await queue.join()
                if not self._delayed and all(q.empty() for q in self._queues.values()):
                    break
                await asyncio.sleep(0.05)

        if self._delayed:
            logger.warning(f"WorkQueue dropped {len(self._delayed)} delayed jobs on stop")
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()

        self._running = False

        for job_type, workers in self._workers.items():
            for worker in workers:
                worker.cancel()
                try:
                    await worker
                except asyncio.CancelledError:
                    pass
            self._workers[job_type] = []

        logger.info(
            f"WorkQueue stopped. Stats: {self._stats['processed_jobs']} processed, "
            f"{self._stats['failed_jobs']} failed, {self._stats['delayed_jobs']} delayed"
        )

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        delay_ms: int | None = None,
    ) -> str:
        """Submit a job to its type's queue, optionally after a delay.

        Args:
            job_type: Which queue and handler process the job
            payload: JSON-compatible job payload
            delay_ms: Milliseconds to wait before the job becomes visible to workers

        Returns:
            Job ID

        Raises:
            RuntimeError: If queue not started
        """
        if not self._running:
            raise RuntimeError("WorkQueue not started. Call start() first.")

        job = QueuedJob(job_type=job_type, payload=payload)
        queue = self._queues[job_type]

        if delay_ms and delay_ms > 0:
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle | None = None

            def _release() -> None:
                if handle is not None:
                    self._delayed.discard(handle)
                if self._running:
                    queue.put_nowait(job)

            handle = loop.call_later(delay_ms / 1000, _release)
            self._delayed.add(handle)
            self._stats["delayed_jobs"] += 1
            logger.debug(f"Job scheduled: {job.id} ({job_type.value}, delay={delay_ms}ms)")
        else:
            await queue.put(job)
            logger.debug(f"Job enqueued: {job.id} ({job_type.value})")

        return job.id

    def get_stats(self) -> dict[str, Any]:
        """Runtime statistics (ephemeral, reset on restart).

        Top-level sizes are totals; `pools` breaks them down per job type.
        """
        pools = {
            job_type.value: {
                "workers": self._pool_sizes[job_type],
                "active_workers": len([w for w in self._workers[job_type] if not w.done()]),
                "queue_size": self._queues[job_type].qsize(),
            }
            for job_type in JobType
        }
        return {
            **self._stats,
            "queue_size": sum(pool["queue_size"] for pool in pools.values()),
            "delayed_size": len(self._delayed),
            "active_workers": sum(pool["active_workers"] for pool in pools.values()),
            "pools": pools,
        }

    async def _worker(self, job_type: JobType, worker_id: int) -> None:
        """Worker coroutine - processes jobs from its type's queue."""
        name = f"{job_type.value}/{worker_id}"
        queue = self._queues[job_type]
        handler = self._handlers[job_type]
        logger.debug(f"WorkQueue worker {name} started")

        while True:
            try:
                job = await queue.get()
            except asyncio.CancelledError:
                logger.debug(f"WorkQueue worker {name} cancelled")
                break

            try:
                logger.debug(f"Worker {name} executing job: {job.id}")
                await handler(job.payload)
                self._stats["processed_jobs"] += 1
            except asyncio.CancelledError:
                logger.info(f"WorkQueue worker {name} cancelled during job {job.id}")
                raise
            except Exception as e:
                self._stats["failed_jobs"] += 1
                logger.error(f"Worker {name} failed job: {job.id} - {e}", exc_info=True)
            finally:
                queue.task_done()

        logger.debug(f"WorkQueue worker {name} stopped")


__all__ = ["JobHandler", "QueuedJob", "WorkQueue"]
