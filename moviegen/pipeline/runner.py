"""
Job runner: the boundary between HTTP requests and orchestrator runs.

`start()` validates the job and hands it off, returning immediately:

  - Redis configured → the job id is enqueued (`movie_generate`) and one of
    the consumer threads runs it with its own event loop and orchestrator.
  - no Redis         → an asyncio task in the API process, bounded by
    job_slots.

Whichever path runs the job owns its lifecycle. If the hand-off itself
fails the job is marked `failed` before `start()` returns.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from redis.exceptions import RedisError

from .. import job_slots, metrics
from ..queue import TASK_MOVIE_GENERATE, TaskQueue
from .models import TERMINAL_STATUSES, JobStatus, Movie, ProgressResponse, can_transition
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


class JobNotFound(LookupError):
    pass


class JobConflict(Exception):
    """The job cannot be started or cancelled in its current state."""


class AtCapacity(Exception):
    pass


class DispatchFailed(Exception):
    pass


class JobRunner:
    def __init__(
        self,
        store,
        orchestrator_factory: Callable[[], Orchestrator],
        queue: Optional[TaskQueue] = None,
        consumer_threads: int = 1,
    ):
        self.store = store
        self.orchestrator_factory = orchestrator_factory
        self.queue = queue
        self.consumer_threads = max(1, consumer_threads)
        self._orchestrator: Optional[Orchestrator] = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def mode(self) -> str:
        return "queue" if self.queue is not None else "in_process"

    @property
    def orchestrator(self) -> Orchestrator:
        """Orchestrator bound to the API process's event loop."""
        if self._orchestrator is None:
            self._orchestrator = self.orchestrator_factory()
        return self._orchestrator

    def is_running(self, job_id: str) -> bool:
        if self.queue is not None:
            return self.queue.is_queued_or_processing(job_id)
        return job_slots.is_active(job_id)

    # ── Boundary operations ──────────────────────────────────────────────

    async def start(self, job_id: str, scene_count: Optional[int] = None) -> dict:
        """
        Launch generation for `job_id` and return a handle without waiting.

        Raises:
            JobNotFound:    unknown job.
            JobConflict:    completed, rejected, or already queued/running.
            AtCapacity:     in-process mode with every slot taken.
            DispatchFailed: the hand-off failed; the job is now `failed`.
        """
        movie = await self.store.get_movie(job_id)
        if movie is None:
            raise JobNotFound(job_id)
        if movie.status == JobStatus.COMPLETED:
            raise JobConflict("Job is already completed")
        if movie.status == JobStatus.REJECTED:
            raise JobConflict("Job was rejected")
        if self.is_running(job_id):
            raise JobConflict("Job is already in progress")

        metadata = {k: v for k, v in movie.metadata.items() if k not in ("cancelled", "cancelled_at")}
        movie = movie.model_copy(update={
            "metadata": metadata,
            "target_scene_count": scene_count or movie.target_scene_count,
        })
        if not await self.store.save_movie(movie, expected_status=movie.status):
            raise JobConflict("Job status changed while starting")

        if self.queue is not None:
            try:
                position = self.queue.enqueue(job_id, TASK_MOVIE_GENERATE, {"job_id": job_id})
            except RedisError as e:
                await self._dispatch_failed(movie, e)
                raise DispatchFailed(f"Could not enqueue job: {e}") from e
            metrics.inc_counter("jobs.enqueued")
            return {"job_id": job_id, "mode": self.mode, "queue_position": position}

        if not job_slots.acquire(job_id):
            raise AtCapacity(f"At capacity ({job_slots.active_count()} jobs running)")
        try:
            task = asyncio.create_task(self._run_in_process(job_id))
        except RuntimeError as e:
            job_slots.release(job_id)
            await self._dispatch_failed(movie, e)
            raise DispatchFailed(f"Could not start job: {e}") from e
        self._tasks[job_id] = task
        metrics.inc_counter("jobs.dispatched")
        return {"job_id": job_id, "mode": self.mode, "queue_position": None}

    async def cancel(self, job_id: str, reason: str = "Cancelled") -> Movie:
        """Mark a non-terminal job failed; its orchestrator stops before the next vendor call."""
        for _ in range(CANCEL_ATTEMPTS):
            movie = await self.store.get_movie(job_id)
            if movie is None:
                raise JobNotFound(job_id)
            if movie.status in TERMINAL_STATUSES or not can_transition(movie.status, JobStatus.FAILED):
                raise JobConflict(f"Job is already {movie.status.value}")

            cancelled = movie.model_copy(update={
                "status": JobStatus.FAILED,
                "error_message": reason,
                "metadata": {
                    **movie.metadata,
                    "cancelled": True,
                    "cancelled_at": datetime.now(timezone.utc).isoformat(),
                },
            })
            # Only lands if the pipeline has not moved the job on since the read.
            if await self.store.save_movie(cancelled, expected_status=movie.status):
                metrics.inc_counter("jobs.cancel_requested")
                logger.info(f"[{job_id}] Cancel requested: {reason}")
                return cancelled
            logger.info(f"[{job_id}] Status moved while cancelling; re-reading")
        raise JobConflict("Job status kept changing; cancel not applied")

    async def progress(self, job_id: str) -> ProgressResponse:
        response = await self.orchestrator.get_progress(job_id)
        if response is None:
            raise JobNotFound(job_id)
        return response

    async def _dispatch_failed(self, movie: Movie, error: Exception):
        logger.error(f"[{movie.id}] Dispatch failed: {error}")
        metrics.record_error("dispatch", type(error).__name__, str(error), job_id=movie.id)
        await self.store.save_movie(movie.model_copy(update={
            "status": JobStatus.FAILED,
            "error_message": f"Dispatch failed: {error}"[:1000],
        }))

    # ── In-process execution ─────────────────────────────────────────────

    async def _run_in_process(self, job_id: str):
        try:
            await self.orchestrator.run(job_id)
        finally:
            job_slots.release(job_id)
            self._tasks.pop(job_id, None)

    async def wait(self, job_id: str):
        """Wait for an in-process run to finish. No-op in queue mode."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    # ── Queue consumers ──────────────────────────────────────────────────

    def start_consumers(self):
        if self.queue is None or self._threads:
            return
        recovered = self.queue.recover_stale()
        if recovered:
            logger.info(f"Recovered {recovered} stale task(s) from a previous session")
        self._stop.clear()
        for index in range(self.consumer_threads):
            thread = threading.Thread(target=self._consume, name=f"movie-consumer-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} queue consumer thread(s)")

    def stop_consumers(self, timeout: float = 10.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _consume(self):
        loop = asyncio.new_event_loop()
        orchestrator = self.orchestrator_factory()
        try:
            while not self._stop.is_set():
                try:
                    job_id = self.queue.dequeue(timeout=5)
                except RedisError as e:
                    logger.error(f"Queue consumer: dequeue failed: {e}")
                    time.sleep(2)
                    continue
                if job_id is None:
                    continue
                self.process_task(loop, orchestrator, job_id)
        finally:
            loop.run_until_complete(orchestrator.aclose())
            loop.close()

    def process_task(self, loop: asyncio.AbstractEventLoop, orchestrator: Orchestrator, job_id: str):
        """Run one dequeued task to completion and ack or nack it."""
        meta = self.queue.get_meta(job_id) or {}
        task_type = meta.get("task_type", TASK_MOVIE_GENERATE)
        if task_type != TASK_MOVIE_GENERATE:
            logger.warning(f"[{job_id}] Unknown task type '{task_type}'; dropping")
            self.queue.ack(job_id)
            return

        logger.info(f"[{job_id}] Queue consumer: delivery {int(meta.get('deliveries', 0)) + 1}")
        try:
            loop.run_until_complete(orchestrator.run(job_id))
        except Exception as e:
            logger.error(f"[{job_id}] Queue consumer: run crashed: {e}", exc_info=True)
            self.queue.nack(job_id, str(e))
        else:
            self.queue.ack(job_id)

    async def aclose(self):
        self.stop_consumers()
        for task in list(self._tasks.values()):
            task.cancel()
        if self._orchestrator is not None:
            await self._orchestrator.aclose()
            self._orchestrator = None
