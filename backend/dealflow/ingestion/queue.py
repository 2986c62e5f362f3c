"""In-process ingestion job queue.

A fixed pool of asyncio workers pulls jobs in FIFO order. Job starts are
throttled by a dispatch token bucket, a second layer of throughput
control on top of the per-source buckets.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from dealflow.config import QueueSettings, settings
from dealflow.ingestion.utils.rate_limiter import TokenBucket

logger = structlog.get_logger(__name__)

JobHandler = Callable[[str, str], Awaitable[Any]]


@dataclass
class QueuedJob:
    id: str
    name: str
    source_key: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IngestionQueue:
    """Bounded-concurrency worker pool for source ingestion jobs."""

    def __init__(
        self,
        handler: JobHandler,
        config: Optional[QueueSettings] = None,
        dispatch_limiter: Optional[TokenBucket] = None,
    ):
        self.handler = handler
        self.config = config or settings.QUEUE
        self.dispatch_limiter = dispatch_limiter or TokenBucket(
            max_tokens=self.config.max_jobs_per_window,
            requests=self.config.max_jobs_per_window,
            window_ms=self.config.window_ms,
        )
        self._queue: "asyncio.Queue[QueuedJob]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._job_ids: set[str] = set()
        self._active = 0
        self._delayed = 0
        self._completed = 0
        self._failed = 0
        self.logger = logger.bind(service="ingestion_queue")

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and self._resumed.is_set() and any(not w.done() for w in self._workers)

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    def start(self) -> None:
        if self._workers:
            self.logger.warning("queue_already_started")
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ingestion-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        self.logger.info("queue_started", concurrency=self.config.concurrency)

    async def enqueue(self, name: str, source_key: str, job_id: Optional[str] = None) -> str:
        """Add a job. A job id already waiting or running is not queued twice.

        Returns:
            Job id
        """
        job_id = job_id or f"{name}-{source_key}-{uuid.uuid4().hex[:8]}"
        if job_id in self._job_ids:
            self.logger.debug("job_already_queued", job_id=job_id)
            return job_id

        self._job_ids.add(job_id)
        await self._queue.put(QueuedJob(id=job_id, name=name, source_key=source_key))
        self.logger.info("job_enqueued", job_id=job_id, source=source_key, waiting=self._queue.qsize())
        return job_id

    def pause(self) -> None:
        self._resumed.clear()
        self.logger.info("queue_paused")

    def resume(self) -> None:
        self._resumed.set()
        self.logger.info("queue_resumed")

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    def get_stats(self) -> Dict[str, int]:
        return {
            "waiting": self._queue.qsize(),
            "active": self._active,
            "completed": self._completed,
            "failed": self._failed,
            "delayed": self._delayed,
        }

    async def _worker(self, index: int) -> None:
        while True:
            await self._resumed.wait()
            job = await self._queue.get()
            try:
                # Paused while this worker was waiting for a job
                await self._resumed.wait()

                self._delayed += 1
                try:
                    await self.dispatch_limiter.acquire()
                finally:
                    self._delayed -= 1

                await self._run(job, index)
            finally:
                self._job_ids.discard(job.id)
                self._queue.task_done()

    async def _run(self, job: QueuedJob, worker: int) -> None:
        self._active += 1
        started = time.monotonic()
        self.logger.info("job_started", job_id=job.id, source=job.source_key, worker=worker)
        try:
            await self.handler(job.source_key, job.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed += 1
            self.logger.error(
                "job_failed",
                job_id=job.id,
                source=job.source_key,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        else:
            self._completed += 1
            self.logger.info(
                "job_completed",
                job_id=job.id,
                source=job.source_key,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        finally:
            self._active -= 1

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Pause, give in-flight jobs a bounded grace period, then stop the workers."""
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self.pause()

        deadline = time.monotonic() + grace
        while self._active > 0 and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
        if self._active > 0:
            self.logger.warning("shutdown_with_active_jobs", active=self._active)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self.logger.info("queue_stopped", **self.get_stats())
