"""APScheduler-based ingestion scheduler.

Cron triggers only enqueue jobs; the IngestionQueue workers run them.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dealflow.config import QueueSettings, settings
from dealflow.core.exceptions import UnknownSourceError
from dealflow.ingestion.queue import IngestionQueue
from dealflow.ingestion.sources import get_enabled_sources, get_source_config, is_source_enabled

logger = structlog.get_logger(__name__)


def scheduled_job_id(source_key: str) -> str:
    return f"scheduled-{source_key}"


class IngestionScheduler:
    """Registers one repeating job per enabled source.

    This scheduler:
    - Re-registers every source's cron job on startup
    - Enqueues an immediate run per source so a restart doesn't wait a full period
    - Resumes the queue in case the previous process shut down paused
    - Never lets a failing trigger stop the scheduler
    """

    def __init__(self, queue: IngestionQueue, config: Optional[QueueSettings] = None):
        self.queue = queue
        self.config = config or settings.QUEUE
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="ingestion_scheduler")
        self._job_ids: Dict[str, str] = {}

    async def start(self) -> int:
        """Register jobs, enqueue immediate runs and start the scheduler.

        Returns:
            Number of sources scheduled
        """
        sources = get_enabled_sources()
        if not sources:
            self.logger.warning("no_sources_enabled")

        for source in sources:
            try:
                self.add_source_job(source.key, source.schedule)
            except ValueError as e:
                self.logger.error("source_schedule_invalid", source=source.key, schedule=source.schedule, error=str(e))

        if self.config.run_immediately_on_startup:
            stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
            for source in sources:
                await self.queue.enqueue("immediate", source.key, job_id=f"immediate-{source.key}-{stamp}")

        self.queue.resume()

        if not self.scheduler.running:
            self.scheduler.start()
        self.logger.info("scheduler_started", sources=len(self._job_ids))
        return len(self._job_ids)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("scheduler_stopped")

    def add_source_job(self, source_key: str, schedule: str) -> None:
        """(Re-)register the repeating job for a source.

        Raises:
            ValueError: If the cron expression is invalid
        """
        job_id = scheduled_job_id(source_key)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        job = self.scheduler.add_job(
            func=self._enqueue_wrapper,
            trigger=CronTrigger.from_crontab(schedule, timezone="UTC"),
            args=[source_key],
            id=job_id,
            name=f"Ingest {source_key}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._job_ids[source_key] = job.id
        self.logger.info("source_scheduled", source=source_key, schedule=schedule)

    def remove_source_job(self, source_key: str) -> bool:
        job_id = self._job_ids.pop(source_key, None)
        if not job_id:
            self.logger.warning("job_not_found", source=source_key)
            return False
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)
        self.logger.info("source_job_removed", source=source_key)
        return True

    async def _enqueue_wrapper(self, source_key: str) -> None:
        """Called by APScheduler. Catches everything so the schedule survives."""
        try:
            await self.queue.enqueue("scheduled", source_key, job_id=scheduled_job_id(source_key))
        except Exception as e:
            self.logger.error("scheduled_enqueue_failed", source=source_key, error=str(e), exc_info=True)

    async def trigger_ingestion(self, source_key: str) -> str:
        """Queue a manual run for one source.

        Raises:
            UnknownSourceError: If the source is unknown or disabled
        """
        if get_source_config(source_key) is None:
            raise UnknownSourceError(source_key)
        if not is_source_enabled(source_key):
            raise UnknownSourceError(source_key, "not enabled")

        job_id = await self.queue.enqueue("manual", source_key)
        self.logger.info("ingestion_triggered", source=source_key, job_id=job_id)
        return job_id

    async def trigger_all_sources(self) -> List[str]:
        job_ids = [await self.trigger_ingestion(source.key) for source in get_enabled_sources()]
        self.logger.info("all_sources_triggered", count=len(job_ids))
        return job_ids

    def get_jobs_status(self) -> Dict[str, Dict[str, Optional[str]]]:
        jobs = {}
        for source_key, job_id in self._job_ids.items():
            job = self.scheduler.get_job(job_id)
            if job:
                # Pending jobs have no next_run_time until the scheduler starts
                next_run = getattr(job, "next_run_time", None)
                jobs[source_key] = {
                    "job_id": job_id,
                    "next_run": next_run.isoformat() if next_run else None,
                    "trigger": str(job.trigger),
                }
        return jobs

    def is_running(self) -> bool:
        return self.scheduler.running
