"""
Message queue.

Submits SendJobs to the ARQ worker and answers status questions from the
dispatch job records. The ARQ job id is the DispatchJob id, so a job can be
followed from the API to the worker logs with one identifier.
"""
from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from msgrelay.config import settings
from msgrelay.database import AsyncSessionLocal
from msgrelay.exceptions import JobNotFoundError, JobStateError
from msgrelay.logging_config import get_logger
from msgrelay.models.job import DispatchJob, JobState
from msgrelay.routes.metrics import track_job_queued, update_queue_depth
from msgrelay.schemas import SendJob
from msgrelay.services.job_service import JobService
from msgrelay.services.webhook_service import format_timestamp

log = get_logger(component="message_queue")

PROCESS_FUNCTION = "process_send_job"


def job_status(job: DispatchJob) -> dict:
    """Public status view of a dispatch job."""
    return {
        "id": job.id,
        "state": JobState(job.state).value,
        "progress": job.progress,
        "attempts_made": job.attempts_made,
        "failed_reason": job.failed_reason,
        "processed_on": format_timestamp(job.processed_on) if job.processed_on else None,
        "finished_on": format_timestamp(job.finished_on) if job.finished_on else None,
        "result": job.result,
    }


class MessageQueue:
    """
    Producer side of the dispatch queue.

    The Redis pool is created on first use; pass `pool` to supply one.
    """

    def __init__(self, session_factory=None, pool: ArqRedis | None = None, queue_name: str | None = None):
        self._session_factory = session_factory or AsyncSessionLocal
        self._pool = pool
        self.queue_name = queue_name or settings.QUEUE_NAME

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        return self._pool

    async def _enqueue(self, job_id: str) -> None:
        pool = await self._get_pool()
        arq_job = await pool.enqueue_job(PROCESS_FUNCTION, job_id, _job_id=job_id, _queue_name=self.queue_name)
        if arq_job is None:
            raise JobStateError(f"Job {job_id} is already queued")

    async def submit(self, job: SendJob) -> dict:
        """
        Persist and enqueue a job.

        Returns:
            {"job_id": ..., "status": "queued"}
        """
        async with self._session_factory() as db:
            jobs = JobService(db)
            record = await jobs.create_job(job)

            try:
                await self._enqueue(record.id)
            except Exception as e:
                await jobs.fail_job(record.id, f"Failed to enqueue job: {e}")
                log.error("job_enqueue_failed", job_id=record.id, tenant_id=job.tenant_id, error=str(e))
                raise

        track_job_queued()
        log.info("job_queued", job_id=record.id, tenant_id=job.tenant_id, targets=len(job.targets))
        return {"job_id": record.id, "status": JobState.QUEUED.value}

    async def get_status(self, job_id: str, tenant_id: str | None = None) -> dict | None:
        """
        Status of a job, or None if unknown.

        When `tenant_id` is given, jobs of other tenants are reported as unknown.
        """
        async with self._session_factory() as db:
            job = await JobService(db).get_job(job_id, tenant_id)
            return job_status(job) if job else None

    async def metrics(self) -> dict[str, int]:
        """Job counts per state; `total` counts jobs still waiting or running."""
        async with self._session_factory() as db:
            counts = await JobService(db).count_by_state()

        update_queue_depth(counts)
        counts["total"] = counts["queued"] + counts["active"] + counts["delayed"]
        return counts

    async def retry_failed(self, job_id: str, tenant_id: str | None = None) -> dict:
        """
        Re-enqueue a failed job with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist (for this tenant)
            JobStateError: If the job is not in the failed state
        """
        async with self._session_factory() as db:
            jobs = JobService(db)
            job = await jobs.get_job(job_id, tenant_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.state != JobState.FAILED:
                raise JobStateError(f"Job {job_id} is {JobState(job.state).value}, only failed jobs can be retried")

            await jobs.requeue_job(job_id)
            try:
                await self._enqueue(job_id)
            except Exception as e:
                await jobs.fail_job(job_id, f"Failed to enqueue job: {e}")
                raise

        log.info("job_requeued", job_id=job_id)
        return {"job_id": job_id, "status": JobState.QUEUED.value}

    async def purge_failed(self) -> int:
        async with self._session_factory() as db:
            purged = await JobService(db).purge_failed()
        log.info("failed_jobs_purged", purged=purged)
        return purged

    async def purge_completed(self, keep: int = 0) -> int:
        async with self._session_factory() as db:
            purged = await JobService(db).prune_completed(keep)
        log.info("completed_jobs_purged", purged=purged, keep=keep)
        return purged

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


_queue: MessageQueue | None = None


def get_message_queue() -> MessageQueue:
    """Get or create the process-wide queue client."""
    global _queue
    if _queue is None:
        _queue = MessageQueue()
    return _queue
