"""
Job service for dispatch job records.

SECURITY: Tenant-facing lookups MUST pass tenant_id.
Failure to do so will result in data leakage between tenants.
"""
from datetime import datetime, timezone
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from msgrelay.models.job import DispatchJob, JobState
from msgrelay.schemas import SendJob


class JobService:
    """Service for managing dispatch job records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_job(self, send_job: SendJob) -> DispatchJob:
        """
        Create a new job in QUEUED state.

        Args:
            send_job: Validated job payload

        Returns:
            Newly created DispatchJob
        """
        job = DispatchJob(
            tenant_id=send_job.tenant_id,
            payload=send_job.model_dump_json(),
            state=JobState.QUEUED
        )
        self.db.add(job)
        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def get_job(self, job_id: str, tenant_id: str | None = None) -> DispatchJob | None:
        """
        Get job by ID, optionally restricted to a tenant.

        Args:
            job_id: Job ID
            tenant_id: When given, jobs of other tenants are not returned
        """
        stmt = select(DispatchJob).where(DispatchJob.id == job_id)
        if tenant_id is not None:
            stmt = stmt.where(DispatchJob.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_active(self, job_id: str, attempt: int) -> DispatchJob | None:
        """
        Mark a job as ACTIVE for the given attempt number.

        Returns:
            Job, or None if not found
        """
        job = await self.get_job(job_id)
        if not job:
            return None

        job.state = JobState.ACTIVE
        job.attempts_made = attempt
        job.processed_on = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def update_progress(self, job_id: str, progress: int) -> None:
        job = await self.get_job(job_id)
        if job:
            job.progress = max(0, min(100, progress))
            await self.db.commit()

    async def complete_job(self, job_id: str, result: dict) -> DispatchJob | None:
        """
        Mark a job as COMPLETED with its aggregate result.

        Partial success still completes the job; `result` carries the
        per-target counts.
        """
        job = await self.get_job(job_id)
        if not job:
            return None

        job.state = JobState.COMPLETED
        job.result = result
        job.progress = 100
        job.failed_reason = None
        job.finished_on = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def delay_job(self, job_id: str, reason: str) -> DispatchJob | None:
        """Mark a job as DELAYED until its next attempt."""
        job = await self.get_job(job_id)
        if not job:
            return None

        job.state = JobState.DELAYED
        job.failed_reason = reason

        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def fail_job(self, job_id: str, reason: str) -> DispatchJob | None:
        """
        Mark a job as FAILED after its last attempt.

        Returns:
            Job if exists, None if not found
        """
        job = await self.get_job(job_id)
        if not job:
            return None

        job.state = JobState.FAILED
        job.failed_reason = reason
        job.finished_on = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def requeue_job(self, job_id: str) -> DispatchJob | None:
        """Move a FAILED job back to QUEUED with a fresh attempt budget."""
        job = await self.get_job(job_id)
        if not job or job.state != JobState.FAILED:
            return None

        job.state = JobState.QUEUED
        job.attempts_made = 0
        job.progress = 0
        job.failed_reason = None
        job.finished_on = None

        await self.db.commit()
        await self.db.refresh(job)
        return job

    async def count_by_state(self) -> dict[str, int]:
        """Number of jobs per state; states without jobs report 0."""
        stmt = select(DispatchJob.state, func.count(DispatchJob.id)).group_by(DispatchJob.state)
        result = await self.db.execute(stmt)
        counts = {state.value: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state).value] = count
        return counts

    async def prune_completed(self, keep: int) -> int:
        """
        Delete completed jobs beyond the `keep` most recently finished.

        Returns:
            Number of jobs deleted
        """
        stale = (
            select(DispatchJob.id)
            .where(DispatchJob.state == JobState.COMPLETED)
            .order_by(DispatchJob.finished_on.desc(), DispatchJob.id.desc())
            .offset(keep)
        )
        stale_ids = list((await self.db.execute(stale)).scalars().all())
        if not stale_ids:
            return 0

        result = await self.db.execute(delete(DispatchJob).where(DispatchJob.id.in_(stale_ids)))
        await self.db.commit()
        return result.rowcount or 0

    async def purge_failed(self) -> int:
        """Delete all failed jobs."""
        result = await self.db.execute(delete(DispatchJob).where(DispatchJob.state == JobState.FAILED))
        await self.db.commit()
        return result.rowcount or 0
