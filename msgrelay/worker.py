"""
ARQ Background Worker for MsgRelay.

Runs dispatch jobs from the Redis queue and the daily webhook delivery
cleanup. Start with: arq msgrelay.worker.WorkerSettings
"""
from arq import Retry, cron
from arq.connections import RedisSettings

from msgrelay.config import settings
from msgrelay.database import AsyncSessionLocal
from msgrelay.logging_config import get_logger
from msgrelay.platforms.registry import load_registry
from msgrelay.routes.metrics import track_job_completed, track_job_failed, track_job_retry
from msgrelay.schemas import SendJob
from msgrelay.sentry_config import capture_exception, configure_sentry
from msgrelay.services import crypto
from msgrelay.services.dispatch_processor import DispatchProcessor
from msgrelay.services.job_service import JobService
from msgrelay.services.webhook_service import get_notifier

log = get_logger(component="worker")


def retry_delay(job_try: int) -> float:
    """Exponential backoff before the next attempt: 2s, 4s, 8s, ..."""
    return settings.QUEUE_BACKOFF_SECONDS * 2 ** (job_try - 1)


async def process_send_job(ctx: dict, job_id: str) -> dict:
    """
    Deliver one dispatch job.

    Per-target failures are part of the result and do not fail the job.
    Only an error escaping the processor triggers a retry; the last
    attempt marks the job failed and re-raises.
    """
    # ARQ uses job_try (starts at 1)
    job_try = ctx.get("job_try", 1)
    max_tries = settings.QUEUE_MAX_ATTEMPTS
    session_factory = ctx.get("session_factory", AsyncSessionLocal)
    job_log = log.bind(job_id=job_id, attempt=job_try, max_attempts=max_tries)

    async with session_factory() as db:
        job = await JobService(db).mark_active(job_id, job_try)
        if not job:
            job_log.error("job_not_found")
            return {"status": "error", "message": "Job not found"}
        send_job = SendJob.model_validate_json(job.payload)

    job_log.info("job_started", tenant_id=send_job.tenant_id)

    async def on_progress(percent: int) -> None:
        async with session_factory() as db:
            await JobService(db).update_progress(job_id, percent)

    try:
        result = await ctx["processor"].process(job_id, send_job, on_progress)
    except Exception as e:
        reason = str(e) or type(e).__name__

        async with session_factory() as db:
            jobs = JobService(db)
            if job_try >= max_tries:
                await jobs.fail_job(job_id, reason)
                track_job_failed()
                capture_exception(e)
                job_log.error("job_failed_permanently", error=reason)
                raise  # Final failure - don't retry
            await jobs.delay_job(job_id, reason)

        defer = retry_delay(job_try)
        track_job_retry()
        job_log.warning("job_retry_scheduled", defer_seconds=defer, error=reason)
        raise Retry(defer=defer) from e

    summary = result.to_dict()
    async with session_factory() as db:
        jobs = JobService(db)
        await jobs.complete_job(job_id, summary)
        await jobs.prune_completed(settings.QUEUE_KEEP_COMPLETED)

    track_job_completed(result.success)
    job_log.info(
        "job_completed",
        success=result.success,
        success_count=result.success_count,
        failure_count=result.failure_count
    )
    return summary


async def cleanup_webhook_deliveries(ctx: dict) -> int:
    """Daily retention pass over webhook delivery records."""
    return await ctx["notifier"].cleanup(settings.WEBHOOK_RETENTION_DAYS)


async def startup(ctx: dict) -> None:
    configure_sentry()
    crypto.initialize_encryption_key()

    registry = load_registry(settings.PLATFORM_PROVIDERS)
    health = await registry.health_status()
    unhealthy = [name for name, healthy in health.items() if not healthy]
    if unhealthy:
        # Jobs for these platforms will fail per target until they recover
        log.warning("platform_providers_unhealthy", platforms=unhealthy)

    notifier = get_notifier()
    await notifier.start()

    ctx["registry"] = registry
    ctx["notifier"] = notifier
    ctx["processor"] = DispatchProcessor(registry, notifier)
    ctx["platform_health"] = health
    log.info("worker_started", platforms=registry.supported_platforms(), queue=settings.QUEUE_NAME)


async def shutdown(ctx: dict) -> None:
    # Let in-flight webhook deliveries finish before providers go away
    await ctx["notifier"].stop()
    await ctx["registry"].shutdown()
    log.info("worker_stopped")


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_send_job,
]


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq msgrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = settings.QUEUE_NAME
    functions = ARQ_FUNCTIONS
    cron_jobs = [cron(cleanup_webhook_deliveries, hour=2, minute=0)]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.WORKER_CONCURRENCY
    max_tries = settings.QUEUE_MAX_ATTEMPTS
    job_timeout = settings.JOB_TIMEOUT
    # Results are kept on the DispatchJob row; a stored ARQ result blocks re-enqueueing its id
    keep_result = 0
