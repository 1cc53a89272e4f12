"""
Message queue and worker tests.

The ARQ Redis pool is replaced by an AsyncMock; worker functions are called
directly with a hand-built ctx, the way ARQ would call them.
"""
from unittest.mock import AsyncMock

import pytest
from arq import Retry

from msgrelay.config import settings
from msgrelay.exceptions import JobNotFoundError, JobStateError
from msgrelay.models.job import JobState
from msgrelay.schemas import SendJob
from msgrelay.services.dispatch_processor import DispatchProcessor
from msgrelay.services.job_service import JobService
from msgrelay.services.message_queue import PROCESS_FUNCTION, MessageQueue
from msgrelay.worker import cleanup_webhook_deliveries, process_send_job, retry_delay, shutdown, startup
from tests.support import TENANT_A, TENANT_B


def send_job(platform_id="p-1", tenant_id=TENANT_A) -> SendJob:
    return SendJob(
        tenant_id=tenant_id,
        targets=[{"platform_id": platform_id, "type": "channel", "id": "chat-1"}],
        content={"text": "hi"},
    )


@pytest.fixture
def pool():
    pool = AsyncMock()
    pool.enqueue_job.return_value = object()
    return pool


@pytest.fixture
def queue(session_factory, pool):
    return MessageQueue(session_factory=session_factory, pool=pool)


async def job_record(session_factory, job_id):
    async with session_factory() as db:
        return await JobService(db).get_job(job_id)


# ============================================
# Producer side
# ============================================

async def test_submit_persists_and_enqueues(queue, pool, session_factory):
    submitted = await queue.submit(send_job())

    assert submitted["status"] == "queued"
    job_id = submitted["job_id"]
    pool.enqueue_job.assert_awaited_once_with(
        PROCESS_FUNCTION, job_id, _job_id=job_id, _queue_name=settings.QUEUE_NAME
    )

    record = await job_record(session_factory, job_id)
    assert record.state == JobState.QUEUED
    assert record.tenant_id == TENANT_A
    assert SendJob.model_validate_json(record.payload) == send_job()


async def test_submit_enqueue_failure_marks_job_failed(queue, pool, session_factory):
    pool.enqueue_job.side_effect = ConnectionError("redis down")

    with pytest.raises(ConnectionError):
        await queue.submit(send_job())

    async with session_factory() as db:
        counts = await JobService(db).count_by_state()
    assert counts["failed"] == 1


async def test_get_status_is_tenant_scoped(queue):
    job_id = (await queue.submit(send_job()))["job_id"]

    status = await queue.get_status(job_id, tenant_id=TENANT_A)
    assert status["id"] == job_id
    assert status["state"] == "queued"
    assert status["progress"] == 0
    assert status["finished_on"] is None

    assert await queue.get_status(job_id, tenant_id=TENANT_B) is None
    assert await queue.get_status("missing") is None


async def test_metrics(queue, session_factory):
    first = (await queue.submit(send_job()))["job_id"]
    second = (await queue.submit(send_job()))["job_id"]
    await queue.submit(send_job())
    async with session_factory() as db:
        jobs = JobService(db)
        await jobs.mark_active(first, 1)
        await jobs.fail_job(second, "boom")

    metrics = await queue.metrics()

    assert metrics == {
        "queued": 1,
        "active": 1,
        "delayed": 0,
        "completed": 0,
        "failed": 1,
        "total": 2,
    }


async def test_retry_failed(queue, pool, session_factory):
    job_id = (await queue.submit(send_job()))["job_id"]

    with pytest.raises(JobStateError):
        await queue.retry_failed(job_id)
    with pytest.raises(JobNotFoundError):
        await queue.retry_failed("missing")

    async with session_factory() as db:
        await JobService(db).fail_job(job_id, "boom")

    with pytest.raises(JobNotFoundError):
        await queue.retry_failed(job_id, tenant_id=TENANT_B)

    assert await queue.retry_failed(job_id, tenant_id=TENANT_A) == {"job_id": job_id, "status": "queued"}
    assert pool.enqueue_job.await_count == 2
    record = await job_record(session_factory, job_id)
    assert record.state == JobState.QUEUED
    assert record.failed_reason is None


async def test_duplicate_enqueue_is_rejected(queue, pool):
    pool.enqueue_job.return_value = None

    with pytest.raises(JobStateError):
        await queue.submit(send_job())


async def test_purge(queue, session_factory):
    ids = [(await queue.submit(send_job()))["job_id"] for _ in range(4)]
    async with session_factory() as db:
        jobs = JobService(db)
        await jobs.fail_job(ids[0], "boom")
        for job_id in ids[1:]:
            await jobs.complete_job(job_id, {"success": True})

    assert await queue.purge_failed() == 1
    assert await queue.purge_completed(keep=1) == 2
    metrics = await queue.metrics()
    assert metrics["completed"] == 1
    assert metrics["failed"] == 0


async def test_close_releases_pool(queue, pool):
    await queue.close()
    pool.close.assert_awaited_once()


# ============================================
# Worker
# ============================================

class ExplodingProcessor:
    async def process(self, job_id, send_job, on_progress=None):
        raise RuntimeError("database connection lost")


async def create_job(session_factory, job=None) -> str:
    async with session_factory() as db:
        record = await JobService(db).create_job(job or send_job())
        return record.id


def test_retry_delay_is_exponential():
    assert [retry_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


async def test_worker_completes_job(session_factory, registry, notifier, make_platform):
    config = await make_platform()
    job_id = await create_job(session_factory, send_job(platform_id=config.id))
    ctx = {
        "job_try": 1,
        "session_factory": session_factory,
        "processor": DispatchProcessor(registry, notifier, session_factory=session_factory),
    }

    summary = await process_send_job(ctx, job_id)

    assert summary["success"] is True
    assert summary["success_count"] == 1
    record = await job_record(session_factory, job_id)
    assert record.state == JobState.COMPLETED
    assert record.progress == 100
    assert record.attempts_made == 1
    assert record.result["success_count"] == 1
    assert record.processed_on is not None
    assert record.finished_on is not None


async def test_partial_failure_still_completes(session_factory, registry, notifier):
    job_id = await create_job(session_factory, send_job(platform_id="missing"))
    ctx = {
        "job_try": 1,
        "session_factory": session_factory,
        "processor": DispatchProcessor(registry, notifier, session_factory=session_factory),
    }

    summary = await process_send_job(ctx, job_id)

    assert summary["success"] is False
    assert summary["failure_count"] == 1
    record = await job_record(session_factory, job_id)
    assert record.state == JobState.COMPLETED
    assert record.result["errors"][0]["permanent"] is True


@pytest.mark.parametrize("job_try, defer_ms", [(1, 2000), (2, 4000)])
async def test_worker_retries_with_backoff(session_factory, job_try, defer_ms):
    job_id = await create_job(session_factory)
    ctx = {"job_try": job_try, "session_factory": session_factory, "processor": ExplodingProcessor()}

    with pytest.raises(Retry) as exc_info:
        await process_send_job(ctx, job_id)

    assert exc_info.value.defer_score == defer_ms
    record = await job_record(session_factory, job_id)
    assert record.state == JobState.DELAYED
    assert record.failed_reason == "database connection lost"
    assert record.attempts_made == job_try


async def test_worker_final_attempt_fails_job(session_factory):
    job_id = await create_job(session_factory)
    ctx = {
        "job_try": settings.QUEUE_MAX_ATTEMPTS,
        "session_factory": session_factory,
        "processor": ExplodingProcessor(),
    }

    with pytest.raises(RuntimeError):
        await process_send_job(ctx, job_id)

    record = await job_record(session_factory, job_id)
    assert record.state == JobState.FAILED
    assert record.failed_reason == "database connection lost"
    assert record.finished_on is not None


async def test_worker_unknown_job(session_factory):
    ctx = {"job_try": 1, "session_factory": session_factory, "processor": ExplodingProcessor()}

    assert await process_send_job(ctx, "missing") == {"status": "error", "message": "Job not found"}


async def test_completed_jobs_retention_cap(session_factory, registry, notifier, make_platform, monkeypatch):
    monkeypatch.setattr(settings, "QUEUE_KEEP_COMPLETED", 2)
    config = await make_platform()
    ctx = {
        "job_try": 1,
        "session_factory": session_factory,
        "processor": DispatchProcessor(registry, notifier, session_factory=session_factory),
    }

    for _ in range(3):
        await process_send_job(ctx, await create_job(session_factory, send_job(platform_id=config.id)))

    async with session_factory() as db:
        counts = await JobService(db).count_by_state()
    assert counts["completed"] == 2


async def test_cleanup_cron_uses_retention_window():
    notifier = AsyncMock()
    notifier.cleanup.return_value = 5

    assert await cleanup_webhook_deliveries({"notifier": notifier}) == 5
    notifier.cleanup.assert_awaited_once_with(settings.WEBHOOK_RETENTION_DAYS)


async def test_worker_startup_records_provider_health(monkeypatch):
    monkeypatch.setattr(settings, "PLATFORM_PROVIDERS", ["tests.support:FakeProvider"])
    ctx = {}

    await startup(ctx)
    try:
        assert ctx["platform_health"] == {"telegram": True}
        assert isinstance(ctx["processor"], DispatchProcessor)
        assert ctx["notifier"].running is True
    finally:
        await shutdown(ctx)

    assert ctx["notifier"].running is False
    [provider] = ctx["registry"].all_providers()
    assert provider.closed is True
