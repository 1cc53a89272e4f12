"""
Message API routes.

Submit outbound messages and follow their dispatch jobs.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from msgrelay.dependencies.auth import get_current_user, require_admin, TokenPayload
from msgrelay.exceptions import JobNotFoundError, JobStateError
from msgrelay.logging_config import get_logger
from msgrelay.schemas import MessageContent, MessageMetadata, SendJob, SendOptions, Target
from msgrelay.services.message_queue import MessageQueue, get_message_queue

log = get_logger(component="messages_api")

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    """Request model for sending a message; the tenant comes from the token."""
    targets: list[Target] = Field(min_length=1)
    content: MessageContent = Field(default_factory=MessageContent)
    options: SendOptions = Field(default_factory=SendOptions)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)


class JobStatusResponse(BaseModel):
    """Response model for a dispatch job."""
    id: str
    state: str
    progress: int
    attempts_made: int
    failed_reason: str | None = None
    processed_on: str | None = None
    finished_on: str | None = None
    result: dict | None = None


@router.post("/send", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    request: SendMessageRequest,
    token: TokenPayload = Depends(get_current_user),
    queue: MessageQueue = Depends(get_message_queue)
):
    """
    Queue a message for delivery to every target.

    Returns immediately with the job id; delivery happens in the worker.
    """
    job = SendJob(tenant_id=token.tenant_id, **request.model_dump())

    try:
        return await queue.submit(job)
    except Exception as e:
        log.error("message_submit_failed", tenant_id=token.tenant_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message queue unavailable"
        )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    token: TokenPayload = Depends(get_current_user),
    queue: MessageQueue = Depends(get_message_queue)
):
    """Get dispatch job status and result by ID."""
    job = await queue.get_status(job_id, tenant_id=token.tenant_id)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )

    return job


@router.get("/queue/metrics", response_model=dict)
async def queue_metrics(
    token: TokenPayload = Depends(get_current_user),
    queue: MessageQueue = Depends(get_message_queue)
):
    """Job counts per queue state."""
    return await queue.metrics()


@router.post("/jobs/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: str,
    token: TokenPayload = Depends(get_current_user),
    queue: MessageQueue = Depends(get_message_queue)
):
    """Re-queue a failed job."""
    try:
        return await queue.retry_failed(job_id, tenant_id=token.tenant_id)
    except JobNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    except JobStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )


@router.delete("/queue/failed", response_model=dict)
async def purge_failed_jobs(
    admin: TokenPayload = Depends(require_admin),
    queue: MessageQueue = Depends(get_message_queue)
):
    """Delete every failed job record (admin only)."""
    return {"purged": await queue.purge_failed()}
