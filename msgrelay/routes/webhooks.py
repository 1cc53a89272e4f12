"""
Webhook API routes.

Delivery statistics and retention maintenance. Webhook registration itself
belongs to the tenant management service.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from msgrelay.database import get_db
from msgrelay.dependencies.auth import get_current_user, require_admin, TokenPayload
from msgrelay.models.webhook import Webhook
from msgrelay.services.webhook_service import WebhookNotifier, get_notifier


router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.get("/{webhook_id}/stats", response_model=dict)
async def webhook_stats(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: WebhookNotifier = Depends(get_notifier)
):
    """
    Delivery statistics for one of the tenant's webhooks.

    Returns totals per status and the success rate.
    """
    stmt = select(Webhook.id).where(
        Webhook.id == webhook_id,
        Webhook.tenant_id == token.tenant_id
    )
    result = await db.execute(stmt)
    if result.scalar_one_or_none() is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )

    return await notifier.stats(webhook_id)


@router.post("/deliveries/cleanup", response_model=dict)
async def cleanup_deliveries(
    older_than_days: int = Query(30, ge=1),
    admin: TokenPayload = Depends(require_admin),
    notifier: WebhookNotifier = Depends(get_notifier)
):
    """Delete webhook delivery records older than `older_than_days` (admin only)."""
    purged = await notifier.cleanup(older_than_days)
    return {"purged": purged, "older_than_days": older_than_days}
