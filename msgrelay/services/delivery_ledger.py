"""
Delivery ledger.

Persistence for per-target delivery attempts and webhook deliveries, plus the
read-only lookups the pipeline needs (platform configuration, subscribed
webhooks).

Rows are updated by primary key, and only while still pending, so the
pending -> terminal transition never reverses.

SECURITY: Platform and webhook lookups MUST include the tenant_id filter.
"""
from datetime import datetime, timezone
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from msgrelay.models.delivery import AttemptStatus, DeliveryAttempt
from msgrelay.models.platform import PlatformConfig
from msgrelay.models.webhook import DeliveryStatus, Webhook, WebhookDelivery


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryLedger:
    """Ledger of delivery attempts and webhook deliveries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Platform configuration

    async def get_platform_config(self, platform_id: str, tenant_id: str) -> PlatformConfig | None:
        """
        Get a platform configuration within a tenant.

        Args:
            platform_id: Platform configuration ID
            tenant_id: Tenant that must own the configuration

        Returns:
            PlatformConfig, or None when missing or owned by another tenant
        """
        stmt = select(PlatformConfig).where(
            PlatformConfig.id == platform_id,
            PlatformConfig.tenant_id == tenant_id
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    # Delivery attempts

    async def create_attempt(
        self,
        tenant_id: str,
        job_id: str | None,
        platform_id: str,
        platform: str,
        target_type: str,
        target_chat_id: str,
        message_text: str | None = None,
        message_content: dict | None = None,
    ) -> DeliveryAttempt:
        """Record a pending attempt before the adapter is called."""
        attempt = DeliveryAttempt(
            tenant_id=tenant_id,
            job_id=job_id,
            platform_id=platform_id,
            platform=platform,
            target_type=target_type,
            target_chat_id=target_chat_id,
            target_user_id=target_chat_id if target_type == "user" else None,
            message_text=message_text,
            message_content=message_content,
            status=AttemptStatus.PENDING
        )
        self.db.add(attempt)
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def _finish_attempt(self, attempt_id: str, **values) -> DeliveryAttempt | None:
        stmt = (
            update(DeliveryAttempt)
            .where(
                DeliveryAttempt.id == attempt_id,
                DeliveryAttempt.status == AttemptStatus.PENDING
            )
            .values(**values)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        return await self.db.get(DeliveryAttempt, attempt_id, populate_existing=True)

    async def mark_sent(self, attempt_id: str, provider_message_id: str) -> DeliveryAttempt | None:
        """Mark a pending attempt as sent."""
        return await self._finish_attempt(
            attempt_id,
            status=AttemptStatus.SENT,
            provider_message_id=provider_message_id,
            sent_at=utcnow()
        )

    async def mark_failed(self, attempt_id: str, error_message: str) -> DeliveryAttempt | None:
        """Mark a pending attempt as failed."""
        return await self._finish_attempt(
            attempt_id,
            status=AttemptStatus.FAILED,
            error_message=error_message
        )

    async def fail_pending_for_target(
        self,
        job_id: str,
        platform_id: str,
        target_chat_id: str,
        error_message: str
    ) -> int:
        """
        Mark pending attempts of one target as failed.

        Used when a target fails before its own attempt row exists, so that a
        row left pending by a crashed earlier run of the same job is closed.

        Returns:
            Number of rows updated
        """
        stmt = (
            update(DeliveryAttempt)
            .where(
                DeliveryAttempt.job_id == job_id,
                DeliveryAttempt.platform_id == platform_id,
                DeliveryAttempt.target_chat_id == target_chat_id,
                DeliveryAttempt.status == AttemptStatus.PENDING
            )
            .values(status=AttemptStatus.FAILED, error_message=error_message)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount or 0

    async def get_sent_attempts(self, job_id: str) -> dict[tuple[str, str, str], DeliveryAttempt]:
        """
        Attempts of a job already marked sent.

        Returns:
            Mapping of normalized (platform_id, type, chat_id) key to attempt
        """
        stmt = select(DeliveryAttempt).where(
            DeliveryAttempt.job_id == job_id,
            DeliveryAttempt.status == AttemptStatus.SENT
        )
        result = await self.db.execute(stmt)
        return {
            (a.platform_id.strip(), a.target_type.strip(), a.target_chat_id.strip()): a
            for a in result.scalars().all()
        }

    async def get_attempts_for_job(self, job_id: str) -> list[DeliveryAttempt]:
        stmt = (
            select(DeliveryAttempt)
            .where(DeliveryAttempt.job_id == job_id)
            .order_by(DeliveryAttempt.created_at, DeliveryAttempt.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # Webhooks

    async def get_active_webhooks(self, tenant_id: str, event: str) -> list[Webhook]:
        """Active webhooks of a tenant subscribed to `event`."""
        stmt = select(Webhook).where(
            Webhook.tenant_id == tenant_id,
            Webhook.is_active.is_(True)
        ).order_by(Webhook.created_at)
        result = await self.db.execute(stmt)
        # Event lists are JSON; filter here to stay portable across backends
        return [webhook for webhook in result.scalars().all() if webhook.subscribes_to(event)]

    async def create_webhook_delivery(self, webhook_id: str, event: str, payload: dict) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=webhook_id,
            event=event,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempts=0
        )
        self.db.add(delivery)
        await self.db.commit()
        await self.db.refresh(delivery)
        return delivery

    async def finish_webhook_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        attempts: int,
        response_code: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
    ) -> None:
        """Move a pending webhook delivery to its terminal status."""
        values = {
            "status": status,
            "attempts": attempts,
            "response_code": response_code,
            "response_body": response_body,
            "error": error,
        }
        if status == DeliveryStatus.SUCCESS:
            values["delivered_at"] = utcnow()

        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.PENDING
            )
            .values(**values)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def get_webhook_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        return await self.db.get(WebhookDelivery, delivery_id, populate_existing=True)

    async def webhook_status_counts(self, webhook_id: str) -> dict[str, int]:
        """Delivery counts per status for one webhook."""
        stmt = (
            select(WebhookDelivery.status, func.count(WebhookDelivery.id))
            .where(WebhookDelivery.webhook_id == webhook_id)
            .group_by(WebhookDelivery.status)
        )
        result = await self.db.execute(stmt)
        return {DeliveryStatus(status).value: count for status, count in result.all()}

    async def purge_webhook_deliveries(self, older_than: datetime) -> int:
        """Delete webhook deliveries created before `older_than`."""
        stmt = delete(WebhookDelivery).where(WebhookDelivery.created_at < older_than)
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount or 0
