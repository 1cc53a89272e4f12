"""
Webhook models.

Webhook subscriptions are owned by the webhook management surface and read
here; WebhookDelivery tracks every outbound notification.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, Text, Boolean, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from msgrelay.models.base import Base, enum_values, IdMixin, CreatedAtMixin, TimestampMixin


class WebhookEventType(str, enum.Enum):
    """Events a webhook can subscribe to."""
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    MESSAGE_FAILED = "message.failed"
    BUTTON_CLICKED = "button.clicked"
    REACTION_ADDED = "reaction.added"
    REACTION_REMOVED = "reaction.removed"


class DeliveryStatus(str, enum.Enum):
    """Webhook delivery status enum."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Webhook(Base, IdMixin, TimestampMixin):
    """Tenant-scoped HTTP callback subscription."""
    __tablename__ = "webhooks"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def subscribes_to(self, event: str) -> bool:
        return event in (self.events or [])

    def __repr__(self):
        return f"<Webhook(id={self.id}, tenant_id={self.tenant_id}, active={self.is_active})>"


class WebhookDelivery(Base, IdMixin, CreatedAtMixin):
    """Webhook delivery tracking, one row per (webhook, event occurrence)."""
    __tablename__ = "webhook_deliveries"

    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, webhook_id={self.webhook_id}, status={self.status})>"
