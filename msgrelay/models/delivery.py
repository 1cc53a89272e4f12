"""
Delivery attempt model.

One row per (job, deduplicated target). Status only moves forward:
pending -> sent | failed.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, DateTime, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from msgrelay.models.base import Base, enum_values, IdMixin, TimestampMixin


class AttemptStatus(str, enum.Enum):
    """Delivery attempt status enum."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryAttempt(Base, IdMixin, TimestampMixin):
    """Persisted outcome of one target within one dispatch job."""
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        Index("ix_delivery_attempts_job_target", "job_id", "platform_id", "target_chat_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    platform_id: Mapped[str] = mapped_column(String(36), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_chat_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_content: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[AttemptStatus] = mapped_column(
        SQLEnum(AttemptStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=AttemptStatus.PENDING
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DeliveryAttempt(id={self.id}, job_id={self.job_id}, status={self.status})>"
