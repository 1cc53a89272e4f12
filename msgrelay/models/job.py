"""
Dispatch job model.

Durable record of one "send to N targets" job while it moves through the
queue. The ARQ job id is the same value as the row id.

SECURITY: Tenant-facing queries MUST include a tenant_id filter.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from msgrelay.models.base import Base, enum_values, IdMixin, TimestampMixin


class JobState(str, enum.Enum):
    """Queue state of a dispatch job."""
    QUEUED = "queued"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class DispatchJob(Base, IdMixin, TimestampMixin):
    """
    Dispatch job record.

    `payload` holds the serialized SendJob, `result` the aggregate returned
    by the dispatch processor once the job completes.
    """
    __tablename__ = "dispatch_jobs"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    state: Mapped[JobState] = mapped_column(
        SQLEnum(JobState, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=JobState.QUEUED,
        index=True
    )
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processed_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DispatchJob(id={self.id}, state={self.state}, attempts={self.attempts_made})>"
