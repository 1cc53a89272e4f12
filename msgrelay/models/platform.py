"""
Platform configuration model.

A tenant's configured instance of a messaging platform (one Telegram bot,
one Discord application, ...). Rows are owned by the platform management
surface; the dispatch pipeline only reads them.
"""
from sqlalchemy import String, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from msgrelay.models.base import Base, IdMixin, TimestampMixin


class PlatformConfig(Base, IdMixin, TimestampMixin):
    """Configured platform instance with encrypted credentials."""
    __tablename__ = "platform_configs"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Packed AES-256-GCM ciphertext: ivHex:authTagHex:cipherHex
    credentials_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    webhook_token: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<PlatformConfig(id={self.id}, platform={self.platform}, active={self.is_active})>"
