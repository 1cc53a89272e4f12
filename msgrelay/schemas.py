"""
Message job schemas.

A SendJob is the unit of work placed on the queue: one message, N targets.
It is immutable once submitted.
"""
from typing import Any
from pydantic import BaseModel, ConfigDict, Field


class Target(BaseModel):
    """One (platform instance, addressee type, addressee id) triple."""
    model_config = ConfigDict(frozen=True)

    platform_id: str
    type: str  # user, channel, group, ...
    id: str

    def key(self) -> tuple[str, str, str]:
        """Structural dedup key with surrounding whitespace removed."""
        return (self.platform_id.strip(), self.type.strip(), self.id.strip())


class MessageContent(BaseModel):
    """Content rendered by every target platform."""
    model_config = ConfigDict(frozen=True)

    subject: str | None = None
    text: str | None = None
    markdown: str | None = None
    html: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    buttons: list[dict[str, Any]] = Field(default_factory=list)
    embeds: list[dict[str, Any]] = Field(default_factory=list)
    platform_options: dict[str, Any] = Field(default_factory=dict)


class SendOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    reply_to: str | None = None
    silent: bool | None = None
    scheduled: str | None = None


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    tracking_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: str | None = None


class SendJob(BaseModel):
    """Request to deliver one message to one or more targets."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    targets: list[Target] = Field(min_length=1)
    content: MessageContent = Field(default_factory=MessageContent)
    options: SendOptions = Field(default_factory=SendOptions)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
