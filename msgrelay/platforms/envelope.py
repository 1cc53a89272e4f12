"""
Message envelope passed to platform adapters.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class UserRef:
    provider_user_id: str
    display: str | None = None
    global_user_id: str | None = None


@dataclass(frozen=True)
class MessageEnvelope:
    """Platform-neutral description of one outbound message (version "1")."""
    id: str
    ts: int
    channel: str
    tenant_id: str
    user: UserRef
    message: dict[str, Any]
    provider: dict[str, Any]
    thread_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    version: str = "1"


def make_envelope(
    channel: str,
    tenant_id: str,
    user: UserRef,
    message: dict[str, Any],
    provider: dict[str, Any],
    thread_id: str | None = None,
) -> MessageEnvelope:
    """Build an envelope with a fresh id and a millisecond timestamp."""
    return MessageEnvelope(
        id=str(uuid.uuid4()),
        ts=int(time.time() * 1000),
        channel=channel,
        tenant_id=tenant_id,
        thread_id=thread_id,
        user=user,
        message=message,
        provider=provider,
    )
