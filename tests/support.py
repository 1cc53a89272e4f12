"""
Test doubles shared across the test modules.
"""
from typing import Any

from msgrelay.platforms.base import AdapterKey, BasePlatformProvider, SendResult

TEST_ENCRYPTION_KEY = "4f" * 32

TENANT_A = "tenant-aaaa-0001"
TENANT_B = "tenant-bbbb-0002"


class FakeAdapter:
    """Adapter that records every send and can be told to fail."""

    def __init__(self, key: AdapterKey, credentials: dict[str, Any]):
        self.key = key
        self.credentials = credentials
        self.sent: list[tuple] = []
        self.fail_with: dict[str, Exception] = {}
        # Raw return values by thread id, in place of a SendResult
        self.replies: dict[str, Any] = {}

    async def send_message(self, envelope, reply):
        error = self.fail_with.get(reply["thread_id"])
        if error is not None:
            raise error
        self.sent.append((envelope, reply))
        if reply["thread_id"] in self.replies:
            return self.replies[reply["thread_id"]]
        return SendResult(provider_message_id=f"msg-{len(self.sent)}")


class FakeProvider(BasePlatformProvider):
    """Provider building FakeAdapters; counts how many it built."""

    def __init__(self, name: str = "telegram"):
        super().__init__()
        self.name = name
        self.built: list[FakeAdapter] = []
        self.closed = False

    async def build_adapter(self, key, credentials):
        adapter = FakeAdapter(key, credentials)
        self.built.append(adapter)
        return adapter

    async def shutdown(self):
        self.closed = True
        await super().shutdown()


class RecordingNotifier:
    """Stands in for WebhookNotifier and keeps every notify call."""

    def __init__(self, fail: bool = False):
        self.events: list[tuple[str, str, dict]] = []
        self.fail = fail

    async def notify(self, tenant_id, event, data):
        if self.fail:
            raise RuntimeError("notifier unavailable")
        self.events.append((tenant_id, getattr(event, "value", event), data))
        return 1

    def of_type(self, event: str) -> list[dict]:
        return [data for _, name, data in self.events if name == event]
