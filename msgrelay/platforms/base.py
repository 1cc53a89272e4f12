"""
Platform adapter contract.

Concrete Discord/Telegram/WhatsApp/... clients live outside this package.
They only need to satisfy the protocols below; BasePlatformProvider is an
optional helper that supplies the per-connection adapter cache.
"""
from dataclasses import dataclass
from typing import Any, NamedTuple, Protocol, runtime_checkable

from msgrelay.platforms.envelope import MessageEnvelope


class AdapterKey(NamedTuple):
    """Adapter cache key: one adapter per (tenant, platform instance)."""
    tenant_id: str
    platform_id: str

    def __str__(self) -> str:
        return f"{self.tenant_id}:{self.platform_id}"


@dataclass(frozen=True)
class SendResult:
    provider_message_id: str


@runtime_checkable
class Adapter(Protocol):
    """Outbound transport for one configured platform instance."""

    async def send_message(self, envelope: MessageEnvelope, reply: dict[str, Any]) -> SendResult:
        ...


@runtime_checkable
class PlatformProvider(Protocol):
    """Factory and cache of adapters for one platform type."""

    name: str

    def get_adapter(self, key: AdapterKey) -> Adapter | None:
        ...

    async def create_adapter(self, key: AdapterKey, credentials: dict[str, Any]) -> Adapter:
        ...

    async def shutdown(self) -> None:
        ...


class BasePlatformProvider:
    """
    Provider helper holding the adapter cache.

    Subclasses implement `build_adapter`. Adapters must be safe for
    concurrent use once created; two jobs racing on a cache miss may both
    build one, and the last write wins.
    """

    name: str = ""
    display_name: str = ""

    def __init__(self):
        self._adapters: dict[AdapterKey, Adapter] = {}

    async def build_adapter(self, key: AdapterKey, credentials: dict[str, Any]) -> Adapter:
        raise NotImplementedError

    def get_adapter(self, key: AdapterKey) -> Adapter | None:
        return self._adapters.get(key)

    async def create_adapter(self, key: AdapterKey, credentials: dict[str, Any]) -> Adapter:
        adapter = await self.build_adapter(key, credentials)
        self._adapters[key] = adapter
        return adapter

    async def remove_adapter(self, key: AdapterKey) -> None:
        adapter = self._adapters.pop(key, None)
        close = getattr(adapter, "close", None)
        if close is not None:
            await close()

    async def is_healthy(self) -> bool:
        return True

    async def shutdown(self) -> None:
        for key in list(self._adapters):
            await self.remove_adapter(key)
