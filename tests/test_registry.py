"""
Platform registry tests.
"""
import pytest

from msgrelay.exceptions import ProviderNotFoundError
from msgrelay.platforms.base import AdapterKey, PlatformProvider
from msgrelay.platforms.registry import PlatformRegistry, load_registry
from tests.support import FakeProvider


class UnhealthyProvider(FakeProvider):
    async def is_healthy(self):
        raise ConnectionError("gateway unreachable")


def test_register_normalises_name():
    registry = PlatformRegistry()
    provider = FakeProvider("Discord")

    registry.register(provider)

    assert isinstance(provider, PlatformProvider)
    assert registry.get_provider("discord") is provider
    assert registry.get_provider("DISCORD") is provider
    assert registry.supported_platforms() == ["discord"]


def test_register_replaces_same_platform():
    registry = PlatformRegistry()
    first, second = FakeProvider("slack"), FakeProvider("Slack")

    registry.register(first)
    registry.register(second)

    assert registry.get_provider("slack") is second
    assert registry.all_providers() == [second]


async def test_adapter_created_once_per_key(registry, provider):
    key = AdapterKey("tenant-1", "platform-1")

    first = await registry.get_or_create_adapter("telegram", key, {"token": "a"})
    second = await registry.get_or_create_adapter("telegram", key, {"token": "b"})
    other = await registry.get_or_create_adapter("telegram", AdapterKey("tenant-1", "platform-2"), {"token": "c"})

    assert first is second
    assert other is not first
    assert first.credentials == {"token": "a"}
    assert len(provider.built) == 2


async def test_missing_provider(registry):
    with pytest.raises(ProviderNotFoundError, match="'whatsapp' not found"):
        await registry.get_or_create_adapter("whatsapp", AdapterKey("t", "p"), {})


async def test_health_status(registry):
    registry.register(UnhealthyProvider("matrix"))

    assert await registry.health_status() == {"telegram": True, "matrix": False}


async def test_shutdown_closes_providers(registry, provider):
    await registry.get_or_create_adapter("telegram", AdapterKey("t", "p"), {})

    await registry.shutdown()

    assert provider.closed is True
    assert provider.get_adapter(AdapterKey("t", "p")) is None


def test_load_registry_from_paths():
    registry = load_registry(["tests.support:FakeProvider"])

    [provider] = registry.all_providers()
    assert isinstance(provider, FakeProvider)
    assert registry.supported_platforms() == ["telegram"]


def test_adapter_key_str():
    assert str(AdapterKey("tenant-1", "platform-1")) == "tenant-1:platform-1"
