"""
Platform adapter registry.

Maps a platform-type string ("telegram", "discord", ...) to the provider
that creates adapters for it.
"""
import importlib
from typing import Any

from msgrelay.exceptions import ProviderNotFoundError
from msgrelay.logging_config import get_logger
from msgrelay.platforms.base import Adapter, AdapterKey, PlatformProvider

log = get_logger(component="platform_registry")


class PlatformRegistry:
    """Registry of platform providers keyed by lowercase platform name."""

    def __init__(self):
        self._providers: dict[str, PlatformProvider] = {}

    def register(self, provider: PlatformProvider) -> None:
        name = provider.name.lower()
        if name in self._providers:
            log.warning("platform_provider_overwritten", platform=name)
        self._providers[name] = provider
        log.info("platform_provider_registered", platform=name)

    def get_provider(self, platform: str) -> PlatformProvider | None:
        return self._providers.get(platform.lower())

    def all_providers(self) -> list[PlatformProvider]:
        return list(self._providers.values())

    def supported_platforms(self) -> list[str]:
        return list(self._providers)

    async def get_or_create_adapter(
        self,
        platform: str,
        key: AdapterKey,
        credentials: dict[str, Any],
    ) -> Adapter:
        """
        Return the cached adapter for `key`, creating it on a miss.

        Raises:
            ProviderNotFoundError: If no provider is registered for `platform`
        """
        provider = self.get_provider(platform)
        if provider is None:
            raise ProviderNotFoundError(f"Platform provider '{platform}' not found")

        adapter = provider.get_adapter(key)
        if adapter is None:
            adapter = await provider.create_adapter(key, credentials)
        return adapter

    async def health_status(self) -> dict[str, bool]:
        status = {}
        for name, provider in self._providers.items():
            check = getattr(provider, "is_healthy", None)
            try:
                status[name] = bool(await check()) if check else True
            except Exception as e:
                log.error("platform_health_check_failed", platform=name, error=str(e))
                status[name] = False
        return status

    async def shutdown(self) -> None:
        for provider in self.all_providers():
            try:
                await provider.shutdown()
            except Exception as e:
                log.warning("platform_provider_shutdown_failed", platform=provider.name, error=str(e))


def load_registry(provider_paths: list[str]) -> PlatformRegistry:
    """
    Build a registry from "package.module:ClassName" provider paths.

    Each class is instantiated without arguments.
    """
    registry = PlatformRegistry()
    for path in provider_paths:
        module_name, _, class_name = path.partition(":")
        provider_cls = getattr(importlib.import_module(module_name), class_name)
        registry.register(provider_cls())
    return registry
