"""
Provider Adapter Registry

Maps provider identifiers and their aliases (case-insensitive) to the single
adapter instance serving that provider. Adding a provider means writing one
adapter and registering it here; nothing else branches on provider identity.
"""

from collections.abc import Iterable
from typing import Optional

import httpx

from costingest.shared.adapters.base import BaseAdapter
from costingest.shared.adapters.role_delegation import RoleDelegationService
from costingest.shared.core.exceptions import ConfigurationError
from costingest.shared.core.retry import ProviderCallExecutor


def _normalize(provider_id: str) -> str:
    return provider_id.strip().lower()


class AdapterRegistry:
    def __init__(self, adapters: Iterable[BaseAdapter] = ()):
        self._adapters: list[BaseAdapter] = []
        self._lookup: dict[str, BaseAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BaseAdapter) -> None:
        keys = [_normalize(adapter.provider_id), *(_normalize(a) for a in adapter.aliases)]
        for key in keys:
            existing = self._lookup.get(key)
            if existing is not None and existing is not adapter:
                raise ConfigurationError(
                    f"Provider key '{key}' already registered to {existing.provider_id}",
                    details={"key": key, "provider": adapter.provider_id},
                )
        for key in keys:
            self._lookup[key] = adapter
        self._adapters.append(adapter)

    def get(self, provider_id: Optional[str]) -> Optional[BaseAdapter]:
        """Adapter for an id or alias; None means the provider is unsupported."""
        if not provider_id:
            return None
        return self._lookup.get(_normalize(provider_id))

    def is_supported(self, provider_id: Optional[str]) -> bool:
        return self.get(provider_id) is not None

    def all(self) -> list[BaseAdapter]:
        return list(self._adapters)


def build_default_registry(
    executor: ProviderCallExecutor,
    http_client: httpx.AsyncClient,
    delegation: RoleDelegationService,
) -> AdapterRegistry:
    """Registry with every built-in provider."""
    from costingest.shared.adapters.aws import AWSAdapter
    from costingest.shared.adapters.azure import AzureAdapter
    from costingest.shared.adapters.digitalocean import DigitalOceanAdapter
    from costingest.shared.adapters.gcp import GCPAdapter
    from costingest.shared.adapters.ibm import IBMCloudAdapter
    from costingest.shared.adapters.linode import LinodeAdapter
    from costingest.shared.adapters.mongodb import MongoDBAtlasAdapter
    from costingest.shared.adapters.vultr import VultrAdapter

    return AdapterRegistry(
        [
            AWSAdapter(executor, delegation),
            AzureAdapter(executor, http_client),
            GCPAdapter(executor),
            DigitalOceanAdapter(executor, http_client),
            LinodeAdapter(executor, http_client),
            VultrAdapter(executor, http_client),
            IBMCloudAdapter(executor, http_client),
            MongoDBAtlasAdapter(executor, http_client),
        ]
    )

