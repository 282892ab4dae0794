"""Provider code -> courier adapter lookup."""
import logging
from typing import Dict, List, Optional

from shiprate.config import settings
from shiprate.core.exceptions import NotFoundError
from shiprate.couriers.base import CourierAdapter
from shiprate.services.cache_service import CacheService

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one adapter per provider code."""

    def __init__(self, adapters: Optional[List[CourierAdapter]] = None):
        self._adapters: Dict[str, CourierAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: CourierAdapter) -> None:
        self._adapters[adapter.provider.lower()] = adapter

    def get(self, provider: str) -> Optional[CourierAdapter]:
        return self._adapters.get(provider.lower())

    def require(self, provider: str) -> CourierAdapter:
        adapter = self.get(provider)
        if adapter is None:
            raise NotFoundError(f"No courier adapter registered for {provider}")
        return adapter

    def providers(self) -> List[str]:
        return list(self._adapters)

    def __contains__(self, provider: str) -> bool:
        return provider.lower() in self._adapters


def build_default_registry(cache: Optional[CacheService] = None) -> ProviderRegistry:
    """Wire one Shiprocket-routed adapter per configured courier."""
    from shiprate.couriers.shiprocket import ShiprocketAdapter

    registry = ProviderRegistry()
    for provider, courier_name in settings.SHIPROCKET_COURIER_NAMES.items():
        registry.register(ShiprocketAdapter(
            provider=provider,
            courier_name=courier_name,
            cache=cache,
            timeout=settings.provider_timeout(provider),
        ))
    logger.info(f"Courier registry ready: {', '.join(registry.providers())}")
    return registry
