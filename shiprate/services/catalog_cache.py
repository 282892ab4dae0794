"""
Read-through catalog cache.

The quote engine reads services, seller policy and rate cards through
``CatalogReader`` and never touches storage itself. ``CatalogCache`` backs
that interface with the owner-scoped cache service and a repository
loader; tests swap in an in-memory reader.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from shiprate.config import settings
from shiprate.models.catalog import RateCategory, RateCardType
from shiprate.schemas.catalog import RateCard, SellerPolicy, ServiceCatalogEntry
from shiprate.services.cache_service import CacheService
from shiprate.services.catalog_repository import CatalogRepository

logger = logging.getLogger(__name__)

# Sell card search order, starting at the seller's own tier
CATEGORY_CHAIN = [
    RateCategory.CUSTOM.value,
    RateCategory.ADVANCED.value,
    RateCategory.STANDARD.value,
    RateCategory.BASIC.value,
    RateCategory.DEFAULT.value,
]


class CatalogReader(ABC):
    """Catalog lookups the quote engine depends on."""

    @abstractmethod
    async def get_policy(
        self, owner_id: uuid.UUID, seller_id: Optional[uuid.UUID]
    ) -> Optional[SellerPolicy]:
        pass

    @abstractmethod
    async def list_services(self, owner_id: uuid.UUID) -> List[ServiceCatalogEntry]:
        pass

    @abstractmethod
    async def get_rate_cards(
        self, owner_id: uuid.UUID, provider: str, service_code: str
    ) -> List[RateCard]:
        pass


class CatalogCache(CatalogReader):
    """Read-through cache keyed by (owner, provider, service)."""

    def __init__(
        self,
        cache: CacheService,
        repository: CatalogRepository,
        ttl: Optional[int] = None,
    ):
        self.cache = cache
        self.repository = repository
        self.ttl = ttl or settings.CATALOG_CACHE_TTL

    async def get_policy(
        self, owner_id: uuid.UUID, seller_id: Optional[uuid.UUID]
    ) -> Optional[SellerPolicy]:
        if seller_id is None:
            return None
        key = f"policy:{seller_id}"
        cached = await self.cache.get(str(owner_id), key)
        if cached is not None:
            return SellerPolicy.model_validate(cached) if cached else None

        policy = await self.repository.get_policy(owner_id, seller_id)
        # Cache misses too, as an empty dict
        await self.cache.set(
            str(owner_id), key, policy.model_dump(mode="json") if policy else {}, self.ttl
        )
        return policy

    async def list_services(self, owner_id: uuid.UUID) -> List[ServiceCatalogEntry]:
        cached = await self.cache.get(str(owner_id), "services")
        if cached is not None:
            return [ServiceCatalogEntry.model_validate(item) for item in cached]

        services = await self.repository.list_active_services(owner_id)
        await self.cache.set(
            str(owner_id), "services", [s.model_dump(mode="json") for s in services], self.ttl
        )
        return services

    async def get_rate_cards(
        self, owner_id: uuid.UUID, provider: str, service_code: str
    ) -> List[RateCard]:
        key = f"cards:{provider}:{service_code}"
        cached = await self.cache.get(str(owner_id), key)
        if cached is not None:
            return [RateCard.model_validate(item) for item in cached]

        cards = await self.repository.list_rate_cards(owner_id, provider, service_code)
        await self.cache.set(
            str(owner_id), key, [c.model_dump(mode="json") for c in cards], self.ttl
        )
        return cards

    async def invalidate(self, owner_id: uuid.UUID) -> int:
        """Drop all cached catalog entries for an owner."""
        count = await self.cache.clear_pattern(str(owner_id), "services*")
        count += await self.cache.clear_pattern(str(owner_id), "policy:*")
        count += await self.cache.clear_pattern(str(owner_id), "cards:*")
        logger.info(f"Invalidated {count} catalog cache entries for owner {owner_id}")
        return count


# ============================================
# CARD SELECTION
# ============================================

def _latest_effective(cards: List[RateCard], at: datetime) -> Optional[RateCard]:
    effective = [c for c in cards if c.is_effective(at)]
    if not effective:
        return None
    return max(effective, key=lambda c: c.effective_from)


def select_cost_card(cards: List[RateCard], at: datetime) -> Optional[RateCard]:
    cost_cards = [
        c for c in cards
        if c.card_type == RateCardType.COST.value and c.seller_id is None
    ]
    return _latest_effective(cost_cards, at)


def select_sell_card(
    cards: List[RateCard],
    at: datetime,
    seller_id: Optional[uuid.UUID] = None,
    category: str = RateCategory.DEFAULT.value,
) -> Optional[RateCard]:
    """Seller custom card first, then the category chain down to default."""
    sell_cards = [c for c in cards if c.card_type == RateCardType.SELL.value]

    if seller_id is not None:
        custom = _latest_effective([c for c in sell_cards if c.seller_id == seller_id], at)
        if custom:
            return custom

    shared = [c for c in sell_cards if c.seller_id is None]
    start = CATEGORY_CHAIN.index(category) if category in CATEGORY_CHAIN else len(CATEGORY_CHAIN) - 1
    for tier in CATEGORY_CHAIN[start:]:
        card = _latest_effective([c for c in shared if c.rate_category == tier], at)
        if card:
            return card
    return None
