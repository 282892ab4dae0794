from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.database import get_db
from shiprate.couriers.registry import ProviderRegistry, build_default_registry
from shiprate.services.cache_service import CacheService, get_cache
from shiprate.services.catalog_cache import CatalogCache
from shiprate.services.catalog_repository import CatalogRepository
from shiprate.services.quote_engine import QuoteEngine
from shiprate.services.quote_session_store import QuoteSessionStore
from shiprate.services.booking_saga import BookingService
from shiprate.services.wallet_service import LedgerWalletGateway


logger = logging.getLogger(__name__)

_registry: Optional[ProviderRegistry] = None


def _parse_uuid(value: str, header: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning(f"Invalid {header} header: {value}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} must be a UUID"
        )


async def get_owner_id(
    x_tenant_id: Annotated[str, Header(alias="X-Tenant-ID")],
) -> uuid.UUID:
    """Owner (tenant) every query is scoped to."""
    return _parse_uuid(x_tenant_id, "X-Tenant-ID")


async def get_seller_id(
    x_seller_id: Annotated[Optional[str], Header(alias="X-Seller-ID")] = None,
) -> Optional[uuid.UUID]:
    if not x_seller_id:
        return None
    return _parse_uuid(x_seller_id, "X-Seller-ID")


def get_registry() -> ProviderRegistry:
    """Process-wide courier registry; adapters keep circuit breaker state."""
    global _registry
    if _registry is None:
        _registry = build_default_registry(get_cache())
    return _registry


DB = Annotated[AsyncSession, Depends(get_db)]
OwnerId = Annotated[uuid.UUID, Depends(get_owner_id)]
SellerId = Annotated[Optional[uuid.UUID], Depends(get_seller_id)]
Registry = Annotated[ProviderRegistry, Depends(get_registry)]
Cache = Annotated[CacheService, Depends(get_cache)]


def get_quote_engine(db: DB, registry: Registry, cache: Cache) -> QuoteEngine:
    catalog = CatalogCache(cache, CatalogRepository(db))
    return QuoteEngine(catalog, registry, QuoteSessionStore(db))


def get_booking_service(db: DB, registry: Registry) -> BookingService:
    return BookingService(db, registry, LedgerWalletGateway(db))


QuoteEngineDep = Annotated[QuoteEngine, Depends(get_quote_engine)]
BookingServiceDep = Annotated[BookingService, Depends(get_booking_service)]
