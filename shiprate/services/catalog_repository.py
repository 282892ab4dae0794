"""Database access for services, rate cards and seller policies."""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.core.exceptions import ValidationError, NotFoundError
from shiprate.models.catalog import CourierService, ServiceRateCard, SellerCourierPolicy
from shiprate.schemas.catalog import (
    RateCard, RateCardConfig, SellerPolicy, ServiceCatalogEntry
)

logger = logging.getLogger(__name__)


def _rate_card_from_row(card: ServiceRateCard, service: CourierService) -> RateCard:
    return RateCard(
        id=card.id,
        owner_id=card.owner_id,
        service_id=card.service_id,
        provider=service.provider,
        service_code=service.code,
        card_type=card.card_type,
        rate_category=card.rate_category,
        seller_id=card.seller_id,
        effective_from=card.effective_from,
        effective_to=card.effective_to,
        config=RateCardConfig.model_validate(card.config),
    )


class CatalogRepository:
    """Loads catalog entities as domain value objects."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active_services(self, owner_id: uuid.UUID) -> List[ServiceCatalogEntry]:
        stmt = (
            select(CourierService)
            .where(
                CourierService.owner_id == owner_id,
                CourierService.is_active == True,  # noqa: E712
            )
            .order_by(CourierService.provider, CourierService.code)
        )
        result = await self.db.execute(stmt)
        return [ServiceCatalogEntry.model_validate(row) for row in result.scalars().all()]

    async def get_policy(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
    ) -> Optional[SellerPolicy]:
        if seller_id is None:
            return None
        stmt = select(SellerCourierPolicy).where(
            SellerCourierPolicy.owner_id == owner_id,
            SellerCourierPolicy.seller_id == seller_id,
        )
        result = await self.db.execute(stmt)
        row = result.scalar_one_or_none()
        return SellerPolicy.model_validate(row) if row else None

    async def list_rate_cards(
        self,
        owner_id: uuid.UUID,
        provider: str,
        service_code: str,
    ) -> List[RateCard]:
        """All active cost and sell cards for one service, any window."""
        stmt = (
            select(ServiceRateCard, CourierService)
            .join(CourierService, ServiceRateCard.service_id == CourierService.id)
            .where(
                ServiceRateCard.owner_id == owner_id,
                ServiceRateCard.is_active == True,  # noqa: E712
                CourierService.provider == provider,
                CourierService.code == service_code,
            )
            .order_by(ServiceRateCard.effective_from)
        )
        result = await self.db.execute(stmt)
        return [_rate_card_from_row(card, service) for card, service in result.all()]

    async def add_rate_card(
        self,
        owner_id: uuid.UUID,
        service_id: uuid.UUID,
        card_type: str,
        config: RateCardConfig,
        effective_from: datetime,
        effective_to: Optional[datetime] = None,
        rate_category: str = "default",
        seller_id: Optional[uuid.UUID] = None,
    ) -> ServiceRateCard:
        """
        Store a rate card after checking that no active card of the same
        scope overlaps its ``[effective_from, effective_to)`` window.
        """
        if effective_to is not None and effective_to <= effective_from:
            raise ValidationError("effective_to must be after effective_from")

        service = await self.db.get(CourierService, service_id)
        if service is None or service.owner_id != owner_id:
            raise NotFoundError(f"Service {service_id} not found")

        conditions = [
            ServiceRateCard.owner_id == owner_id,
            ServiceRateCard.service_id == service_id,
            ServiceRateCard.card_type == card_type,
            ServiceRateCard.rate_category == rate_category,
            ServiceRateCard.is_active == True,  # noqa: E712
            or_(
                ServiceRateCard.effective_to.is_(None),
                ServiceRateCard.effective_to > effective_from,
            ),
        ]
        conditions.append(
            ServiceRateCard.seller_id.is_(None) if seller_id is None
            else ServiceRateCard.seller_id == seller_id
        )
        if effective_to is not None:
            conditions.append(ServiceRateCard.effective_from < effective_to)

        result = await self.db.execute(select(ServiceRateCard.id).where(and_(*conditions)).limit(1))
        clash = result.scalar_one_or_none()
        if clash:
            raise ValidationError(
                "Rate card window overlaps an active card",
                details={"conflicting_card_id": str(clash)},
            )

        card = ServiceRateCard(
            owner_id=owner_id,
            service_id=service_id,
            card_type=card_type,
            rate_category=rate_category,
            seller_id=seller_id,
            config=config.model_dump(mode="json"),
            effective_from=effective_from,
            effective_to=effective_to,
        )
        self.db.add(card)
        await self.db.flush()
        logger.info(
            f"Rate card {card.id} added for service {service.provider}:{service.code} "
            f"({card_type}/{rate_category})"
        )
        return card
