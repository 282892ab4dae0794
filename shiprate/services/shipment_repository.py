"""
Shipment persistence with optimistic locking.

Status changes go through ``transition``: a conditional UPDATE on
(id, version) plus one appended history row. There is no delete path; failed
bookings keep their record.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shiprate.config import settings
from shiprate.core.exceptions import NotFoundError, PersistenceConflict
from shiprate.db_types import utcnow
from shiprate.models.shipment import (
    FollowUpStatus,
    Shipment,
    ShipmentFollowUp,
    ShipmentStatus,
    ShipmentStatusHistory,
)
from shiprate.schemas.booking import PricingSnapshot
from shiprate.services.booking_state_machine import validate_shipment_transition

logger = logging.getLogger(__name__)


class ShipmentRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    def _base_query(self):
        return select(Shipment).options(selectinload(Shipment.status_history))

    async def get(self, owner_id: uuid.UUID, shipment_id: uuid.UUID) -> Shipment:
        result = await self.db.execute(
            self._base_query().where(
                Shipment.id == shipment_id,
                Shipment.owner_id == owner_id,
            )
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError(f"Shipment {shipment_id} not found")
        return shipment

    async def reload(self, shipment: Shipment) -> Shipment:
        result = await self.db.execute(
            self._base_query()
            .where(Shipment.id == shipment.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def list_by_key_prefix(self, owner_id: uuid.UUID, key_prefix: str) -> List[Shipment]:
        """Every attempt booked under one idempotency key prefix, oldest first."""
        result = await self.db.execute(
            self._base_query()
            .where(
                Shipment.owner_id == owner_id,
                Shipment.idempotency_key.startswith(key_prefix, autoescape=True),
            )
            .order_by(Shipment.attempt)
        )
        return list(result.scalars().all())

    async def find_by_tracking_id(self, owner_id: uuid.UUID, tracking_id: str) -> Optional[Shipment]:
        result = await self.db.execute(
            select(Shipment)
            .where(Shipment.owner_id == owner_id, Shipment.tracking_id == tracking_id)
            .order_by(Shipment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, owner_id: uuid.UUID, shipment_id: uuid.UUID) -> Optional[Shipment]:
        result = await self.db.execute(
            select(Shipment).where(Shipment.id == shipment_id, Shipment.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def create_in_progress(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
        idempotency_key: str,
        attempt: int,
        snapshot: PricingSnapshot,
        fulfillment_details: Dict[str, Any],
    ) -> Shipment:
        """Insert the shipment with its pricing snapshot before the carrier is called."""
        shipment = Shipment(
            owner_id=owner_id,
            seller_id=seller_id,
            quote_session_id=snapshot.quote_session_id,
            option_id=snapshot.option_id,
            idempotency_key=idempotency_key,
            attempt=attempt,
            provider=snapshot.provider,
            service_code=snapshot.service_code,
            status=ShipmentStatus.BOOKING_IN_PROGRESS.value,
            pricing_snapshot=snapshot.model_dump(mode="json"),
            sell_amount=snapshot.quoted_sell_amount,
            expected_cost_amount=snapshot.expected_cost_amount,
            fulfillment_details=fulfillment_details,
            version=1,
        )
        self.db.add(shipment)
        await self.db.flush()

        self.db.add(ShipmentStatusHistory(
            shipment_id=shipment.id,
            from_status=None,
            to_status=ShipmentStatus.BOOKING_IN_PROGRESS.value,
            note=f"Booking attempt {attempt} on {snapshot.provider}:{snapshot.service_code}",
        ))
        await self.db.flush()
        return await self.reload(shipment)

    async def transition(
        self,
        shipment: Shipment,
        to_status: str,
        note: Optional[str] = None,
        **values: Any,
    ) -> Shipment:
        """
        Move a shipment to ``to_status`` and append history.

        Retries on version conflicts, re-validating the move against the
        freshly loaded row each time.
        """
        for attempt in range(settings.PERSISTENCE_MAX_RETRIES):
            from_status = shipment.status
            validate_shipment_transition(from_status, to_status)

            result = await self.db.execute(
                update(Shipment)
                .where(Shipment.id == shipment.id, Shipment.version == shipment.version)
                .values(
                    status=to_status,
                    version=Shipment.version + 1,
                    updated_at=utcnow(),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                self.db.add(ShipmentStatusHistory(
                    shipment_id=shipment.id,
                    from_status=from_status,
                    to_status=to_status,
                    note=note,
                ))
                await self.db.flush()
                return await self.reload(shipment)

            logger.info(f"Version conflict on shipment {shipment.id}, attempt {attempt + 1}")
            shipment = await self.reload(shipment)

        raise PersistenceConflict(
            f"Shipment {shipment.id} kept changing; gave up after "
            f"{settings.PERSISTENCE_MAX_RETRIES} attempts"
        )

    async def open_follow_up(
        self,
        shipment: Shipment,
        follow_up_type: str,
        notes: Optional[str] = None,
    ) -> ShipmentFollowUp:
        follow_up = ShipmentFollowUp(
            shipment_id=shipment.id,
            follow_up_type=follow_up_type,
            status=FollowUpStatus.OPEN.value,
            provider=shipment.provider,
            tracking_id=shipment.tracking_id,
            notes=notes,
        )
        self.db.add(follow_up)
        await self.db.flush()
        return follow_up

    async def list_follow_ups(self, shipment_id: uuid.UUID) -> List[ShipmentFollowUp]:
        result = await self.db.execute(
            select(ShipmentFollowUp)
            .where(ShipmentFollowUp.shipment_id == shipment_id)
            .order_by(ShipmentFollowUp.created_at)
        )
        return list(result.scalars().all())
