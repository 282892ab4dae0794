"""
Wallet collaborator used around the booking saga.

Only the reserve/debit/release contract lives here; balances, top-ups and
statements belong to the billing ledger. Every call is idempotent per
reference so a retried booking never double-holds or double-charges.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.core.exceptions import NotFoundError, ValidationError
from shiprate.models.wallet import ReservationStatus, WalletReservation

logger = logging.getLogger(__name__)


class WalletGateway(ABC):
    """Reservation contract consumed by the booking saga."""

    @abstractmethod
    async def reserve(
        self,
        amount: Decimal,
        ref: str,
        *,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID] = None,
    ) -> None:
        pass

    @abstractmethod
    async def release(self, ref: str) -> None:
        pass

    @abstractmethod
    async def debit(self, amount: Decimal, ref: str) -> None:
        pass


class LedgerWalletGateway(WalletGateway):
    """Keeps reservations as ``wallet_reservations`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get(self, ref: str) -> Optional[WalletReservation]:
        result = await self.db.execute(
            select(WalletReservation).where(WalletReservation.reference == ref)
        )
        return result.scalar_one_or_none()

    async def reserve(
        self,
        amount: Decimal,
        ref: str,
        *,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID] = None,
    ) -> None:
        existing = await self._get(ref)
        if existing is not None:
            return

        self.db.add(WalletReservation(
            owner_id=owner_id,
            seller_id=seller_id,
            reference=ref,
            amount=amount,
            status=ReservationStatus.RESERVED.value,
        ))
        await self.db.flush()
        logger.info(f"Reserved {amount} against {ref}")

    async def release(self, ref: str) -> None:
        reservation = await self._get(ref)
        if reservation is None:
            return
        if reservation.status == ReservationStatus.DEBITED.value:
            logger.warning(f"Reservation {ref} already debited, not releasing")
            return
        if reservation.status == ReservationStatus.RESERVED.value:
            reservation.status = ReservationStatus.RELEASED.value
            await self.db.flush()
            logger.info(f"Released reservation {ref}")

    async def debit(self, amount: Decimal, ref: str) -> None:
        reservation = await self._get(ref)
        if reservation is None:
            raise NotFoundError(f"No wallet reservation for {ref}")
        if reservation.status == ReservationStatus.DEBITED.value:
            return
        if reservation.status == ReservationStatus.RELEASED.value:
            raise ValidationError(f"Reservation {ref} was released and cannot be debited")

        reservation.amount = amount
        reservation.status = ReservationStatus.DEBITED.value
        await self.db.flush()
        logger.info(f"Debited {amount} for {ref}")
