"""Wallet reservation model."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from shiprate.database import Base
from shiprate.db_types import UUIDType, UTCDateTime, utcnow


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    RELEASED = "released"
    DEBITED = "debited"


class WalletReservation(Base):
    """Hold placed on a seller wallet around a booking attempt."""
    __tablename__ = "wallet_reservations"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    seller_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=ReservationStatus.RESERVED.value,
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
