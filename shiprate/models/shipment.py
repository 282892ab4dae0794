"""Shipment, status history and operator follow-up models."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Integer, Text, Numeric, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiprate.database import Base
from shiprate.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class ShipmentStatus(str, Enum):
    """Booking lifecycle status of a shipment record."""
    BOOKING_IN_PROGRESS = "booking_in_progress"
    BOOKED = "booked"
    BOOKING_FAILED = "booking_failed"  # Carrier failed before an AWB
    BOOKING_PARTIAL = "booking_partial"  # AWB issued, later step failed
    CANCELLED = "cancelled"


class FollowUpType(str, Enum):
    MANUAL_AWB_CANCELLATION = "manual_awb_cancellation"


class FollowUpStatus(str, Enum):
    OPEN = "open"
    DONE = "done"


class Shipment(Base):
    """
    Shipment booked from a quote option.

    ``pricing_snapshot`` is written once, before the carrier is called, and
    is the finance anchor for reconciliation. Records are never deleted;
    failed bookings keep their row with a failure status.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("idx_shipment_owner_tracking", "owner_id", "tracking_id"),
        Index("idx_shipment_quote", "quote_session_id", "option_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    seller_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    quote_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    option_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(
        String(30),
        default=ShipmentStatus.BOOKING_IN_PROGRESS.value,
        nullable=False,
        index=True
    )
    tracking_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Carrier AWB"
    )
    label_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    carrier_reference: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Dual-ledger pricing
    pricing_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    sell_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    expected_cost_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    shipping_charge: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Legacy single-amount cost for shipments without a snapshot"
    )

    fulfillment_details: Mapped[dict] = mapped_column(JSONType, default=dict)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    booked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    status_history: Mapped[List["ShipmentStatusHistory"]] = relationship(
        "ShipmentStatusHistory",
        back_populates="shipment",
        order_by="ShipmentStatusHistory.created_at",
    )

    def __repr__(self) -> str:
        return f"<Shipment(id='{self.id}', status='{self.status}', awb='{self.tracking_id}')>"


class ShipmentStatusHistory(Base):
    """Append-only status trail."""
    __tablename__ = "shipment_status_history"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("shipments.id"),
        nullable=False,
        index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    shipment: Mapped["Shipment"] = relationship("Shipment", back_populates="status_history")


class ShipmentFollowUp(Base):
    """Operator task raised when compensation cannot finish automatically."""
    __tablename__ = "shipment_follow_ups"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("shipments.id"),
        nullable=False,
        index=True
    )
    follow_up_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=FollowUpStatus.OPEN.value, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
