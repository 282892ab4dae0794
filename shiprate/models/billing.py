"""Carrier billing records and pricing variance cases."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Numeric, ForeignKey, UniqueConstraint, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiprate.database import Base
from shiprate.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class BillingSource(str, Enum):
    API = "api"
    WEBHOOK = "webhook"
    MIS = "mis"
    MANUAL = "manual"


class VarianceCaseStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    WAIVED = "waived"


class VarianceOutcome(str, Enum):
    AUTO_CLOSED_WITHIN_THRESHOLD = "auto_closed_within_threshold"
    CARRIER_CREDIT = "carrier_credit"
    SELLER_RECHARGE = "seller_recharge"
    ACCEPTED = "accepted"
    WRITTEN_OFF = "written_off"


class CarrierBillingRecord(Base):
    """
    One billed fact from a carrier invoice, MIS sheet or webhook.

    ``natural_key`` hashes (owner, provider, awb, source, amount, billed_at,
    invoice_ref) so re-imports upsert onto the same row.
    """
    __tablename__ = "carrier_billing_records"
    __table_args__ = (
        UniqueConstraint("natural_key", name="uq_billing_natural_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    natural_key: Mapped[str] = mapped_column(String(64), nullable=False)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    awb: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    shipment_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    invoice_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    remittance_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    billed_components: Mapped[dict] = mapped_column(JSONType, default=dict)
    billed_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, comment="api, webhook, mis, manual")
    billed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    raw_provider_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class PricingVarianceCase(Base):
    """Expected-vs-billed comparison for one billing record."""
    __tablename__ = "pricing_variance_cases"
    __table_args__ = (
        UniqueConstraint("owner_id", "billing_record_id", name="uq_variance_case_billing_record"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    billing_record_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("carrier_billing_records.id"),
        nullable=False
    )
    shipment_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    awb: Mapped[str] = mapped_column(String(100), nullable=False)

    expected_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    billed_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance_percent: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    threshold_percent: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    expected_source: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="pricing_snapshot or legacy_shipping_charge"
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    resolution_outcome: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    adjusted_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    billing_record: Mapped["CarrierBillingRecord"] = relationship("CarrierBillingRecord")
