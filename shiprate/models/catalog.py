"""Service catalog, rate card and seller policy models."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Boolean, ForeignKey, Integer, Numeric, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shiprate.database import Base
from shiprate.db_types import JSONType, UUIDType, UTCDateTime, utcnow


# ============================================
# ENUMS
# ============================================

class PaymentMode(str, Enum):
    PREPAID = "prepaid"
    COD = "cod"


class RateCardType(str, Enum):
    """Which ledger a card prices: what we pay or what we charge."""
    COST = "cost"
    SELL = "sell"


class SelectionMode(str, Enum):
    MANUAL_WITH_RECOMMENDATION = "manual_with_recommendation"
    MANUAL_ONLY = "manual_only"
    AUTO = "auto"


class AutoPriority(str, Enum):
    PRICE = "price"
    SPEED = "speed"
    BALANCED = "balanced"


class RateCategory(str, Enum):
    """Sell card tiers, searched from the seller's tier down to default."""
    CUSTOM = "custom"
    ADVANCED = "advanced"
    STANDARD = "standard"
    BASIC = "basic"
    DEFAULT = "default"


# ============================================
# SERVICE CATALOG
# ============================================

class CourierService(Base):
    """
    A courier service offered by a provider (e.g. delhivery surface).

    Constraints here are hard eligibility rules; an empty list means
    no restriction.
    """
    __tablename__ = "courier_services"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider", "code", name="uq_courier_service"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="velocity, delhivery, ekart"
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Constraints
    min_weight_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    max_weight_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    max_cod_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    max_prepaid_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    payment_modes: Mapped[List[str]] = mapped_column(JSONType, default=list)
    zone_support: Mapped[List[str]] = mapped_column(
        JSONType,
        default=list,
        comment="Zone keys; empty or 'all' means every zone"
    )

    # SLA window in days
    sla_min_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sla_max_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    rate_cards: Mapped[List["ServiceRateCard"]] = relationship(
        "ServiceRateCard",
        back_populates="service",
    )

    def __repr__(self) -> str:
        return f"<CourierService(provider='{self.provider}', code='{self.code}')>"


# ============================================
# RATE CARDS
# ============================================

class ServiceRateCard(Base):
    """
    Cost or sell rate card for one service.

    The formula (zone slabs, overage, rounding, COD, fuel, RTO, minimum
    fare, tax) lives in ``config`` and is validated by
    ``shiprate.schemas.catalog.RateCardConfig``. Active windows are
    ``[effective_from, effective_to)`` and must not overlap per
    (owner, service, card_type, rate_category, seller).
    """
    __tablename__ = "service_rate_cards"
    __table_args__ = (
        Index(
            "idx_rate_card_lookup",
            "owner_id", "service_id", "card_type", "rate_category"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    service_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("courier_services.id", ondelete="CASCADE"),
        nullable=False,
    )

    card_type: Mapped[str] = mapped_column(String(10), nullable=False, comment="cost, sell")
    rate_category: Mapped[str] = mapped_column(
        String(20),
        default=RateCategory.DEFAULT.value,
        nullable=False,
        comment="custom, advanced, standard, basic, default"
    )
    seller_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Set for seller-specific custom sell cards"
    )

    config: Mapped[dict] = mapped_column(JSONType, nullable=False)

    effective_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    service: Mapped["CourierService"] = relationship("CourierService", back_populates="rate_cards")

    def __repr__(self) -> str:
        return f"<ServiceRateCard(service_id='{self.service_id}', type='{self.card_type}')>"


# ============================================
# SELLER POLICY
# ============================================

class SellerCourierPolicy(Base):
    """Allow/block lists and recommendation settings for one seller."""
    __tablename__ = "seller_courier_policies"
    __table_args__ = (
        UniqueConstraint("owner_id", "seller_id", name="uq_seller_courier_policy"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    seller_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)

    allowed_providers: Mapped[List[str]] = mapped_column(JSONType, default=list)
    blocked_providers: Mapped[List[str]] = mapped_column(JSONType, default=list)
    allowed_services: Mapped[List[str]] = mapped_column(JSONType, default=list)
    blocked_services: Mapped[List[str]] = mapped_column(JSONType, default=list)

    selection_mode: Mapped[str] = mapped_column(
        String(40),
        default=SelectionMode.MANUAL_WITH_RECOMMENDATION.value,
        nullable=False
    )
    auto_priority: Mapped[str] = mapped_column(
        String(20),
        default=AutoPriority.BALANCED.value,
        nullable=False
    )
    balanced_delta_percent: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=5)
    rate_category: Mapped[str] = mapped_column(
        String(20),
        default=RateCategory.DEFAULT.value,
        nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
