"""Catalog value objects: service entries, rate card formulas and seller policy."""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from shiprate.models.catalog import AutoPriority, RateCategory, SelectionMode
from shiprate.schemas.base import DomainSchema


# ============================================
# RATE CARD FORMULA
# ============================================

class WeightSlab(DomainSchema):
    """Charge for chargeable weight in ``[min_kg, max_kg)``."""
    min_kg: Decimal = Field(..., ge=0)
    max_kg: Decimal = Field(..., gt=0)
    charge: Decimal = Field(..., ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_kg <= self.min_kg:
            raise ValueError("max_kg must be greater than min_kg")
        return self


class RtoRule(DomainSchema):
    type: Literal["flat", "percentage"]
    amount: Decimal = Field(Decimal("0"), ge=0)
    percent: Decimal = Field(Decimal("0"), ge=0, le=100, description="Percent of freight subtotal")


class ZoneRule(DomainSchema):
    zone_key: str = Field(..., min_length=1)
    slabs: List[WeightSlab] = Field(..., min_length=1)
    additional_per_kg: Optional[Decimal] = Field(None, ge=0, description="Overrides the card rate")
    rto_rule: Optional[RtoRule] = None


class RoundingPolicy(DomainSchema):
    unit: Decimal = Field(Decimal("1"), gt=0, description="Overage rounding step in kg")
    mode: Literal["ceil", "floor", "nearest"] = "ceil"


class CodSlab(DomainSchema):
    up_to_order_value: Decimal = Field(..., ge=0)
    charge: Decimal = Field(..., ge=0)


class CodRule(DomainSchema):
    type: Literal["flat", "percentage", "slab"]
    amount: Decimal = Field(Decimal("0"), ge=0)
    percent: Decimal = Field(Decimal("0"), ge=0, le=100)
    min_charge: Optional[Decimal] = Field(None, ge=0)
    max_charge: Optional[Decimal] = Field(None, ge=0)
    slabs: List[CodSlab] = []


class FuelRule(DomainSchema):
    percent: Decimal = Field(..., ge=0, le=100)
    base: Literal["freight", "freight_cod"] = "freight"


class RateCardConfig(DomainSchema):
    weight_basis: Literal["actual", "volumetric", "max"] = "max"
    dim_divisor: int = Field(5000, gt=0)
    zone_rules: List[ZoneRule] = []
    rounding: RoundingPolicy = RoundingPolicy()
    additional_per_kg: Decimal = Field(Decimal("0"), ge=0)
    cod_rule: Optional[CodRule] = None
    fuel_rule: Optional[FuelRule] = None
    minimum_fare: Decimal = Field(Decimal("0"), ge=0)
    tax_rate_percent: Decimal = Field(Decimal("18"), ge=0, le=100)
    include_rto_in_total: bool = False


class RateCard(DomainSchema):
    id: UUID
    owner_id: UUID
    service_id: UUID
    provider: str
    service_code: str
    card_type: Literal["cost", "sell"]
    rate_category: str = RateCategory.DEFAULT.value
    seller_id: Optional[UUID] = None
    effective_from: datetime
    effective_to: Optional[datetime] = None
    config: RateCardConfig

    def is_effective(self, at: datetime) -> bool:
        if self.effective_from > at:
            return False
        return self.effective_to is None or at < self.effective_to


# ============================================
# SERVICE CATALOG
# ============================================

class ServiceCatalogEntry(DomainSchema):
    id: UUID
    owner_id: UUID
    provider: str
    code: str
    name: str
    min_weight_kg: Optional[Decimal] = None
    max_weight_kg: Optional[Decimal] = None
    max_cod_value: Optional[Decimal] = None
    max_prepaid_value: Optional[Decimal] = None
    payment_modes: List[str] = []
    zone_support: List[str] = []
    sla_min_days: Optional[int] = None
    sla_max_days: Optional[int] = None

    @field_validator("payment_modes", "zone_support", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return v or []


# ============================================
# SELLER POLICY
# ============================================

class SellerPolicy(DomainSchema):
    allowed_providers: List[str] = []
    blocked_providers: List[str] = []
    allowed_services: List[str] = []
    blocked_services: List[str] = []
    selection_mode: SelectionMode = SelectionMode.MANUAL_WITH_RECOMMENDATION
    auto_priority: AutoPriority = AutoPriority.BALANCED
    balanced_delta_percent: Decimal = Field(Decimal("5"), ge=0, le=100)
    rate_category: RateCategory = RateCategory.DEFAULT

    @field_validator(
        "allowed_providers", "blocked_providers", "allowed_services", "blocked_services",
        mode="before"
    )
    @classmethod
    def normalize_codes(cls, v):
        return [str(item).strip().lower() for item in (v or []) if str(item).strip()]

    @classmethod
    def default(cls) -> "SellerPolicy":
        return cls()
