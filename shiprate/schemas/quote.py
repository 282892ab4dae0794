"""Quote request, priced option and session schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import Field

from shiprate.models.catalog import PaymentMode
from shiprate.schemas.base import BaseCreateSchema, BaseResponseSchema, DomainSchema

Confidence = Literal["high", "medium", "low"]
PricingSource = Literal["live", "table", "hybrid"]

CONFIDENCE_ORDER = {"low": 0, "medium": 1, "high": 2}


def lowest_confidence(*levels: str) -> str:
    return min(levels, key=lambda level: CONFIDENCE_ORDER[level])


class Dimensions(DomainSchema):
    length_cm: Decimal
    width_cm: Decimal
    height_cm: Decimal


class QuoteRequest(BaseCreateSchema):
    """Input snapshot for one quote. Semantic checks run in the quote engine."""
    origin_pincode: str
    destination_pincode: str
    weight_kg: Decimal
    dimensions: Optional[Dimensions] = None
    payment_mode: PaymentMode = PaymentMode.PREPAID
    order_value: Decimal = Decimal("0")
    shipment_type: str = "forward"
    zone: Optional[str] = Field(None, description="Zone hint when no provider returns one")


# ============================================
# PRICING
# ============================================

class PriceBreakdown(DomainSchema):
    """Itemised result of the rate formula (or live/fallback pricing)."""
    source: Literal["table", "live", "fallback", "markup"] = "table"
    actual_weight_kg: Decimal = Decimal("0")
    volumetric_weight_kg: Decimal = Decimal("0")
    chargeable_weight_kg: Decimal = Decimal("0")
    weight_basis: str = "max"
    zone: Optional[str] = None
    zone_fallback_applied: bool = False

    base_charge: Decimal = Decimal("0")
    weight_charge: Decimal = Decimal("0")
    overage_units: Decimal = Decimal("0")
    freight_subtotal: Decimal = Decimal("0")

    cod_charge: Decimal = Decimal("0")
    cod_fallback_applied: bool = False
    fuel_surcharge: Decimal = Decimal("0")
    minimum_fare_adjustment: Decimal = Decimal("0")

    rto_charge: Decimal = Decimal("0")
    rto_fallback_applied: bool = False
    rto_included_in_total: bool = False

    tax_rate_percent: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    rate_card_id: Optional[UUID] = None


class QuoteOption(DomainSchema):
    option_id: str
    provider: str
    service_id: UUID
    service_code: str
    service_name: str
    chargeable_weight_kg: Decimal
    zone: Optional[str] = None

    cost_amount: Decimal
    cost_breakdown: PriceBreakdown
    sell_amount: Decimal
    sell_breakdown: PriceBreakdown
    margin_amount: Decimal
    margin_percent: Decimal

    eta_min_days: Optional[int] = None
    eta_max_days: Optional[int] = None
    confidence: Confidence
    pricing_source: PricingSource
    rank_score: float = 0.0
    tags: List[str] = []

    @property
    def amount(self) -> Decimal:
        """Seller-facing price used for ranking."""
        return self.sell_amount


# ============================================
# SESSION
# ============================================

class QuoteSessionResponse(BaseResponseSchema):
    session_id: UUID
    options: List[QuoteOption]
    recommendation: Optional[QuoteOption] = None
    recommended_option_id: Optional[str] = None
    selected_option_id: Optional[str] = None
    expires_at: datetime
    confidence: Confidence
    provider_timeouts: Dict[str, bool] = {}
    provider_errors: Dict[str, str] = {}


class SelectOptionRequest(BaseCreateSchema):
    option_id: str = Field(..., min_length=1)


class SelectOptionResponse(BaseResponseSchema):
    session_id: UUID
    selected_option_id: str
    selected_at: datetime
