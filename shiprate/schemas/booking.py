"""Book-from-quote request, pricing snapshot and shipment schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import Field

from shiprate.schemas.base import BaseCreateSchema, BaseResponseSchema, DomainSchema
from shiprate.schemas.quote import PriceBreakdown


class Address(DomainSchema):
    name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    address_2: str = ""
    email: str = ""


class PackageItem(DomainSchema):
    name: str
    sku: str
    units: int = Field(1, ge=1)
    selling_price: Decimal = Field(Decimal("0"), ge=0)


class FulfillmentDetails(DomainSchema):
    order_reference: str
    pickup_address: Address
    delivery_address: Address
    items: List[PackageItem] = []
    pickup_location: str = ""


class BookFromQuoteRequest(BaseCreateSchema):
    session_id: UUID
    option_id: str = Field(..., min_length=1)
    fulfillment_details: FulfillmentDetails
    allow_fallback: bool = Field(
        False,
        description="Try the next-ranked option when the carrier fails before issuing an AWB"
    )


class PricingSnapshot(DomainSchema):
    """Dual-ledger pricing written once at booking time."""
    quote_session_id: UUID
    option_id: str
    provider: str
    service_id: UUID
    service_code: str
    service_name: str
    quoted_sell_amount: Decimal
    expected_cost_amount: Decimal
    expected_margin_amount: Decimal
    expected_margin_percent: Decimal
    chargeable_weight_kg: Decimal
    zone: Optional[str] = None
    pricing_source: str
    confidence: str
    calculated_at: datetime
    sell_breakdown: PriceBreakdown
    cost_breakdown: PriceBreakdown


class BookingResult(BaseResponseSchema):
    shipment_id: UUID
    tracking_id: Optional[str] = None
    label_ref: Optional[str] = None
    status: str
    attempt: int
    option_id: str
    pricing_snapshot: PricingSnapshot
    replayed: bool = False


class ShipmentStatusHistoryResponse(BaseResponseSchema):
    from_status: Optional[str] = None
    to_status: str
    note: Optional[str] = None
    created_at: datetime


class ShipmentResponse(BaseResponseSchema):
    id: UUID
    quote_session_id: Optional[UUID] = None
    option_id: Optional[str] = None
    idempotency_key: str
    attempt: int
    provider: str
    service_code: str
    status: str
    tracking_id: Optional[str] = None
    label_ref: Optional[str] = None
    pricing_snapshot: Optional[PricingSnapshot] = None
    sell_amount: Optional[Decimal] = None
    expected_cost_amount: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    version: int
    booked_at: Optional[datetime] = None
    created_at: datetime
    status_history: List[ShipmentStatusHistoryResponse] = []
