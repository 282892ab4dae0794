"""Billing import and variance case schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from shiprate.models.billing import BillingSource, VarianceCaseStatus
from shiprate.schemas.base import BaseCreateSchema, BaseResponseSchema, DomainSchema


class BillingFact(DomainSchema):
    """
    One billed row. Parsed per record so a bad row is skipped rather
    than failing the batch.
    """
    provider: str
    awb: str = Field(..., min_length=1)
    shipment_id: Optional[UUID] = None
    invoice_ref: Optional[str] = None
    remittance_ref: Optional[str] = None
    billed_components: Dict[str, Decimal] = {}
    billed_total: Decimal = Field(..., ge=0)
    source: BillingSource
    billed_at: datetime
    raw_provider_payload: Optional[Dict[str, Any]] = None

    @field_validator("provider", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        return str(v).strip().lower() if v is not None else v

    @field_validator("awb", mode="before")
    @classmethod
    def strip_awb(cls, v):
        return str(v).strip() if v is not None else v


class BillingImportRequest(BaseCreateSchema):
    records: List[Dict[str, Any]]
    threshold_percent: Optional[float] = Field(None, ge=0, le=100)


class BillingImportSummary(BaseResponseSchema):
    imported_count: int = 0
    matched_shipment_count: int = 0
    auto_closed_count: int = 0
    open_case_count: int = 0
    skipped_count: int = 0
    variance_case_ids: List[UUID] = []


class VarianceResolution(DomainSchema):
    outcome: str = Field(..., min_length=1)
    adjusted_cost: Optional[Decimal] = Field(None, ge=0)
    refund_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class VarianceCaseUpdate(BaseCreateSchema):
    status: VarianceCaseStatus
    resolution: Optional[VarianceResolution] = None


class VarianceCaseResponse(BaseResponseSchema):
    id: UUID
    billing_record_id: UUID
    shipment_id: UUID
    provider: str
    awb: str
    expected_cost: Decimal
    billed_cost: Decimal
    variance_amount: Decimal
    variance_percent: Decimal
    threshold_percent: Decimal
    expected_source: str
    status: str
    resolution_outcome: Optional[str] = None
    adjusted_cost: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
