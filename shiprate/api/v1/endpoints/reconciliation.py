"""Carrier billing import and variance case endpoints."""
from typing import List, Optional
import uuid

from fastapi import APIRouter, Query

from shiprate.api.deps import DB, OwnerId
from shiprate.models.billing import VarianceCaseStatus
from shiprate.schemas.billing import (
    BillingImportRequest,
    BillingImportSummary,
    VarianceCaseResponse,
    VarianceCaseUpdate,
)
from shiprate.services.reconciliation_service import ReconciliationService


router = APIRouter()


@router.post("/billing-import", response_model=BillingImportSummary)
async def import_billing(
    data: BillingImportRequest,
    owner_id: OwnerId,
    db: DB,
):
    """
    Import carrier billing facts and compare them with expected cost.

    Invalid rows are counted in `skipped_count`. Re-importing the same
    batch does not create duplicates.
    """
    service = ReconciliationService(db)
    return await service.import_billing(owner_id, data.records, data.threshold_percent)


@router.get("/variance-cases", response_model=List[VarianceCaseResponse])
async def list_variance_cases(
    owner_id: OwnerId,
    db: DB,
    case_status: Optional[VarianceCaseStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    service = ReconciliationService(db)
    cases = await service.list_variance_cases(
        owner_id,
        status=case_status.value if case_status else None,
        skip=skip,
        limit=limit,
    )
    return [VarianceCaseResponse.model_validate(c) for c in cases]


@router.patch("/variance-cases/{case_id}", response_model=VarianceCaseResponse)
async def update_variance_case(
    case_id: uuid.UUID,
    data: VarianceCaseUpdate,
    owner_id: OwnerId,
    db: DB,
):
    """Move a case through review: open, under_review, resolved or waived."""
    service = ReconciliationService(db)
    case = await service.update_variance_case(
        owner_id, case_id, data.status.value, data.resolution
    )
    return VarianceCaseResponse.model_validate(case)
