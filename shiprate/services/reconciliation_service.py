"""
Billing Reconciliation Service.

Compares what carriers bill against the cost expected at booking time:
1. Validate each billed fact (bad rows are skipped, not fatal)
2. Upsert the billing record by its natural key
3. Match a shipment by shipment id or AWB
4. Expected cost from the pricing snapshot, else the legacy charge
5. variance % = (billed - expected) / expected * 100
6. Within threshold: case auto-resolved; otherwise left open for finance

Cases are keyed by (owner, billing record) so re-importing a batch leaves
case state untouched.
"""
import hashlib
import logging
import uuid
from datetime import timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.config import settings
from shiprate.core.exceptions import NotFoundError, ValidationError
from shiprate.db_types import utcnow
from shiprate.models.billing import (
    CarrierBillingRecord,
    PricingVarianceCase,
    VarianceCaseStatus,
    VarianceOutcome,
)
from shiprate.models.shipment import Shipment
from shiprate.schemas.billing import BillingFact, BillingImportSummary, VarianceResolution
from shiprate.services.rate_formula import round2, to_decimal
from shiprate.services.shipment_repository import ShipmentRepository

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
FOUR_PLACES = Decimal("0.0001")

EXPECTED_FROM_SNAPSHOT = "pricing_snapshot"
EXPECTED_FROM_LEGACY = "legacy_shipping_charge"

# Manual resolution moves; resolved and waived are terminal
VARIANCE_TRANSITIONS: Dict[str, List[str]] = {
    VarianceCaseStatus.OPEN.value: [
        VarianceCaseStatus.UNDER_REVIEW.value,
        VarianceCaseStatus.RESOLVED.value,
        VarianceCaseStatus.WAIVED.value,
    ],
    VarianceCaseStatus.UNDER_REVIEW.value: [
        VarianceCaseStatus.OPEN.value,
        VarianceCaseStatus.RESOLVED.value,
        VarianceCaseStatus.WAIVED.value,
    ],
    VarianceCaseStatus.RESOLVED.value: [],
    VarianceCaseStatus.WAIVED.value: [],
}

CLOSED_STATUSES = (VarianceCaseStatus.RESOLVED.value, VarianceCaseStatus.WAIVED.value)


def billing_natural_key(owner_id: uuid.UUID, fact: BillingFact) -> str:
    billed_at = fact.billed_at
    if billed_at.tzinfo is None:
        billed_at = billed_at.replace(tzinfo=timezone.utc)
    parts = [
        str(owner_id),
        fact.provider,
        fact.awb,
        fact.source.value,
        f"{round2(fact.billed_total)}",
        billed_at.astimezone(timezone.utc).isoformat(),
        fact.invoice_ref or "",
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


def variance_percent(expected: Decimal, billed: Decimal) -> Decimal:
    """(billed - expected) / expected * 100; a zero expectation is 100% unless nothing was billed."""
    if expected == 0:
        return HUNDRED if billed > 0 else Decimal("0")
    return (billed - expected) / expected * HUNDRED


def expected_cost_for(shipment: Shipment) -> Tuple[Optional[Decimal], Optional[str]]:
    snapshot = shipment.pricing_snapshot or {}
    if snapshot.get("expected_cost_amount") is not None:
        return to_decimal(snapshot["expected_cost_amount"]), EXPECTED_FROM_SNAPSHOT
    if shipment.expected_cost_amount is not None:
        return to_decimal(shipment.expected_cost_amount), EXPECTED_FROM_SNAPSHOT
    if shipment.shipping_charge is not None:
        return to_decimal(shipment.shipping_charge), EXPECTED_FROM_LEGACY
    return None, None


class ReconciliationService:
    """
    Usage:
        service = ReconciliationService(db)
        summary = await service.import_billing(owner_id, records, threshold_percent=5)
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.shipments = ShipmentRepository(db)

    # ============================================
    # IMPORT
    # ============================================

    async def import_billing(
        self,
        owner_id: uuid.UUID,
        records: List[Dict[str, Any]],
        threshold_percent: Optional[float] = None,
    ) -> BillingImportSummary:
        threshold = to_decimal(
            settings.VARIANCE_THRESHOLD_PERCENT if threshold_percent is None else threshold_percent
        )
        if threshold < 0 or threshold > HUNDRED:
            raise ValidationError("threshold_percent must be between 0 and 100")

        allowed_providers = {p.strip().lower() for p in settings.BILLING_PROVIDERS}
        summary = BillingImportSummary()

        for index, raw in enumerate(records):
            try:
                fact = BillingFact.model_validate(raw)
            except PydanticValidationError as e:
                logger.info(f"Skipping billing row {index}: {e.error_count()} validation errors")
                summary.skipped_count += 1
                continue
            if fact.provider not in allowed_providers:
                logger.info(f"Skipping billing row {index}: unknown provider '{fact.provider}'")
                summary.skipped_count += 1
                continue

            record = await self._upsert_record(owner_id, fact)
            summary.imported_count += 1

            shipment = await self._match_shipment(owner_id, fact)
            if shipment is None:
                continue
            summary.matched_shipment_count += 1
            if record.shipment_id is None:
                record.shipment_id = shipment.id

            case = await self._get_or_create_case(owner_id, record, shipment, threshold)
            if case is None:
                continue
            summary.variance_case_ids.append(case.id)
            if case.resolution_outcome == VarianceOutcome.AUTO_CLOSED_WITHIN_THRESHOLD.value:
                summary.auto_closed_count += 1
            elif case.status not in CLOSED_STATUSES:
                summary.open_case_count += 1

        await self.db.flush()
        logger.info(
            f"Billing import for owner {owner_id}: {summary.imported_count} imported, "
            f"{summary.matched_shipment_count} matched, {summary.auto_closed_count} auto-closed, "
            f"{summary.open_case_count} open, {summary.skipped_count} skipped"
        )
        return summary

    async def _upsert_record(self, owner_id: uuid.UUID, fact: BillingFact) -> CarrierBillingRecord:
        natural_key = billing_natural_key(owner_id, fact)
        result = await self.db.execute(
            select(CarrierBillingRecord).where(CarrierBillingRecord.natural_key == natural_key)
        )
        record = result.scalar_one_or_none()
        components = {k: str(v) for k, v in fact.billed_components.items()}

        if record is None:
            record = CarrierBillingRecord(
                owner_id=owner_id,
                natural_key=natural_key,
                provider=fact.provider,
                awb=fact.awb,
                shipment_id=fact.shipment_id,
                invoice_ref=fact.invoice_ref,
                remittance_ref=fact.remittance_ref,
                billed_components=components,
                billed_total=round2(fact.billed_total),
                source=fact.source.value,
                billed_at=fact.billed_at,
                raw_provider_payload=fact.raw_provider_payload,
            )
            self.db.add(record)
        else:
            # Only descriptive fields can change; the key fields are the identity
            record.remittance_ref = fact.remittance_ref or record.remittance_ref
            record.billed_components = components or record.billed_components
            if fact.raw_provider_payload is not None:
                record.raw_provider_payload = fact.raw_provider_payload
        await self.db.flush()
        return record

    async def _match_shipment(self, owner_id: uuid.UUID, fact: BillingFact) -> Optional[Shipment]:
        if fact.shipment_id is not None:
            shipment = await self.shipments.find_by_id(owner_id, fact.shipment_id)
            if shipment is not None:
                return shipment
        return await self.shipments.find_by_tracking_id(owner_id, fact.awb)

    async def _get_or_create_case(
        self,
        owner_id: uuid.UUID,
        record: CarrierBillingRecord,
        shipment: Shipment,
        threshold: Decimal,
    ) -> Optional[PricingVarianceCase]:
        result = await self.db.execute(
            select(PricingVarianceCase).where(
                PricingVarianceCase.owner_id == owner_id,
                PricingVarianceCase.billing_record_id == record.id,
            )
        )
        case = result.scalar_one_or_none()
        if case is not None:
            return case

        expected, expected_source = expected_cost_for(shipment)
        if expected is None:
            logger.info(f"Shipment {shipment.id} has no expected cost, no variance case for {record.awb}")
            return None

        billed = to_decimal(record.billed_total)
        percent = variance_percent(expected, billed)
        within = abs(percent) <= threshold

        case = PricingVarianceCase(
            owner_id=owner_id,
            billing_record_id=record.id,
            shipment_id=shipment.id,
            provider=record.provider,
            awb=record.awb,
            expected_cost=round2(expected),
            billed_cost=round2(billed),
            variance_amount=round2(billed - expected),
            variance_percent=percent.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP),
            threshold_percent=threshold,
            expected_source=expected_source,
            status=VarianceCaseStatus.RESOLVED.value if within else VarianceCaseStatus.OPEN.value,
        )
        if within:
            case.resolution_outcome = VarianceOutcome.AUTO_CLOSED_WITHIN_THRESHOLD.value
            case.resolution_notes = f"Variance {case.variance_percent}% within {threshold}% threshold"
            case.resolved_at = utcnow()
        self.db.add(case)
        await self.db.flush()
        return case

    # ============================================
    # MANUAL RESOLUTION
    # ============================================

    async def get_variance_case(self, owner_id: uuid.UUID, case_id: uuid.UUID) -> PricingVarianceCase:
        result = await self.db.execute(
            select(PricingVarianceCase).where(
                PricingVarianceCase.id == case_id,
                PricingVarianceCase.owner_id == owner_id,
            )
        )
        case = result.scalar_one_or_none()
        if case is None:
            raise NotFoundError(f"Variance case {case_id} not found")
        return case

    async def update_variance_case(
        self,
        owner_id: uuid.UUID,
        case_id: uuid.UUID,
        status: str,
        resolution: Optional[VarianceResolution] = None,
    ) -> PricingVarianceCase:
        case = await self.get_variance_case(owner_id, case_id)
        if case.status != status and status not in VARIANCE_TRANSITIONS.get(case.status, []):
            raise ValidationError(
                f"Variance case cannot move from {case.status} to {status}",
                details={
                    "current_status": case.status,
                    "allowed": VARIANCE_TRANSITIONS.get(case.status, []),
                },
            )
        if status in CLOSED_STATUSES and resolution is None and case.status != status:
            raise ValidationError(f"A resolution is required to mark a case {status}")

        case.status = status
        if resolution is not None:
            case.resolution_outcome = resolution.outcome
            case.adjusted_cost = resolution.adjusted_cost
            case.refund_amount = resolution.refund_amount
            case.resolution_notes = resolution.notes
        if status in CLOSED_STATUSES:
            case.resolved_at = case.resolved_at or utcnow()
        else:
            case.resolved_at = None

        await self.db.flush()
        logger.info(f"Variance case {case.id} moved to {status}")
        return case

    async def list_variance_cases(
        self,
        owner_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[PricingVarianceCase]:
        stmt = select(PricingVarianceCase).where(PricingVarianceCase.owner_id == owner_id)
        if status:
            stmt = stmt.where(PricingVarianceCase.status == status)
        stmt = stmt.order_by(PricingVarianceCase.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
