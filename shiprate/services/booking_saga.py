"""
Book-from-quote saga.

requested -> validating_session -> creating_shipment ->
{succeeded | compensating_pre_dispatch | compensating_post_dispatch} -> terminal

The quote session is claimed for the option, and the shipment row and its
pricing snapshot are committed, before the carrier is called, so whatever
happens next there is a record to compensate on:
- carrier fails before an AWB: ``booking_failed``, wallet hold released
- carrier fails after an AWB (or the debit fails): ``booking_partial``,
  wallet hold released, manual AWB cancellation follow-up opened

Records are never deleted on any path.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.config import settings
from shiprate.core.exceptions import (
    BookingCompensated,
    InvalidOption,
    PersistenceConflict,
    ProviderError,
    ProviderTimeout,
    SessionExpired,
    ShipRateError,
)
from shiprate.couriers.base import ShipmentBooking, ShipmentRequest
from shiprate.couriers.registry import ProviderRegistry
from shiprate.db_types import utcnow
from shiprate.models.quote_session import QuoteSession
from shiprate.models.shipment import FollowUpType, Shipment, ShipmentStatus
from shiprate.schemas.booking import BookFromQuoteRequest, BookingResult, PricingSnapshot
from shiprate.schemas.quote import QuoteOption
from shiprate.services.booking_state_machine import (
    COMPENSATION_STATUS,
    BookingOutcome,
    BookingState,
    next_state,
)
from shiprate.services.quote_session_store import QuoteSessionStore
from shiprate.services.rate_formula import to_decimal
from shiprate.services.shipment_repository import ShipmentRepository
from shiprate.services.wallet_service import WalletGateway

logger = logging.getLogger(__name__)


def idempotency_prefix(session_id: uuid.UUID, option_id: str) -> str:
    return f"quote:{session_id}:{option_id}:a"


def build_pricing_snapshot(
    session: QuoteSession,
    option: QuoteOption,
    calculated_at: datetime,
) -> PricingSnapshot:
    return PricingSnapshot(
        quote_session_id=session.id,
        option_id=option.option_id,
        provider=option.provider,
        service_id=option.service_id,
        service_code=option.service_code,
        service_name=option.service_name,
        quoted_sell_amount=option.sell_amount,
        expected_cost_amount=option.cost_amount,
        expected_margin_amount=option.margin_amount,
        expected_margin_percent=option.margin_percent,
        chargeable_weight_kg=option.chargeable_weight_kg,
        zone=option.zone,
        pricing_source=option.pricing_source,
        confidence=option.confidence,
        calculated_at=calculated_at,
        sell_breakdown=option.sell_breakdown,
        cost_breakdown=option.cost_breakdown,
    )


def booking_result(shipment: Shipment, replayed: bool = False) -> BookingResult:
    return BookingResult(
        shipment_id=shipment.id,
        tracking_id=shipment.tracking_id,
        label_ref=shipment.label_ref,
        status=shipment.status,
        attempt=shipment.attempt,
        option_id=shipment.option_id,
        pricing_snapshot=PricingSnapshot.model_validate(shipment.pricing_snapshot),
        replayed=replayed,
    )


class AttemptResult:
    """How one carrier attempt ended."""

    def __init__(self, state: str, shipment: Shipment, error: Optional[ProviderError] = None):
        self.state = state
        self.shipment = shipment
        self.error = error

    @property
    def succeeded(self) -> bool:
        return self.state == BookingState.SUCCEEDED

    @property
    def can_fall_back(self) -> bool:
        return (
            self.state == BookingState.COMPENSATING_PRE_DISPATCH
            and self.error is not None
            and self.error.is_recoverable
        )


class BookingService:
    """
    Usage:
        service = BookingService(db, registry, LedgerWalletGateway(db))
        result = await service.book_from_quote(owner_id, seller_id, request)
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: ProviderRegistry,
        wallet: WalletGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.wallet = wallet
        self.clock = clock
        self.sessions = QuoteSessionStore(db, clock=clock)
        self.shipments = ShipmentRepository(db)

    async def get_shipment(self, owner_id: uuid.UUID, shipment_id: uuid.UUID) -> Shipment:
        return await self.shipments.get(owner_id, shipment_id)

    async def book_from_quote(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
        request: BookFromQuoteRequest,
    ) -> BookingResult:
        state = next_state(BookingState.REQUESTED, BookingOutcome.START)
        session = await self.sessions.get(owner_id, request.session_id)
        prefix = idempotency_prefix(session.id, request.option_id)

        prior = await self.shipments.list_by_key_prefix(owner_id, prefix)
        replay = await self._replay(prior)
        if replay is not None:
            return replay

        try:
            option = self._validate_session(session, request.option_id)
            session = await self.sessions.claim_for_booking(session, request.option_id)
        except (SessionExpired, InvalidOption):
            next_state(state, BookingOutcome.SESSION_INVALID)
            raise
        state = next_state(state, BookingOutcome.SESSION_VALID)

        candidates = [option]
        if request.allow_fallback:
            candidates += [
                QuoteOption.model_validate(o) for o in session.options
                if o.get("option_id") != option.option_id
            ]
        candidates = candidates[:max(1, settings.BOOKING_MAX_ATTEMPTS)]

        attempt_no = max((s.attempt for s in prior), default=0) + 1
        last: Optional[AttemptResult] = None
        for candidate in candidates:
            last = await self._attempt(
                state, session, candidate, request, f"{prefix}{attempt_no}", attempt_no
            )
            if last.succeeded:
                await self._lock_session(session, candidate.option_id, last.shipment)
                return booking_result(last.shipment)
            if not last.can_fall_back:
                break
            logger.info(
                f"Booking attempt {attempt_no} on {candidate.option_id} failed before AWB, "
                f"trying next ranked option"
            )
            attempt_no += 1

        raise self._compensated_error(last.shipment)

    # ============================================
    # VALIDATION & REPLAY
    # ============================================

    def _is_stale(self, shipment: Shipment) -> bool:
        """An attempt older than the carrier timeout can no longer be waiting on the carrier."""
        cutoff = self.clock() - timedelta(seconds=settings.BOOKING_PROVIDER_TIMEOUT_SECONDS)
        return shipment.created_at < cutoff

    async def _replay(self, prior: List[Shipment]) -> Optional[BookingResult]:
        """
        Answer a repeated request from earlier attempts, if they settle it.

        Attempts left ``booking_in_progress`` past the carrier timeout were
        abandoned mid-flight; they are failed and their hold released so the
        request can go ahead with a new attempt.
        """
        for shipment in prior:
            if shipment.status == ShipmentStatus.BOOKED.value:
                logger.info(f"Replaying booked shipment {shipment.id}")
                return booking_result(shipment, replayed=True)

        abandoned = []
        for shipment in prior:
            if shipment.status == ShipmentStatus.BOOKING_PARTIAL.value:
                raise self._compensated_error(shipment)
            if shipment.status == ShipmentStatus.BOOKING_IN_PROGRESS.value:
                if not self._is_stale(shipment):
                    raise PersistenceConflict(
                        f"Booking attempt {shipment.attempt} is still in progress",
                        details={"shipment_id": str(shipment.id)},
                    )
                abandoned.append(shipment)

        for shipment in abandoned:
            logger.warning(
                f"Booking attempt {shipment.attempt} ({shipment.id}) abandoned in progress, compensating"
            )
            await self._compensate(
                BookingState.COMPENSATING_PRE_DISPATCH,
                shipment,
                shipment.idempotency_key,
                None,
                f"Booking attempt {shipment.attempt} abandoned before completion",
            )
        return None

    def _validate_session(self, session: QuoteSession, option_id: str) -> QuoteOption:
        if session.is_expired(self.clock()):
            raise SessionExpired(
                f"Quote session {session.id} expired at {session.expires_at.isoformat()}",
                details={"session_id": str(session.id)},
            )
        raw = session.find_option(option_id)
        if raw is None:
            raise InvalidOption(
                f"Option {option_id} is not part of quote session {session.id}",
                details={"session_id": str(session.id), "option_id": option_id},
            )
        if session.selected_option_id and session.selected_option_id != option_id:
            raise InvalidOption(
                f"Quote session {session.id} has option {session.selected_option_id} selected",
                details={
                    "session_id": str(session.id),
                    "option_id": option_id,
                    "selected_option_id": session.selected_option_id,
                },
            )
        if session.booked_shipment_id is not None:
            raise InvalidOption(f"Quote session {session.id} is already booked")
        return QuoteOption.model_validate(raw)

    # ============================================
    # ATTEMPT
    # ============================================

    def _shipment_request(
        self,
        session: QuoteSession,
        option: QuoteOption,
        request: BookFromQuoteRequest,
        idempotency_key: str,
    ) -> ShipmentRequest:
        snapshot = session.request_snapshot or {}
        dims = snapshot.get("dimensions") or {}
        details = request.fulfillment_details
        return ShipmentRequest(
            idempotency_key=idempotency_key,
            service_code=option.service_code,
            order_reference=details.order_reference,
            payment_mode=snapshot.get("payment_mode", "prepaid"),
            order_value=to_decimal(snapshot.get("order_value")),
            weight_kg=to_decimal(snapshot.get("weight_kg")),
            pickup_address=details.pickup_address.model_dump(mode="json"),
            delivery_address=details.delivery_address.model_dump(mode="json"),
            items=[item.model_dump(mode="json") for item in details.items],
            pickup_location=details.pickup_location,
            length_cm=to_decimal(dims.get("length_cm")) if dims else None,
            width_cm=to_decimal(dims.get("width_cm")) if dims else None,
            height_cm=to_decimal(dims.get("height_cm")) if dims else None,
        )

    async def _call_carrier(self, option: QuoteOption, shipment_request: ShipmentRequest) -> ShipmentBooking:
        adapter = self.registry.get(option.provider)
        if adapter is None:
            raise ProviderError(option.provider, f"No courier adapter for {option.provider}", provider_status=422)
        timeout = settings.BOOKING_PROVIDER_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(adapter.create_shipment(shipment_request), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(option.provider, timeout)

    async def _attempt(
        self,
        state: str,
        session: QuoteSession,
        option: QuoteOption,
        request: BookFromQuoteRequest,
        idempotency_key: str,
        attempt_no: int,
    ) -> AttemptResult:
        now = self.clock()
        snapshot = build_pricing_snapshot(session, option, now)
        shipment = await self.shipments.create_in_progress(
            owner_id=session.owner_id,
            seller_id=session.seller_id,
            idempotency_key=idempotency_key,
            attempt=attempt_no,
            snapshot=snapshot,
            fulfillment_details=request.fulfillment_details.model_dump(mode="json"),
        )
        await self.wallet.reserve(
            option.sell_amount,
            idempotency_key,
            owner_id=session.owner_id,
            seller_id=session.seller_id,
        )
        # The attempt must be on disk before the carrier can issue an AWB
        await self.db.commit()

        shipment_request = self._shipment_request(session, option, request, idempotency_key)
        try:
            booking = await self._call_carrier(option, shipment_request)
        except ProviderError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected carrier failure for {option.provider}")
            error = ProviderError(option.provider, f"Unexpected carrier failure: {e}", provider_status=500)
        else:
            error = None

        if error is not None:
            outcome = BookingOutcome.FAILED_AFTER_AWB if error.tracking_id else BookingOutcome.FAILED_BEFORE_AWB
            state = next_state(state, outcome)
            shipment = await self._compensate(state, shipment, idempotency_key, error.tracking_id, error.message)
            return AttemptResult(state, shipment, error)

        state = next_state(state, BookingOutcome.CARRIER_BOOKED)
        try:
            await self.wallet.debit(option.sell_amount, idempotency_key)
        except ShipRateError as e:
            state = next_state(state, BookingOutcome.FAILED_AFTER_AWB)
            shipment = await self._compensate(
                state, shipment, idempotency_key, booking.tracking_id,
                f"Wallet debit failed after AWB {booking.tracking_id}: {e.message}",
            )
            return AttemptResult(state, shipment, ProviderError(
                option.provider, e.message, tracking_id=booking.tracking_id
            ))

        shipment = await self.shipments.transition(
            shipment,
            ShipmentStatus.BOOKED.value,
            note=f"AWB {booking.tracking_id} issued by {option.provider}",
            tracking_id=booking.tracking_id,
            label_ref=booking.label_ref,
            carrier_reference=booking.carrier_reference,
            booked_at=self.clock(),
        )
        next_state(state, BookingOutcome.COMPLETED)
        await self.db.commit()
        logger.info(f"Shipment {shipment.id} booked with AWB {booking.tracking_id}")
        return AttemptResult(state, shipment)

    # ============================================
    # COMPENSATION
    # ============================================

    async def _compensate(
        self,
        state: str,
        shipment: Shipment,
        idempotency_key: str,
        tracking_id: Optional[str],
        reason: str,
    ) -> Shipment:
        status = COMPENSATION_STATUS[state]
        values = {"failure_reason": reason}
        if tracking_id:
            values["tracking_id"] = tracking_id

        shipment = await self.shipments.transition(shipment, status, note=reason, **values)

        if state == BookingState.COMPENSATING_POST_DISPATCH:
            await self.shipments.open_follow_up(
                shipment,
                FollowUpType.MANUAL_AWB_CANCELLATION.value,
                notes=f"Cancel AWB {tracking_id} with {shipment.provider}: {reason}",
            )
            logger.error(
                f"Shipment {shipment.id} partially booked (AWB {tracking_id}), "
                f"manual cancellation required: {reason}"
            )
        else:
            logger.warning(f"Shipment {shipment.id} booking failed before AWB: {reason}")

        await self.db.commit()

        # Status is on disk before the hold is touched
        try:
            await self.wallet.release(idempotency_key)
            await self.db.commit()
        except ShipRateError as e:
            logger.error(
                f"Wallet hold {idempotency_key} for shipment {shipment.id} "
                f"could not be released: {e.message}"
            )

        next_state(state, BookingOutcome.COMPENSATED)
        return shipment

    def _compensated_error(self, shipment: Shipment) -> BookingCompensated:
        partial = shipment.status == ShipmentStatus.BOOKING_PARTIAL.value
        return BookingCompensated(
            shipment.failure_reason or f"Booking {shipment.status}",
            shipment_id=shipment.id,
            state=shipment.status,
            tracking_id=shipment.tracking_id,
            follow_up_required=partial,
        )

    async def _lock_session(self, session: QuoteSession, option_id: str, shipment: Shipment) -> None:
        """Record the booked option on the session. Failure here never fails the booking."""
        try:
            await self.sessions.mark_booked(session, option_id, shipment.id)
            await self.db.commit()
        except (ShipRateError, SQLAlchemyError) as e:
            await self.db.rollback()
            logger.warning(
                f"Shipment {shipment.id} booked but quote session {session.id} "
                f"could not be locked: {e}"
            )
