"""
Booking Saga State Machine

SINGLE SOURCE OF TRUTH for the book-from-quote saga and for shipment
record status changes. The saga never branches on exceptions directly:
each step reports an outcome and ``next_state`` looks the move up in
``BOOKING_TRANSITIONS``. Every failure path ends in a compensation state
that keeps the shipment row.
"""

from typing import Dict, List, Tuple

from shiprate.core.exceptions import ShipRateError
from shiprate.models.shipment import ShipmentStatus


# =============================================================================
# SAGA STATES AND OUTCOMES
# =============================================================================

class BookingState:
    REQUESTED = "requested"
    VALIDATING_SESSION = "validating_session"
    CREATING_SHIPMENT = "creating_shipment"
    SUCCEEDED = "succeeded"
    COMPENSATING_PRE_DISPATCH = "compensating_pre_dispatch"
    COMPENSATING_POST_DISPATCH = "compensating_post_dispatch"
    TERMINAL = "terminal"


class BookingOutcome:
    START = "start"
    SESSION_VALID = "session_valid"
    SESSION_INVALID = "session_invalid"
    CARRIER_BOOKED = "carrier_booked"
    FAILED_BEFORE_AWB = "failed_before_awb"
    FAILED_AFTER_AWB = "failed_after_awb"
    COMPENSATED = "compensated"
    COMPLETED = "completed"


class InvalidSagaTransition(ShipRateError):
    status_code = 500
    default_code = "INVALID_SAGA_TRANSITION"


# =============================================================================
# TRANSITION RULES
# =============================================================================

# (current state, outcome) -> next state
BOOKING_TRANSITIONS: Dict[Tuple[str, str], str] = {
    (BookingState.REQUESTED, BookingOutcome.START): BookingState.VALIDATING_SESSION,
    (BookingState.VALIDATING_SESSION, BookingOutcome.SESSION_VALID): BookingState.CREATING_SHIPMENT,
    (BookingState.VALIDATING_SESSION, BookingOutcome.SESSION_INVALID): BookingState.TERMINAL,
    (BookingState.CREATING_SHIPMENT, BookingOutcome.CARRIER_BOOKED): BookingState.SUCCEEDED,
    (BookingState.CREATING_SHIPMENT, BookingOutcome.FAILED_BEFORE_AWB): BookingState.COMPENSATING_PRE_DISPATCH,
    (BookingState.CREATING_SHIPMENT, BookingOutcome.FAILED_AFTER_AWB): BookingState.COMPENSATING_POST_DISPATCH,
    # Wallet debit can still fail once the carrier has booked
    (BookingState.SUCCEEDED, BookingOutcome.FAILED_AFTER_AWB): BookingState.COMPENSATING_POST_DISPATCH,
    (BookingState.SUCCEEDED, BookingOutcome.COMPLETED): BookingState.TERMINAL,
    (BookingState.COMPENSATING_PRE_DISPATCH, BookingOutcome.COMPENSATED): BookingState.TERMINAL,
    (BookingState.COMPENSATING_POST_DISPATCH, BookingOutcome.COMPENSATED): BookingState.TERMINAL,
}

# Shipment status the record carries once a compensation state is entered
COMPENSATION_STATUS: Dict[str, str] = {
    BookingState.COMPENSATING_PRE_DISPATCH: ShipmentStatus.BOOKING_FAILED.value,
    BookingState.COMPENSATING_POST_DISPATCH: ShipmentStatus.BOOKING_PARTIAL.value,
}

# Shipment record status changes; there is no transition that removes a record
SHIPMENT_TRANSITIONS: Dict[str, List[str]] = {
    ShipmentStatus.BOOKING_IN_PROGRESS.value: [
        ShipmentStatus.BOOKED.value,
        ShipmentStatus.BOOKING_FAILED.value,
        ShipmentStatus.BOOKING_PARTIAL.value,
    ],
    ShipmentStatus.BOOKED.value: [
        ShipmentStatus.BOOKING_PARTIAL.value,  # Post-booking step failed
        ShipmentStatus.CANCELLED.value,
    ],
    ShipmentStatus.BOOKING_PARTIAL.value: [
        ShipmentStatus.CANCELLED.value,        # Operator cancelled the AWB
    ],
    ShipmentStatus.BOOKING_FAILED.value: [],   # Terminal
    ShipmentStatus.CANCELLED.value: [],        # Terminal
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def next_state(current: str, outcome: str) -> str:
    """Look up the saga move for an outcome. Raises on pairs not in the table."""
    try:
        return BOOKING_TRANSITIONS[(current, outcome)]
    except KeyError:
        raise InvalidSagaTransition(
            f"No booking transition from {current} on {outcome}",
            details={"state": current, "outcome": outcome},
        )


def can_transition_shipment(current_status: str, new_status: str) -> bool:
    return new_status in SHIPMENT_TRANSITIONS.get(current_status, [])


def validate_shipment_transition(current_status: str, new_status: str) -> None:
    if current_status == new_status:
        return
    if not can_transition_shipment(current_status, new_status):
        raise InvalidSagaTransition(
            f"Shipment cannot move from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "allowed": SHIPMENT_TRANSITIONS.get(current_status, []),
            },
        )
