import pytest

from shiprate.models.shipment import ShipmentStatus
from shiprate.services.booking_state_machine import (
    BookingOutcome,
    BookingState,
    InvalidSagaTransition,
    can_transition_shipment,
    next_state,
    validate_shipment_transition,
)


class TestSagaTransitions:
    def test_happy_path(self):
        state = next_state(BookingState.REQUESTED, BookingOutcome.START)
        state = next_state(state, BookingOutcome.SESSION_VALID)
        state = next_state(state, BookingOutcome.CARRIER_BOOKED)
        assert state == BookingState.SUCCEEDED
        assert next_state(state, BookingOutcome.COMPLETED) == BookingState.TERMINAL

    def test_failure_before_awb_compensates_pre_dispatch(self):
        state = next_state(BookingState.CREATING_SHIPMENT, BookingOutcome.FAILED_BEFORE_AWB)
        assert state == BookingState.COMPENSATING_PRE_DISPATCH
        assert next_state(state, BookingOutcome.COMPENSATED) == BookingState.TERMINAL

    def test_failure_after_awb_compensates_post_dispatch(self):
        assert next_state(
            BookingState.CREATING_SHIPMENT, BookingOutcome.FAILED_AFTER_AWB
        ) == BookingState.COMPENSATING_POST_DISPATCH
        assert next_state(
            BookingState.SUCCEEDED, BookingOutcome.FAILED_AFTER_AWB
        ) == BookingState.COMPENSATING_POST_DISPATCH

    def test_unknown_pair_raises(self):
        with pytest.raises(InvalidSagaTransition):
            next_state(BookingState.TERMINAL, BookingOutcome.START)


class TestShipmentTransitions:
    def test_in_progress_can_settle_three_ways(self):
        for target in (
            ShipmentStatus.BOOKED,
            ShipmentStatus.BOOKING_FAILED,
            ShipmentStatus.BOOKING_PARTIAL,
        ):
            assert can_transition_shipment(ShipmentStatus.BOOKING_IN_PROGRESS.value, target.value)

    def test_failed_is_terminal(self):
        with pytest.raises(InvalidSagaTransition):
            validate_shipment_transition(
                ShipmentStatus.BOOKING_FAILED.value, ShipmentStatus.BOOKED.value
            )

    def test_same_status_is_a_no_op(self):
        validate_shipment_transition(ShipmentStatus.BOOKED.value, ShipmentStatus.BOOKED.value)
