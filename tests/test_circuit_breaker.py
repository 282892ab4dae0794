from datetime import datetime, timedelta, timezone

import pytest

from shiprate.core.exceptions import CircuitOpenError, ProviderError
from shiprate.couriers.circuit_breaker import CircuitBreaker, CircuitState
from tests.conftest import FakeCourierAdapter


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


class TestCircuitBreaker:
    def test_opens_after_consecutive_failures(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=30, clock=clock)

        breaker.record_failure()
        assert breaker.allow()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow()

    def test_success_resets_the_count(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=30, clock=clock)

        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, clock=clock)
        breaker.record_failure()

        clock.advance(31)
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow()

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.advance(31)
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestAdapterCalls:
    async def test_open_circuit_short_circuits_calls(self):
        adapter = FakeCourierAdapter(
            "delhivery",
            booking_error=ProviderError("delhivery", "down", provider_status=503),
        )
        adapter.circuit_breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await adapter.create_shipment(None)

        with pytest.raises(CircuitOpenError):
            await adapter.create_shipment(None)

    async def test_not_found_answers_do_not_trip_the_circuit(self):
        adapter = FakeCourierAdapter(
            "delhivery",
            booking_error=ProviderError("delhivery", "no such pincode", provider_status=404),
        )
        adapter.circuit_breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60)

        for _ in range(3):
            with pytest.raises(ProviderError) as exc:
                await adapter.create_shipment(None)
            assert not isinstance(exc.value, CircuitOpenError)
