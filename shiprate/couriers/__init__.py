"""Courier adapters behind one capability contract."""
from shiprate.couriers.base import (
    Capability,
    CourierAdapter,
    RateQuote,
    RateRequest,
    ServiceabilityResult,
    ShipmentBooking,
    ShipmentRequest,
    TrackingEvent,
)
from shiprate.couriers.circuit_breaker import CircuitBreaker, CircuitState
from shiprate.couriers.registry import ProviderRegistry, build_default_registry

__all__ = [
    "Capability",
    "CourierAdapter",
    "RateQuote",
    "RateRequest",
    "ServiceabilityResult",
    "ShipmentBooking",
    "ShipmentRequest",
    "TrackingEvent",
    "CircuitBreaker",
    "CircuitState",
    "ProviderRegistry",
    "build_default_registry",
]
