"""
Courier adapter capability contract.

Every carrier integration implements ``CourierAdapter``. Carriers differ
in what they can do (some return a zone from the lane check, some have
no live rate API), so optional operations are advertised through
``capabilities`` and probed with ``supports()`` instead of type checks at
call sites.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, TypeVar

from shiprate.core.exceptions import CapabilityNotSupported, CircuitOpenError, ProviderError
from shiprate.couriers.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Capability(str, Enum):
    SERVICEABILITY = "serviceability"
    LIVE_RATE = "live_rate"
    CREATE_SHIPMENT = "create_shipment"
    CANCEL_SHIPMENT = "cancel_shipment"
    TRACK = "track"


@dataclass
class ServiceabilityResult:
    serviceable: bool
    zone: Optional[str] = None
    confidence: Optional[str] = None  # high, medium, low
    eta_days: Optional[int] = None


@dataclass
class RateRequest:
    origin_pincode: str
    destination_pincode: str
    weight_kg: Decimal
    payment_mode: str
    order_value: Decimal
    service_code: str
    length_cm: Optional[Decimal] = None
    width_cm: Optional[Decimal] = None
    height_cm: Optional[Decimal] = None


@dataclass
class RateQuote:
    amount: Decimal
    eta_days: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ShipmentRequest:
    idempotency_key: str
    service_code: str
    order_reference: str
    payment_mode: str
    order_value: Decimal
    weight_kg: Decimal
    pickup_address: Dict[str, Any]
    delivery_address: Dict[str, Any]
    items: List[Dict[str, Any]] = field(default_factory=list)
    pickup_location: str = ""
    length_cm: Optional[Decimal] = None
    width_cm: Optional[Decimal] = None
    height_cm: Optional[Decimal] = None


@dataclass
class ShipmentBooking:
    tracking_id: str
    label_ref: Optional[str] = None
    carrier_reference: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingEvent:
    status: str
    occurred_at: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


class CourierAdapter(ABC):
    """
    Base class for carrier integrations.

    Subclasses own carrier auth, retries and wire formats. Calls made
    through ``_call`` share a per-adapter circuit breaker so a carrier that
    keeps failing is skipped for a cooldown window.
    """

    provider: str = ""
    capabilities: FrozenSet[Capability] = frozenset({
        Capability.CREATE_SHIPMENT,
        Capability.CANCEL_SHIPMENT,
        Capability.TRACK,
    })

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=self.provider)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run one carrier call through the circuit breaker."""
        if not self.circuit_breaker.allow():
            raise CircuitOpenError(self.provider)
        try:
            result = await func()
        except ProviderError as e:
            # 404/422 are answers about the request, not carrier health
            if not e.is_not_found_or_unprocessable:
                self.circuit_breaker.record_failure()
            raise
        except (Exception, asyncio.CancelledError):
            # Cancellation here means the caller's timeout budget ran out
            self.circuit_breaker.record_failure()
            raise
        self.circuit_breaker.record_success()
        return result

    # ==================== OPTIONAL CAPABILITIES ====================

    async def check_serviceability(
        self,
        origin_pincode: str,
        destination_pincode: str,
        weight_kg: Decimal,
        payment_mode: str,
    ) -> ServiceabilityResult:
        raise CapabilityNotSupported(self.provider, Capability.SERVICEABILITY.value)

    async def get_rate(self, request: RateRequest) -> Optional[RateQuote]:
        raise CapabilityNotSupported(self.provider, Capability.LIVE_RATE.value)

    # ==================== REQUIRED CAPABILITIES ====================

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        """
        Book a shipment with the carrier.

        Raises ``ProviderError`` with ``tracking_id`` set when the carrier
        issued an AWB but a later step of the booking failed.
        """
        pass

    @abstractmethod
    async def cancel_shipment(self, tracking_id: str) -> bool:
        pass

    @abstractmethod
    async def track(self, tracking_id: str) -> List[TrackingEvent]:
        pass
