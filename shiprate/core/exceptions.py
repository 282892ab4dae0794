"""
Error taxonomy for quoting, booking and reconciliation.

Every error carries a machine-readable ``error_code`` and the HTTP status
the API edge maps it to. Provider-level errors are caught inside the
quote engine and only narrow the option set; session and booking errors
reach the caller with their exact status codes.
"""
from typing import Any, Dict, Optional


class ShipRateError(Exception):
    """Base class for domain errors."""

    status_code: int = 400
    default_code: str = "SHIPRATE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(ShipRateError):
    """Malformed or inconsistent input."""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(ShipRateError):
    status_code = 404
    default_code = "NOT_FOUND"


class SessionExpired(ShipRateError):
    """Quote session is past its absolute expiry."""
    status_code = 410
    default_code = "SESSION_EXPIRED"


class InvalidOption(ShipRateError):
    """Option id is not part of the session, or conflicts with its selection."""
    status_code = 422
    default_code = "INVALID_OPTION"


class ProviderError(ShipRateError):
    """A courier call failed. Isolated to that provider's contribution."""
    status_code = 502
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        provider_status: Optional[int] = None,
        tracking_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.provider_status = provider_status
        # Set when the carrier already issued an AWB before failing
        self.tracking_id = tracking_id
        super().__init__(message, details=details)

    @property
    def is_not_found_or_unprocessable(self) -> bool:
        return self.provider_status in (404, 422)

    @property
    def is_recoverable(self) -> bool:
        """Server-side failures before an AWB exist are safe to retry elsewhere."""
        return self.tracking_id is None and (
            self.provider_status is None or self.provider_status >= 500
        )


class ProviderTimeout(ProviderError):
    status_code = 504
    default_code = "PROVIDER_TIMEOUT"

    def __init__(self, provider: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            provider,
            f"{provider} did not respond within {timeout_seconds}s",
        )

    @property
    def is_recoverable(self) -> bool:
        return True


class CapabilityNotSupported(ProviderError):
    default_code = "CAPABILITY_NOT_SUPPORTED"

    def __init__(self, provider: str, capability: str):
        self.capability = capability
        super().__init__(provider, f"{provider} does not support {capability}")


class CircuitOpenError(ProviderError):
    default_code = "PROVIDER_CIRCUIT_OPEN"
    status_code = 503

    def __init__(self, provider: str):
        super().__init__(provider, f"{provider} is cooling down after repeated failures")


class InsufficientData(ShipRateError):
    """No usable rate card. Callers fall back to heuristic pricing."""
    status_code = 422
    default_code = "INSUFFICIENT_DATA"


class BookingCompensated(ShipRateError):
    """Booking failed and compensation ran. The shipment record is retained."""
    status_code = 409
    default_code = "BOOKING_COMPENSATED"

    def __init__(
        self,
        message: str,
        shipment_id: Any,
        state: str,
        tracking_id: Optional[str] = None,
        follow_up_required: bool = False,
    ):
        self.shipment_id = shipment_id
        self.state = state
        self.tracking_id = tracking_id
        self.follow_up_required = follow_up_required
        super().__init__(
            message,
            details={
                "shipment_id": str(shipment_id),
                "state": state,
                "tracking_id": tracking_id,
                "follow_up_required": follow_up_required,
            },
        )


class PersistenceConflict(ShipRateError):
    """Optimistic lock lost. Retry the operation."""
    status_code = 409
    default_code = "PERSISTENCE_CONFLICT"
