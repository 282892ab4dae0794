from shiprate.models.catalog import (
    CourierService,
    ServiceRateCard,
    SellerCourierPolicy,
    PaymentMode,
    RateCardType,
    SelectionMode,
    AutoPriority,
    RateCategory,
)
from shiprate.models.quote_session import QuoteSession
from shiprate.models.shipment import (
    Shipment,
    ShipmentStatusHistory,
    ShipmentFollowUp,
    ShipmentStatus,
    FollowUpType,
    FollowUpStatus,
)
from shiprate.models.billing import (
    CarrierBillingRecord,
    PricingVarianceCase,
    BillingSource,
    VarianceCaseStatus,
    VarianceOutcome,
)
from shiprate.models.wallet import WalletReservation, ReservationStatus

__all__ = [
    "CourierService",
    "ServiceRateCard",
    "SellerCourierPolicy",
    "PaymentMode",
    "RateCardType",
    "SelectionMode",
    "AutoPriority",
    "RateCategory",
    "QuoteSession",
    "Shipment",
    "ShipmentStatusHistory",
    "ShipmentFollowUp",
    "ShipmentStatus",
    "FollowUpType",
    "FollowUpStatus",
    "CarrierBillingRecord",
    "PricingVarianceCase",
    "BillingSource",
    "VarianceCaseStatus",
    "VarianceOutcome",
    "WalletReservation",
    "ReservationStatus",
]
