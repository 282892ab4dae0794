from fastapi import APIRouter

from shiprate.api.v1.endpoints import (
    # Quoting
    quotes,
    # Booking
    shipments,
    # Finance
    reconciliation,
)

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(quotes.router, prefix="/quotes", tags=["Quotes"])
api_router.include_router(shipments.router, prefix="/shipments", tags=["Shipments"])
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["Reconciliation"])
