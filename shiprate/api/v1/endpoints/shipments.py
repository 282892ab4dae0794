"""Book-from-quote and shipment lookup endpoints."""
import uuid

from fastapi import APIRouter, status

from shiprate.api.deps import OwnerId, SellerId, BookingServiceDep
from shiprate.schemas.booking import BookFromQuoteRequest, BookingResult, ShipmentResponse


router = APIRouter()


@router.post(
    "/book-from-quote",
    response_model=BookingResult,
    status_code=status.HTTP_201_CREATED,
)
async def book_from_quote(
    data: BookFromQuoteRequest,
    owner_id: OwnerId,
    seller_id: SellerId,
    service: BookingServiceDep,
):
    """
    Book the selected quote option with its carrier.

    Safe to retry: a repeated request returns the booked shipment with
    `replayed=true`. Expired session: 410. Unknown or mismatched option: 422.
    Carrier failure after compensation: 409 with the retained shipment id.
    """
    return await service.book_from_quote(owner_id, seller_id, data)


@router.get("/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: uuid.UUID,
    owner_id: OwnerId,
    service: BookingServiceDep,
):
    shipment = await service.get_shipment(owner_id, shipment_id)
    return ShipmentResponse.model_validate(shipment)
