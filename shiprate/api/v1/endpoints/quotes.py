"""Quote generation and option selection endpoints."""
import uuid

from fastapi import APIRouter, status

from shiprate.api.deps import DB, OwnerId, SellerId, QuoteEngineDep
from shiprate.schemas.quote import (
    QuoteRequest,
    QuoteSessionResponse,
    SelectOptionRequest,
    SelectOptionResponse,
)
from shiprate.services.quote_engine import build_session_response
from shiprate.services.quote_session_store import QuoteSessionStore


router = APIRouter()


@router.post(
    "",
    response_model=QuoteSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_quote(
    request: QuoteRequest,
    owner_id: OwnerId,
    seller_id: SellerId,
    engine: QuoteEngineDep,
):
    """
    Price a shipment across all eligible couriers.

    Slow or failing couriers are flagged in `provider_timeouts` instead of
    failing the request.
    """
    session = await engine.generate_quote(owner_id, seller_id, request)
    return build_session_response(session)


@router.get("/{session_id}", response_model=QuoteSessionResponse)
async def get_quote(
    session_id: uuid.UUID,
    owner_id: OwnerId,
    engine: QuoteEngineDep,
):
    session = await engine.get_session(owner_id, session_id)
    return build_session_response(session)


@router.post("/{session_id}/select", response_model=SelectOptionResponse)
async def select_option(
    session_id: uuid.UUID,
    data: SelectOptionRequest,
    owner_id: OwnerId,
    db: DB,
):
    """Select one option. 410 once the session expired, 422 for an unknown or conflicting option."""
    session = await QuoteSessionStore(db).select_option(owner_id, session_id, data.option_id)
    return SelectOptionResponse(
        session_id=session.id,
        selected_option_id=session.selected_option_id,
        selected_at=session.selected_at,
    )
