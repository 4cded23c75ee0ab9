"""
Resale marketplace endpoints
"""

from typing import Any, List
from uuid import UUID
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from vera.api.deps import get_marketplace, get_session
from vera.core.security import get_current_user_id
from vera.schemas.payment import PaymentAttemptResponse
from vera.schemas.resale import (
    BidResponse,
    ListTicketRequest,
    PlaceBidRequest,
    ResaleCheckoutRequest,
    ResaleListingResponse,
    ResaleTransferResponse,
)
from vera.schemas.ticket import TicketResponse
from vera.services.resale import ResaleMarketplace

router = APIRouter()


@router.get("/events/{event_id}", response_model=List[ResaleListingResponse])
async def list_event_resales(
    event_id: UUID,
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.list_event_resales(db, event_id)


@router.get("/bids/mine", response_model=List[BidResponse])
async def list_my_bids(
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.list_my_bids(db, user_id)


@router.post("/tickets/{ticket_id}/list", response_model=TicketResponse)
async def list_ticket(
    ticket_id: UUID,
    payload: ListTicketRequest,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    List a paid ticket; the price is the total for the listed seats
    """
    return await marketplace.list_ticket(
        db,
        ticket_id,
        user_id,
        payload.price_naira,
        quantity=payload.quantity,
        allow_bids=payload.allow_bids,
    )


@router.delete("/tickets/{ticket_id}/list", response_model=TicketResponse)
async def cancel_listing(
    ticket_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.cancel_listing(db, ticket_id, user_id)


@router.post(
    "/tickets/{ticket_id}/bids",
    response_model=BidResponse,
    status_code=status.HTTP_201_CREATED
)
async def place_bid(
    ticket_id: UUID,
    payload: PlaceBidRequest,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.place_bid(db, ticket_id, user_id, payload.amount_naira)


@router.get("/tickets/{ticket_id}/bids", response_model=List[BidResponse])
async def list_ticket_bids(
    ticket_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.list_ticket_bids(db, ticket_id, user_id)


@router.post("/tickets/{ticket_id}/bids/{bid_id}/accept", response_model=TicketResponse)
async def accept_bid(
    ticket_id: UUID,
    bid_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.accept_bid(db, ticket_id, bid_id, user_id)


@router.post("/tickets/{ticket_id}/bids/{bid_id}/reject", response_model=BidResponse)
async def reject_bid(
    ticket_id: UUID,
    bid_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.reject_bid(db, ticket_id, bid_id, user_id)


@router.post("/bids/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(
    bid_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await marketplace.withdraw_bid(db, bid_id, user_id)


@router.post(
    "/tickets/{ticket_id}/checkout",
    response_model=PaymentAttemptResponse,
    status_code=status.HTTP_201_CREATED
)
async def begin_resale_checkout(
    ticket_id: UUID,
    payload: ResaleCheckoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Open a Paystack checkout for a listing reserved for the caller
    """
    return await marketplace.begin_resale_checkout(
        db, ticket_id, user_id, callback_url=payload.callback_url
    )


@router.post("/tickets/{ticket_id}/purchase", response_model=ResaleTransferResponse)
async def purchase_resale(
    ticket_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Immediate transfer, only while the payment bypass is active
    """
    transfer = await marketplace.purchase_resale(db, ticket_id, user_id)
    return ResaleTransferResponse(
        ticket=TicketResponse.model_validate(transfer.ticket),
        source_ticket_id=transfer.source_ticket_id,
        quantity=transfer.quantity,
        split=transfer.split,
    )
