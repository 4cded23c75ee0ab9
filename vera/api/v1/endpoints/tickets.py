"""
Ticket endpoints: reservation, checkout, reads and door check-in
"""

from typing import Any, List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from vera.api.deps import get_session, get_ticket_service
from vera.core.security import get_current_user_id
from vera.models.ticket import TicketStatus
from vera.schemas.response import PaginatedResponse, PaginationMeta
from vera.schemas.ticket import (
    CheckInRequest,
    CheckInResponse,
    CheckoutResponse,
    PriceQuoteResponse,
    TicketCheckoutRequest,
    TicketReserveRequest,
    TicketResponse,
)
from vera.services.barcodes import render_barcode_png
from vera.services.tickets import TicketService

router = APIRouter()


@router.post("/reserve", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def reserve_ticket(
    payload: TicketReserveRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Reserve seats at the current price without opening a checkout
    """
    reservation = await service.reserve_ticket(
        db,
        payload.event_id,
        user_id,
        quantity=payload.quantity,
        category_id=payload.category_id,
        attendee_name=payload.attendee_name,
        attendee_email=payload.attendee_email,
    )
    return reservation.ticket


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def begin_purchase_checkout(
    payload: TicketCheckoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Reserve seats and open a Paystack checkout when payment is due
    """
    purchase = await service.begin_purchase_checkout(
        db,
        payload.event_id,
        user_id,
        quantity=payload.quantity,
        category_id=payload.category_id,
        attendee_name=payload.attendee_name,
        attendee_email=payload.attendee_email,
        callback_url=payload.callback_url,
    )
    attempt = purchase.attempt
    return CheckoutResponse(
        ticket=TicketResponse.model_validate(purchase.ticket),
        requires_payment=purchase.requires_payment,
        reference=attempt.reference if attempt else None,
        authorization_url=attempt.authorization_url if attempt else None,
        access_code=attempt.access_code if attempt else None,
        pricing=purchase.quote.insight.as_dict(),
    )


@router.get("/mine", response_model=List[TicketResponse])
async def list_my_tickets(
    ticket_status: Optional[TicketStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await service.list_my_tickets(db, user_id, status=ticket_status, limit=limit, offset=offset)


def _ticket_page(tickets, total: int, page: int, limit: int) -> PaginatedResponse[TicketResponse]:
    return PaginatedResponse[TicketResponse](
        data=[TicketResponse.model_validate(t) for t in tickets],
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.get("/sales", response_model=PaginatedResponse[TicketResponse])
async def list_ticket_sales(
    ticket_status: Optional[TicketStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=120),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Tickets sold across every event you organize
    """
    tickets, total = await service.list_event_tickets(
        db, user_id, status=ticket_status, search=search, page=page, limit=limit
    )
    return _ticket_page(tickets, total, page, limit)


@router.get("/events/{event_id}/tickets", response_model=PaginatedResponse[TicketResponse])
async def list_event_ticket_sales(
    event_id: UUID,
    ticket_status: Optional[TicketStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=120),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Tickets sold for one of your events
    """
    tickets, total = await service.list_event_tickets(
        db, user_id, event_id=event_id, status=ticket_status, search=search, page=page, limit=limit
    )
    return _ticket_page(tickets, total, page, limit)


@router.get("/events/{event_id}/pricing", response_model=PriceQuoteResponse)
async def get_price_quote(
    event_id: UUID,
    category_id: Optional[UUID] = None,
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Current dynamic price for one seat
    """
    quote, occurrence = await service.quote_price(db, event_id, category_id)
    return PriceQuoteResponse(
        event_id=event_id,
        category_id=category_id,
        unit_price_naira=quote.unit_price_naira,
        occurrence_starts_at=occurrence.starts_at,
        occurrence_ends_at=occurrence.ends_at,
        insight=quote.insight.as_dict(),
    )


@router.post("/check-in", response_model=CheckInResponse)
async def check_in_ticket(
    payload: CheckInRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Admit a scanned ticket; re-scans report the original check-in
    """
    result = await service.check_in(db, payload.code, user_id, event_id=payload.event_id)
    return CheckInResponse(
        ticket=TicketResponse.model_validate(result.ticket),
        already_used=result.already_used,
        checked_in_at=result.checked_in_at,
    )


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await service.get_ticket(db, ticket_id, user_id)


@router.get("/{ticket_id}/qr")
async def get_ticket_qr(
    ticket_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: TicketService = Depends(get_ticket_service),
    db: AsyncSession = Depends(get_session)
) -> Response:
    """
    Ticket barcode as a PNG QR code
    """
    ticket = await service.get_ticket(db, ticket_id, user_id)
    return Response(content=render_barcode_png(ticket.barcode_value), media_type="image/png")
