"""
Resale marketplace schemas
"""

from pydantic import Field
from typing import Optional
from uuid import UUID
from datetime import datetime

from vera.schemas.base import BaseSchema, IDSchema, TimestampSchema
from vera.schemas.ticket import TicketResponse


class ListTicketRequest(BaseSchema):
    """Listing schema; the price is the total for the listed seats"""
    price_naira: int = Field(..., ge=1)
    quantity: Optional[int] = Field(None, ge=1)
    allow_bids: bool = False


class PlaceBidRequest(BaseSchema):
    """Bid schema"""
    amount_naira: int = Field(..., ge=1)


class ResaleCheckoutRequest(BaseSchema):
    """Resale checkout schema"""
    callback_url: str = Field("", max_length=500)


class ResaleListingResponse(IDSchema):
    """Public view of a listed ticket; never exposes the admission code"""
    event_id: UUID
    category_name: str = ""
    quantity: int
    unit_price_naira: int
    currency: str
    resale_price_naira: Optional[int] = None
    resale_quantity: Optional[int] = None
    resale_allow_bids: bool = False
    resale_listed_at: Optional[datetime] = None


class BidResponse(IDSchema, TimestampSchema):
    """Bid response schema"""
    ticket_id: UUID
    event_id: UUID
    seller_user_id: UUID
    bidder_user_id: UUID
    amount_naira: int
    status: str
    responded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class ResaleTransferResponse(BaseSchema):
    """Completed transfer"""
    ticket: TicketResponse
    source_ticket_id: UUID
    quantity: int
    split: bool
