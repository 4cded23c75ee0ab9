"""
Ticket schemas
"""

from pydantic import Field, field_validator
from typing import Optional, Dict, Any
from uuid import UUID
from datetime import datetime

from vera.schemas.base import BaseSchema, IDSchema, TimestampSchema
from vera.config import settings


class TicketReserveRequest(BaseSchema):
    """Ticket reservation schema"""
    event_id: UUID
    quantity: int = Field(1, ge=1, le=settings.MAX_TICKETS_PER_PURCHASE)
    category_id: Optional[UUID] = None
    attendee_name: Optional[str] = Field(None, max_length=140)
    attendee_email: Optional[str] = Field(None, max_length=160)

    @field_validator('attendee_email')
    def validate_email(cls, v):
        if v is not None and "@" not in v:
            raise ValueError('Invalid attendee email')
        return v


class TicketCheckoutRequest(TicketReserveRequest):
    """Purchase checkout schema"""
    callback_url: str = Field("", max_length=500)


class TicketResponse(IDSchema, TimestampSchema):
    """Ticket response schema"""
    event_id: UUID
    category_id: Optional[UUID] = None
    category_name: str = ""
    organizer_user_id: UUID
    buyer_user_id: UUID
    quantity: int
    unit_price_naira: int
    total_price_naira: int
    currency: str
    status: str
    payment_provider: str
    payment_reference: Optional[str] = None
    payment_authorization_url: str = ""
    attendee_name: str = ""
    attendee_email: str
    ticket_code: str
    barcode_value: str
    paid_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    resale_status: str
    resale_price_naira: Optional[int] = None
    resale_quantity: Optional[int] = None
    resale_allow_bids: bool = False
    resale_listed_at: Optional[datetime] = None
    accepted_bid_id: Optional[UUID] = None
    accepted_bid_expires_at: Optional[datetime] = None
    resale_buyer_user_id: Optional[UUID] = None
    last_transferred_at: Optional[datetime] = None


class PriceInsightResponse(BaseSchema):
    """Breakdown of a dynamic price"""
    base_price_naira: int
    dynamic_applied: bool
    demand_ratio: float
    time_pressure: float
    blended_pressure: float
    multiplier: float
    reserved_count: int
    minutes_to_start: Optional[float] = None


class PriceQuoteResponse(BaseSchema):
    """Current unit price for an event"""
    event_id: UUID
    category_id: Optional[UUID] = None
    unit_price_naira: int
    currency: str = "NGN"
    occurrence_starts_at: datetime
    occurrence_ends_at: datetime
    insight: PriceInsightResponse


class CheckoutResponse(BaseSchema):
    """Reservation plus gateway checkout handle"""
    ticket: TicketResponse
    requires_payment: bool
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    pricing: Optional[Dict[str, Any]] = None


class CheckInRequest(BaseSchema):
    """Door scan schema"""
    code: str = Field(..., min_length=1, max_length=600)
    event_id: Optional[UUID] = None


class CheckInResponse(BaseSchema):
    """Door scan result"""
    ticket: TicketResponse
    already_used: bool
    checked_in_at: datetime
