"""
Payment schemas
"""

from typing import Optional, Dict, Any, List
from uuid import UUID
from datetime import datetime

from vera.schemas.base import BaseSchema, IDSchema, TimestampSchema
from vera.schemas.ticket import TicketResponse


class PaymentAttemptResponse(IDSchema, TimestampSchema):
    """Payment attempt ledger entry"""
    reference: str
    provider: str
    kind: str
    status: str
    buyer_user_id: UUID
    event_id: UUID
    ticket_id: Optional[UUID] = None
    resale_source_ticket_id: Optional[UUID] = None
    accepted_bid_id: Optional[UUID] = None
    resale_quantity: Optional[int] = None
    resale_price_naira: Optional[int] = None
    amount_minor_units: int
    currency: str
    authorization_url: str = ""
    access_code: str = ""
    fulfillment_status: str
    fulfillment_ticket_id: Optional[UUID] = None
    fulfilled_at: Optional[datetime] = None
    failure_reason: str = ""


class PaymentEventLogResponse(IDSchema, TimestampSchema):
    """Webhook audit row"""
    provider: str
    event_type: str
    reference: str
    status: str
    message: str = ""
    meta: Optional[Dict[str, Any]] = None


class PaymentAttemptDetailResponse(BaseSchema):
    """Attempt with its webhook history"""
    attempt: PaymentAttemptResponse
    events: List[PaymentEventLogResponse]


class VerifyPaymentResponse(BaseSchema):
    """Reconciliation outcome"""
    reference: str
    status: str
    already_verified: bool
    ticket: Optional[TicketResponse] = None


class WebhookAckResponse(BaseSchema):
    """Acknowledgement returned to the gateway"""
    received: bool = True
    status: str
    message: str = ""
