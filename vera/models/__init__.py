"""
Database models
"""

from vera.models.user import User
from vera.models.event import Event, EventStatus, RecurrenceType, TicketCategory
from vera.models.ticket import (
    Ticket,
    TicketStatus,
    ResaleStatus,
    PaymentProvider,
    TicketResaleBid,
    BidStatus,
)
from vera.models.payment import (
    PaymentAttempt,
    PaymentKind,
    PaymentAttemptStatus,
    FulfillmentStatus,
    PaymentEventLog,
    PaymentEventStatus,
)

__all__ = [
    "User",
    "Event",
    "EventStatus",
    "RecurrenceType",
    "TicketCategory",
    "Ticket",
    "TicketStatus",
    "ResaleStatus",
    "PaymentProvider",
    "TicketResaleBid",
    "BidStatus",
    "PaymentAttempt",
    "PaymentKind",
    "PaymentAttemptStatus",
    "FulfillmentStatus",
    "PaymentEventLog",
    "PaymentEventStatus",
]
