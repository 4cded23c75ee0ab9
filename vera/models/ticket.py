"""
Ticket and resale bid models
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, ForeignKey, JSON, Index, UniqueConstraint, Uuid, text
)
import enum

from vera.models.base import BaseModel, UTCDateTime, enum_type


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    USED = "used"
    EXPIRED = "expired"


class ResaleStatus(str, enum.Enum):
    NONE = "none"
    LISTED = "listed"
    OFFER_ACCEPTED = "offer-accepted"


class PaymentProvider(str, enum.Enum):
    NONE = "none"
    PAYSTACK = "paystack"


class BidStatus(str, enum.Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    PAID = "paid"
    WITHDRAWN = "withdrawn"


class Ticket(BaseModel):
    """
    One sellable admission unit; ``quantity`` seats share a single code
    """
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("ticket_code", name="uq_tickets_ticket_code"),
        UniqueConstraint("payment_reference", name="uq_tickets_payment_reference"),
        Index("ix_tickets_event_status", "event_id", "status"),
        Index("ix_tickets_event_resale", "event_id", "resale_status"),
    )

    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True)
    category_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_categories.id"), nullable=True, index=True)
    category_name = Column(String(60), default="", nullable=False)
    organizer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    quantity = Column(Integer, default=1, nullable=False)
    unit_price_naira = Column(Integer, default=0, nullable=False)
    total_price_naira = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="NGN", nullable=False)
    status = Column(
        enum_type(TicketStatus),
        default=TicketStatus.PENDING,
        nullable=False,
        index=True
    )

    payment_provider = Column(enum_type(PaymentProvider), default=PaymentProvider.NONE, nullable=False)
    payment_reference = Column(String(120), nullable=True)
    payment_authorization_url = Column(String(500), default="", nullable=False)
    payment_access_code = Column(String(120), default="", nullable=False)
    payment_metadata = Column(JSON, nullable=True)

    attendee_name = Column(String(140), default="", nullable=False)
    attendee_email = Column(String(160), nullable=False)
    ticket_code = Column(String(40), nullable=False)
    barcode_value = Column(String(400), nullable=False)

    paid_at = Column(UTCDateTime, nullable=True)
    verified_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    used_at = Column(UTCDateTime, nullable=True)
    used_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)

    # Resale sub-state, only meaningful while status == paid
    resale_status = Column(
        enum_type(ResaleStatus),
        default=ResaleStatus.NONE,
        nullable=False,
        index=True
    )
    resale_price_naira = Column(Integer, nullable=True)
    resale_quantity = Column(Integer, nullable=True)
    resale_allow_bids = Column(Boolean, default=False, nullable=False)
    resale_listed_at = Column(UTCDateTime, nullable=True)
    # no FK: bids reference tickets, keep the graph acyclic
    accepted_bid_id = Column(Uuid(as_uuid=True), nullable=True)
    accepted_bid_expires_at = Column(UTCDateTime, nullable=True, index=True)
    resale_buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    last_transferred_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return (
            f"<Ticket(id={self.id}, code={self.ticket_code}, status={self.status}, "
            f"resale={self.resale_status}, qty={self.quantity})>"
        )


class TicketResaleBid(BaseModel):
    """
    One buyer's offer on a listed ticket
    """
    __tablename__ = "ticket_resale_bids"
    __table_args__ = (
        # at most one open bid per bidder per ticket
        Index(
            "uq_resale_bids_open_per_bidder",
            "ticket_id",
            "bidder_user_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("ix_resale_bids_event_status", "event_id", "status"),
    )

    ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=False, index=True)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True)
    seller_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    bidder_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    amount_naira = Column(Integer, nullable=False)
    status = Column(
        enum_type(BidStatus),
        default=BidStatus.OPEN,
        nullable=False,
        index=True
    )
    responded_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<TicketResaleBid(id={self.id}, ticket_id={self.ticket_id}, amount={self.amount_naira}, status={self.status})>"
