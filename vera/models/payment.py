"""
Payment attempt ledger and webhook audit log
"""

from sqlalchemy import Column, String, Integer, ForeignKey, JSON, Text, Index, Uuid
import enum

from vera.models.base import BaseModel, UTCDateTime, enum_type


class PaymentKind(str, enum.Enum):
    TICKET_PURCHASE = "ticket_purchase"
    TICKET_RESALE_PURCHASE = "ticket_resale_purchase"


class PaymentAttemptStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class FulfillmentStatus(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class PaymentEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"
    INVALID_SIGNATURE = "invalid_signature"


class PaymentAttempt(BaseModel):
    """
    One checkout intent. Once fulfillment is done the row is never mutated.
    """
    __tablename__ = "payment_attempts"
    __table_args__ = (
        Index("ix_payment_attempts_ticket_kind", "ticket_id", "kind"),
        Index("ix_payment_attempts_resale_kind", "resale_source_ticket_id", "kind"),
    )

    reference = Column(String(120), unique=True, nullable=False, index=True)
    provider = Column(String(20), default="paystack", nullable=False, index=True)
    kind = Column(enum_type(PaymentKind), nullable=False, index=True)
    status = Column(
        enum_type(PaymentAttemptStatus),
        default=PaymentAttemptStatus.INITIALIZED,
        nullable=False,
        index=True
    )

    buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True)
    ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=True)
    resale_source_ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=True)
    accepted_bid_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_resale_bids.id"), nullable=True)
    # Listing terms a resale checkout was opened against
    resale_quantity = Column(Integer, nullable=True)
    resale_price_naira = Column(Integer, nullable=True)

    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), default="NGN", nullable=False)
    callback_url = Column(String(500), default="", nullable=False)
    authorization_url = Column(String(500), default="", nullable=False)
    access_code = Column(String(120), default="", nullable=False)
    initialize_payload = Column(JSON, nullable=True)
    verify_payload = Column(JSON, nullable=True)

    fulfillment_status = Column(
        enum_type(FulfillmentStatus),
        default=FulfillmentStatus.PENDING,
        nullable=False,
        index=True
    )
    fulfillment_ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=True)
    fulfilled_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, default="", nullable=False)

    def __repr__(self):
        return (
            f"<PaymentAttempt(reference={self.reference}, kind={self.kind}, "
            f"status={self.status}, fulfillment={self.fulfillment_status})>"
        )


class PaymentEventLog(BaseModel):
    """
    Audit row for every inbound gateway webhook, whatever its outcome
    """
    __tablename__ = "payment_event_logs"

    provider = Column(String(20), default="paystack", nullable=False, index=True)
    event_type = Column(String(80), default="", nullable=False, index=True)
    reference = Column(String(120), default="", nullable=False, index=True)
    payment_attempt_id = Column(Uuid(as_uuid=True), ForeignKey("payment_attempts.id"), nullable=True, index=True)
    status = Column(
        enum_type(PaymentEventStatus),
        default=PaymentEventStatus.RECEIVED,
        nullable=False,
        index=True
    )
    message = Column(Text, default="", nullable=False)
    payload = Column(JSON, nullable=True)
    meta = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<PaymentEventLog(event={self.event_type}, reference={self.reference}, status={self.status})>"
