"""
Event and ticket category models
"""

from datetime import timedelta
from sqlalchemy import Column, String, Integer, Text, Boolean, Float, ForeignKey, Uuid
import enum

from vera.models.base import BaseModel, UTCDateTime, enum_type


class EventStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"


class RecurrenceType(str, enum.Enum):
    NONE = "none"
    WEEKLY = "weekly"


class Event(BaseModel):
    """
    Event with its ticketing, dynamic pricing and resale policy.
    Event CRUD lives in the events service; this core only reads it.
    """
    __tablename__ = "events"

    organizer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text)
    status = Column(
        enum_type(EventStatus),
        default=EventStatus.PUBLISHED,
        nullable=False,
        index=True
    )
    starts_at = Column(UTCDateTime, nullable=False, index=True)
    ends_at = Column(UTCDateTime, nullable=False)

    recurrence_type = Column(enum_type(RecurrenceType), default=RecurrenceType.NONE, nullable=False)
    recurrence_interval = Column(Integer, default=1, nullable=False)
    recurrence_ends_on = Column(UTCDateTime, nullable=True)

    # Ticketing
    is_paid = Column(Boolean, default=False, nullable=False, index=True)
    ticket_price_naira = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="NGN", nullable=False)
    expected_tickets = Column(Integer, nullable=False)

    # Dynamic pricing policy; unset ratios fall back to settings
    dynamic_pricing_enabled = Column(Boolean, default=False, nullable=False)
    pricing_sensitivity = Column(Float, nullable=True)
    pricing_floor_ratio = Column(Float, nullable=True)
    pricing_cap_ratio = Column(Float, nullable=True)
    pricing_min_price_naira = Column(Integer, nullable=True)
    pricing_max_price_naira = Column(Integer, nullable=True)

    # Resale policy
    resale_enabled = Column(Boolean, default=True, nullable=False)
    resale_max_markup_percent = Column(Integer, nullable=True)
    resale_bid_window_hours = Column(Integer, nullable=True)

    @property
    def duration(self) -> timedelta:
        return max(self.ends_at - self.starts_at, timedelta(milliseconds=1))

    def __repr__(self):
        return f"<Event(id={self.id}, name={self.name}, status={self.status}, capacity={self.expected_tickets})>"


class TicketCategory(BaseModel):
    """
    Named ticket tier with its own price and capacity
    """
    __tablename__ = "ticket_categories"

    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(60), nullable=False)
    price_naira = Column(Integer, default=0, nullable=False)
    capacity = Column(Integer, nullable=False)

    def __repr__(self):
        return f"<TicketCategory(id={self.id}, event_id={self.event_id}, name={self.name})>"
