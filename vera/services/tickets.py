"""
Ticket lifecycle: reservation, purchase checkout, reads and check-in
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from vera.config import settings
from vera.core.database import LIKE_ESCAPE, contains_pattern, db_manager
from vera.core.exceptions import (
    AuthorizationError,
    CapacityExceededError,
    CheckInWindowClosedError,
    ConflictError,
    EventNotPublishedError,
    ExternalServiceError,
    NoUpcomingOccurrenceError,
    NotFoundError,
    TicketNotEligibleError,
    ValidationError,
)
from vera.core.logging import log_context
from vera.core.metrics import TICKET_RESERVATIONS
from vera.models.base import utc_now
from vera.models.event import Event, EventStatus, TicketCategory
from vera.models.payment import PaymentAttempt, PaymentKind
from vera.models.ticket import (
    BidStatus,
    PaymentProvider,
    ResaleStatus,
    Ticket,
    TicketResaleBid,
    TicketStatus,
)
from vera.models.user import User
from vera.services.checkout import CheckoutService
from vera.services.notifications import NotificationSink, notification_sink, notify_safely
from vera.services.occurrence import Occurrence, resolve_occurrence
from vera.services.paystack import PaymentGateway
from vera.services.pricing import DynamicPricingEngine, PriceQuote, PricingPolicy, pricing_engine
from vera.services.ticket_codes import TicketCodeAllocator, ticket_code_allocator

logger = logging.getLogger(__name__)

BARCODE_PROVIDER = "vera"

# Resale sub-state reset applied whenever a ticket leaves the market
CLEARED_RESALE_STATE = {
    "resale_status": ResaleStatus.NONE,
    "resale_price_naira": None,
    "resale_quantity": None,
    "resale_allow_bids": False,
    "resale_listed_at": None,
    "accepted_bid_id": None,
    "accepted_bid_expires_at": None,
    "resale_buyer_user_id": None,
}


def build_barcode_value(ticket_code: str, event_id: UUID) -> str:
    return json.dumps(
        {"provider": BARCODE_PROVIDER, "ticketCode": ticket_code, "eventId": str(event_id)},
        separators=(",", ":"),
    )


def parse_scanned_code(raw: str) -> Tuple[Optional[UUID], Optional[str], Optional[UUID]]:
    """
    Split a scanned value into (ticket_id, ticket_code, event_id).

    Accepts the JSON barcode payload, a bare ticket UUID or a raw code.
    """
    value = (raw or "").strip()
    if not value:
        raise ValidationError("Ticket code is required", field="code")

    if value.startswith("{"):
        try:
            payload = json.loads(value)
        except ValueError:
            raise ValidationError("Unreadable ticket barcode", field="code")
        if not isinstance(payload, dict):
            raise ValidationError("Unreadable ticket barcode", field="code")

        event_id = None
        if payload.get("eventId"):
            try:
                event_id = UUID(str(payload["eventId"]))
            except ValueError:
                raise ValidationError("Barcode carries an invalid event id", field="code")

        code = str(payload.get("ticketCode") or "").strip()
        if not code:
            raise ValidationError("Barcode carries no ticket code", field="code")
        return None, code.upper(), event_id

    try:
        return UUID(value), None, None
    except ValueError:
        return None, value.upper(), None


@dataclass
class Reservation:
    ticket: Ticket
    quote: PriceQuote
    occurrence: Occurrence


@dataclass
class PurchaseCheckout:
    ticket: Ticket
    quote: PriceQuote
    attempt: Optional[PaymentAttempt] = None

    @property
    def requires_payment(self) -> bool:
        return self.attempt is not None


@dataclass
class CheckInResult:
    ticket: Ticket
    already_used: bool
    checked_in_at: datetime


class TicketService:
    """
    Issues tickets against event capacity and admits them at the door
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        pricing: Optional[DynamicPricingEngine] = None,
        allocator: Optional[TicketCodeAllocator] = None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.gateway = gateway
        self.pricing = pricing or pricing_engine
        self.allocator = allocator or ticket_code_allocator
        self.notifications = notifications or notification_sink
        self.checkout = CheckoutService(gateway)

    async def _reserved_counts(
        self,
        db: AsyncSession,
        event_id: UUID,
        category_id: Optional[UUID],
        now: datetime,
    ) -> Tuple[int, int]:
        """Seats sold (paid or used) and seats held by fresh pending tickets"""
        scope = [Ticket.event_id == event_id]
        if category_id is not None:
            scope.append(Ticket.category_id == category_id)

        sold = await db.scalar(
            select(func.coalesce(func.sum(Ticket.quantity), 0))
            .where(*scope, Ticket.status.in_([TicketStatus.PAID, TicketStatus.USED]))
        )
        cutoff = now - timedelta(minutes=settings.PENDING_RESERVATION_FRESHNESS_MINUTES)
        pending = await db.scalar(
            select(func.coalesce(func.sum(Ticket.quantity), 0))
            .where(*scope, Ticket.status == TicketStatus.PENDING, Ticket.created_at >= cutoff)
        )
        return int(sold or 0), int(pending or 0)

    async def _get_category(
        self, db: AsyncSession, event_id: UUID, category_id: Optional[UUID]
    ) -> Optional[TicketCategory]:
        if category_id is None:
            return None
        category = await db.get(TicketCategory, category_id)
        if not category or category.event_id != event_id:
            raise NotFoundError("Ticket category", category_id)
        return category

    async def quote_price(
        self,
        db: AsyncSession,
        event_id: UUID,
        category_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[PriceQuote, Occurrence]:
        """Current price for one seat, without reserving anything"""
        now = now or utc_now()
        event = await db.get(Event, event_id)
        if not event:
            raise NotFoundError("Event", event_id)

        occurrence = resolve_occurrence(event, now)
        if occurrence is None:
            raise NoUpcomingOccurrenceError(event_id)

        category = await self._get_category(db, event_id, category_id)
        sold, pending = await self._reserved_counts(db, event_id, category_id, now)
        quote = self.pricing.price(
            PricingPolicy.for_event(event, category), occurrence.starts_at, sold, pending, now
        )
        return quote, occurrence

    async def reserve_ticket(
        self,
        db: AsyncSession,
        event_id: UUID,
        buyer_user_id: UUID,
        quantity: int = 1,
        category_id: Optional[UUID] = None,
        attendee_name: Optional[str] = None,
        attendee_email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """
        Reserve ``quantity`` seats for one buyer under a single ticket code.

        Capacity check, price lock and insert run in one transaction with
        the event row locked, so concurrent reservations serialize per event.
        """
        if quantity < 1 or quantity > settings.MAX_TICKETS_PER_PURCHASE:
            raise ValidationError(
                f"Quantity must be between 1 and {settings.MAX_TICKETS_PER_PURCHASE}",
                field="quantity"
            )
        now = now or utc_now()

        buyer = await db.get(User, buyer_user_id)
        if not buyer:
            raise NotFoundError("User", buyer_user_id)

        try:
            async with db_manager.transaction(db):
                result = await db.execute(
                    select(Event).where(Event.id == event_id).with_for_update()
                )
                event = result.scalar_one_or_none()
                if not event:
                    raise NotFoundError("Event", event_id)
                if event.status != EventStatus.PUBLISHED:
                    raise EventNotPublishedError(event_id)

                occurrence = resolve_occurrence(event, now)
                if occurrence is None:
                    raise NoUpcomingOccurrenceError(event_id)

                category = await self._get_category(db, event.id, category_id)
                capacity = category.capacity if category else event.expected_tickets

                sold, pending = await self._reserved_counts(db, event.id, category_id, now)
                if sold + pending + quantity > capacity:
                    raise CapacityExceededError(quantity, sold + pending, capacity)

                quote = self.pricing.price(
                    PricingPolicy.for_event(event, category),
                    occurrence.starts_at,
                    sold,
                    pending,
                    now,
                )
                total = quote.unit_price_naira * quantity

                if total <= 0:
                    status = TicketStatus.PAID
                elif self.gateway.is_configured:
                    status = TicketStatus.PENDING
                elif settings.paystack_bypass_allowed:
                    status = TicketStatus.PAID
                    logger.warning(
                        "Issuing paid ticket without gateway (bypass enabled)",
                        extra=log_context(event_id=event.id, buyer_user_id=buyer.id)
                    )
                else:
                    raise ExternalServiceError("paystack", "Payment gateway is not configured")

                def build(code: str) -> Ticket:
                    return Ticket(
                        event_id=event.id,
                        category_id=category.id if category else None,
                        category_name=category.name if category else "",
                        organizer_user_id=event.organizer_user_id,
                        buyer_user_id=buyer.id,
                        quantity=quantity,
                        unit_price_naira=quote.unit_price_naira,
                        total_price_naira=total,
                        currency=event.currency or settings.PAYMENT_CURRENCY,
                        status=status,
                        payment_provider=(
                            PaymentProvider.PAYSTACK if status == TicketStatus.PENDING
                            else PaymentProvider.NONE
                        ),
                        payment_metadata={"pricing": quote.insight.as_dict()},
                        attendee_name=(attendee_name or buyer.full_name or "").strip(),
                        attendee_email=(attendee_email or buyer.email).strip().lower(),
                        ticket_code=code,
                        barcode_value=build_barcode_value(code, event.id),
                        paid_at=now if status == TicketStatus.PAID else None,
                        verified_at=now if status == TicketStatus.PAID else None,
                        resale_status=ResaleStatus.NONE,
                        created_at=now,
                    )

                ticket = await self.allocator.insert_ticket(db, build)
        except CapacityExceededError:
            TICKET_RESERVATIONS.labels(outcome="capacity_exceeded").inc()
            raise
        except Exception:
            TICKET_RESERVATIONS.labels(outcome="failed").inc()
            raise

        TICKET_RESERVATIONS.labels(outcome=ticket.status.value).inc()
        logger.info(
            "Ticket reserved",
            extra=log_context(
                ticket_id=ticket.id,
                ticket_code=ticket.ticket_code,
                event_id=event_id,
                buyer_user_id=buyer_user_id,
                quantity=quantity,
                unit_price_naira=ticket.unit_price_naira,
                status=ticket.status.value,
            )
        )

        if ticket.status == TicketStatus.PAID:
            await notify_safely(
                self.notifications,
                buyer.id,
                "ticket_issued",
                "Your ticket is ready",
                f"Ticket {ticket.ticket_code} has been issued",
                {"ticket_id": str(ticket.id), "event_id": str(event_id)},
            )

        return Reservation(ticket=ticket, quote=quote, occurrence=occurrence)

    async def begin_purchase_checkout(
        self,
        db: AsyncSession,
        event_id: UUID,
        buyer_user_id: UUID,
        quantity: int = 1,
        category_id: Optional[UUID] = None,
        attendee_name: Optional[str] = None,
        attendee_email: Optional[str] = None,
        callback_url: str = "",
        now: Optional[datetime] = None,
    ) -> PurchaseCheckout:
        """
        Reserve, then open a gateway checkout when payment is due.
        On gateway failure the pending ticket is cancelled.
        """
        reservation = await self.reserve_ticket(
            db,
            event_id,
            buyer_user_id,
            quantity=quantity,
            category_id=category_id,
            attendee_name=attendee_name,
            attendee_email=attendee_email,
            now=now,
        )
        ticket = reservation.ticket
        if ticket.status != TicketStatus.PENDING:
            return PurchaseCheckout(ticket=ticket, quote=reservation.quote)

        buyer = await db.get(User, buyer_user_id)
        attempt = await self.checkout.begin_checkout(
            db,
            PaymentKind.TICKET_PURCHASE,
            buyer,
            event_id,
            ticket.total_price_naira,
            callback_url=callback_url,
            ticket_id=ticket.id,
            metadata={"ticket_code": ticket.ticket_code, "quantity": ticket.quantity},
        )
        return PurchaseCheckout(ticket=ticket, quote=reservation.quote, attempt=attempt)

    async def list_my_tickets(
        self,
        db: AsyncSession,
        user_id: UUID,
        status: Optional[TicketStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Ticket]:
        query = select(Ticket).where(Ticket.buyer_user_id == user_id)
        if status is not None:
            query = query.where(Ticket.status == status)
        result = await db.execute(
            query.order_by(Ticket.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def get_ticket(self, db: AsyncSession, ticket_id: UUID, actor_user_id: UUID) -> Ticket:
        """Ticket visible to its holder and to the event organizer"""
        ticket = await db.get(Ticket, ticket_id)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id)
        if actor_user_id not in (ticket.buyer_user_id, ticket.organizer_user_id):
            raise AuthorizationError("You cannot view this ticket")
        return ticket

    async def list_event_tickets(
        self,
        db: AsyncSession,
        actor_user_id: UUID,
        event_id: Optional[UUID] = None,
        status: Optional[TicketStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Ticket], int]:
        """
        Ticket sales for an organizer, for one event or across all of theirs.

        ``search`` matches the ticket code, attendee name or attendee email.
        Returns the page of tickets and the total match count.
        """
        if event_id is not None:
            event = await db.get(Event, event_id)
            if not event:
                raise NotFoundError("Event", event_id)
            if event.organizer_user_id != actor_user_id:
                raise AuthorizationError(
                    "You can only view ticket sales for your events",
                    details={"event_id": str(event_id)}
                )
            conditions = [Ticket.event_id == event_id]
        else:
            conditions = [Ticket.organizer_user_id == actor_user_id]

        if status is not None:
            conditions.append(Ticket.status == status)
        if search and search.strip():
            pattern = contains_pattern(search.strip())
            conditions.append(
                or_(
                    Ticket.ticket_code.ilike(pattern, escape=LIKE_ESCAPE),
                    Ticket.attendee_name.ilike(pattern, escape=LIKE_ESCAPE),
                    Ticket.attendee_email.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )

        total = await db.scalar(select(func.count()).select_from(Ticket).where(*conditions))
        result = await db.execute(
            select(Ticket)
            .where(*conditions)
            .order_by(Ticket.created_at.desc(), Ticket.id)
            .limit(limit)
            .offset((page - 1) * limit)
        )
        return list(result.scalars().all()), total or 0

    async def _find_scanned_ticket(
        self, db: AsyncSession, ticket_id: Optional[UUID], code: Optional[str]
    ) -> Optional[Ticket]:
        if ticket_id is not None:
            return await db.get(Ticket, ticket_id)
        result = await db.execute(select(Ticket).where(Ticket.ticket_code == code))
        return result.scalar_one_or_none()

    @staticmethod
    def check_in_window(event: Event, now: datetime) -> Tuple[datetime, datetime]:
        """
        Admission window around the occurrence being attended.
        Resolving at ``now - duration`` keeps an occurrence in progress
        selected until it ends.
        """
        occurrence = resolve_occurrence(event, now - event.duration)
        if occurrence is None:
            occurrence = Occurrence(starts_at=event.starts_at, ends_at=event.ends_at)
        opens_at = occurrence.starts_at - timedelta(hours=settings.CHECK_IN_EARLY_GRACE_HOURS)
        closes_at = occurrence.ends_at + timedelta(hours=settings.CHECK_IN_LATE_GRACE_HOURS)
        return opens_at, closes_at

    async def check_in(
        self,
        db: AsyncSession,
        scanned_code: str,
        actor_user_id: UUID,
        event_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CheckInResult:
        """
        Admit a ticket. Re-scanning a used ticket reports the original
        check-in instead of failing.
        """
        now = now or utc_now()
        ticket_id, code, barcode_event_id = parse_scanned_code(scanned_code)

        ticket = await self._find_scanned_ticket(db, ticket_id, code)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id or code)

        event = await db.get(Event, ticket.event_id)
        if not event:
            raise NotFoundError("Event", ticket.event_id)
        if event.organizer_user_id != actor_user_id:
            raise AuthorizationError("Only the event organizer can check in tickets")

        for expected in (event_id, barcode_event_id):
            if expected is not None and expected != ticket.event_id:
                raise ConflictError(
                    "Ticket does not belong to this event",
                    code="EVENT_MISMATCH",
                    details={"ticket_event_id": str(ticket.event_id), "event_id": str(expected)}
                )

        if ticket.status == TicketStatus.USED:
            return CheckInResult(ticket=ticket, already_used=True, checked_in_at=ticket.used_at)
        if ticket.status != TicketStatus.PAID:
            raise TicketNotEligibleError(
                f"Ticket is {ticket.status.value} and cannot be checked in",
                details={"status": ticket.status.value}
            )

        opens_at, closes_at = self.check_in_window(event, now)
        if not (opens_at <= now <= closes_at):
            raise CheckInWindowClosedError(
                details={"opens_at": opens_at.isoformat(), "closes_at": closes_at.isoformat()}
            )

        async with db_manager.transaction(db):
            result = await db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id, Ticket.status == TicketStatus.PAID)
                .values(
                    status=TicketStatus.USED,
                    used_at=now,
                    used_by_user_id=actor_user_id,
                    **CLEARED_RESALE_STATE,
                )
            )
            admitted = result.rowcount == 1
            if admitted:
                await db.execute(
                    update(TicketResaleBid)
                    .where(
                        TicketResaleBid.ticket_id == ticket.id,
                        TicketResaleBid.status.in_([BidStatus.OPEN, BidStatus.ACCEPTED]),
                    )
                    .values(status=BidStatus.REJECTED, responded_at=now)
                )
            await db.refresh(ticket)

        if not admitted:
            if ticket.status == TicketStatus.USED:
                return CheckInResult(ticket=ticket, already_used=True, checked_in_at=ticket.used_at)
            raise TicketNotEligibleError(
                f"Ticket is {ticket.status.value} and cannot be checked in",
                details={"status": ticket.status.value}
            )

        logger.info(
            "Ticket checked in",
            extra=log_context(ticket_id=ticket.id, event_id=ticket.event_id, actor_user_id=actor_user_id)
        )
        return CheckInResult(ticket=ticket, already_used=False, checked_in_at=now)
