"""
Resale marketplace

A paid ticket moves through ``none -> listed -> offer-accepted`` and back.
An accepted offer reserves the ticket for one buyer for a bounded window;
every operation first releases a lapsed reservation, and the sweeper does
the same in the background.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vera.config import settings
from vera.core.database import db_manager
from vera.core.exceptions import (
    AlreadyOwnTicketError,
    AuthorizationError,
    BiddingRequiredError,
    ConflictError,
    NotFoundError,
    NotOwnerError,
    OfferWindowExpiredError,
    PriceExceedsCapError,
    TicketNotEligibleError,
    ValidationError,
)
from vera.core.logging import log_context
from vera.core.metrics import RESALE_OFFERS_EXPIRED, RESALE_TRANSITIONS
from vera.models.base import utc_now
from vera.models.event import Event
from vera.models.payment import (
    FulfillmentStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentKind,
)
from vera.models.ticket import (
    BidStatus,
    PaymentProvider,
    ResaleStatus,
    Ticket,
    TicketResaleBid,
    TicketStatus,
)
from vera.models.user import User
from vera.services.checkout import CheckoutService, to_minor_units
from vera.services.notifications import NotificationSink, notification_sink, notify_safely
from vera.services.paystack import PaymentGateway
from vera.services.ticket_codes import TicketCodeAllocator, ticket_code_allocator
from vera.services.tickets import CLEARED_RESALE_STATE, build_barcode_value

logger = logging.getLogger(__name__)

ACCEPTED_OFFER_CLEARED = {
    "accepted_bid_id": None,
    "accepted_bid_expires_at": None,
    "resale_buyer_user_id": None,
}


@dataclass
class ResaleTransfer:
    ticket: Ticket
    source_ticket_id: UUID
    seller_user_id: UUID
    quantity: int
    split: bool


def resale_price_cap(unit_price_naira: int, quantity: int, max_markup_percent: int) -> int:
    """Highest total asking price allowed for ``quantity`` seats"""
    return (unit_price_naira * quantity * (100 + max_markup_percent)) // 100


def proportional_total(total_naira: int, part: int, whole: int) -> int:
    """``total * part / whole`` rounded half-up in integer arithmetic"""
    return (2 * total_naira * part + whole) // (2 * whole)


class ResaleMarketplace:
    """
    Listing, bidding and transfer of paid tickets between users
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        allocator: Optional[TicketCodeAllocator] = None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.gateway = gateway
        self.allocator = allocator or ticket_code_allocator
        self.notifications = notifications or notification_sink
        self.checkout = CheckoutService(gateway)

    # Helpers

    async def _lock_ticket(self, db: AsyncSession, ticket_id: UUID) -> Ticket:
        ticket = await db.get(Ticket, ticket_id, populate_existing=True, with_for_update=True)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id)
        return ticket

    async def _lock_bid(self, db: AsyncSession, ticket_id: UUID, bid_id: UUID) -> TicketResaleBid:
        bid = await db.get(TicketResaleBid, bid_id, populate_existing=True, with_for_update=True)
        if not bid or bid.ticket_id != ticket_id:
            raise NotFoundError("Bid", bid_id)
        return bid

    async def _update_ticket(self, db: AsyncSession, ticket_id: UUID, conditions, values) -> bool:
        result = await db.execute(
            update(Ticket).where(Ticket.id == ticket_id, *conditions).values(**values)
        )
        return result.rowcount == 1

    async def _reject_bids(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        now: datetime,
        statuses=(BidStatus.OPEN,),
        keep_bid_id: Optional[UUID] = None,
    ) -> int:
        conditions = [TicketResaleBid.ticket_id == ticket_id, TicketResaleBid.status.in_(list(statuses))]
        if keep_bid_id is not None:
            conditions.append(TicketResaleBid.id != keep_bid_id)
        result = await db.execute(
            update(TicketResaleBid)
            .where(*conditions)
            .values(status=BidStatus.REJECTED, responded_at=now)
        )
        return result.rowcount

    @staticmethod
    def _bid_window(event: Event) -> timedelta:
        hours = event.resale_bid_window_hours or settings.RESALE_DEFAULT_BID_WINDOW_HOURS
        return timedelta(hours=hours)

    # Expiry

    async def expire_offer(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        now: Optional[datetime] = None,
        source: str = "lazy",
    ) -> bool:
        """
        Release a lapsed accepted offer back to ``listed``.

        Conditional on the ticket still holding the same offer and its
        window having passed, so it is safe to run from several places.
        """
        now = now or utc_now()
        async with db_manager.transaction(db):
            ticket = await db.get(Ticket, ticket_id, populate_existing=True, with_for_update=True)
            if (
                not ticket
                or ticket.resale_status != ResaleStatus.OFFER_ACCEPTED
                or ticket.accepted_bid_expires_at is None
                or ticket.accepted_bid_expires_at > now
            ):
                return False

            bid_id = ticket.accepted_bid_id
            buyer_user_id = ticket.resale_buyer_user_id
            released = await self._update_ticket(
                db,
                ticket_id,
                [
                    Ticket.resale_status == ResaleStatus.OFFER_ACCEPTED,
                    Ticket.accepted_bid_expires_at <= now,
                ],
                {"resale_status": ResaleStatus.LISTED, **ACCEPTED_OFFER_CLEARED},
            )
            if not released:
                return False

            if bid_id is not None:
                await db.execute(
                    update(TicketResaleBid)
                    .where(TicketResaleBid.id == bid_id, TicketResaleBid.status == BidStatus.ACCEPTED)
                    .values(status=BidStatus.EXPIRED, responded_at=now)
                )

        RESALE_OFFERS_EXPIRED.labels(source=source).inc()
        logger.info(
            "Accepted resale offer expired",
            extra=log_context(ticket_id=ticket_id, bid_id=bid_id, source=source)
        )
        await notify_safely(
            self.notifications,
            buyer_user_id,
            "resale_offer_expired",
            "Resale offer expired",
            "Your reservation window for this ticket has closed",
            {"ticket_id": str(ticket_id)},
        )
        return True

    async def expire_due_offers_for_event(
        self, db: AsyncSession, event_id: UUID, now: Optional[datetime] = None
    ) -> int:
        now = now or utc_now()
        ticket_ids = (
            await db.scalars(
                select(Ticket.id).where(
                    Ticket.event_id == event_id,
                    Ticket.resale_status == ResaleStatus.OFFER_ACCEPTED,
                    Ticket.accepted_bid_expires_at <= now,
                )
            )
        ).all()
        expired = 0
        for ticket_id in ticket_ids:
            if await self.expire_offer(db, ticket_id, now):
                expired += 1
        return expired

    # Seller operations

    async def list_ticket(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        actor_user_id: UUID,
        price_naira: int,
        quantity: Optional[int] = None,
        allow_bids: bool = False,
        now: Optional[datetime] = None,
    ) -> Ticket:
        """
        Put some or all seats of a paid ticket on the market.
        ``price_naira`` is the total asking price for the listed seats.
        """
        now = now or utc_now()
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            if ticket.buyer_user_id != actor_user_id:
                raise NotOwnerError()
            if ticket.status != TicketStatus.PAID:
                raise TicketNotEligibleError(
                    "Only paid tickets can be listed for resale",
                    details={"status": ticket.status.value}
                )
            if ticket.resale_status == ResaleStatus.OFFER_ACCEPTED:
                raise TicketNotEligibleError("Ticket is reserved for a buyer")

            event = await db.get(Event, ticket.event_id)
            if not event or not event.resale_enabled:
                raise TicketNotEligibleError("Resale is disabled for this event")

            quantity = quantity or ticket.quantity
            if quantity < 1 or quantity > ticket.quantity:
                raise ValidationError(
                    f"Resale quantity must be between 1 and {ticket.quantity}", field="quantity"
                )
            if price_naira < 1:
                raise ValidationError("Resale price must be at least 1", field="price_naira")

            markup = event.resale_max_markup_percent
            if markup is None:
                markup = settings.RESALE_DEFAULT_MAX_MARKUP_PERCENT
            cap = resale_price_cap(ticket.unit_price_naira, quantity, markup)
            if price_naira > cap:
                raise PriceExceedsCapError(price_naira, cap)

            listed = await self._update_ticket(
                db,
                ticket.id,
                [
                    Ticket.status == TicketStatus.PAID,
                    Ticket.resale_status.in_([ResaleStatus.NONE, ResaleStatus.LISTED]),
                ],
                {
                    "resale_status": ResaleStatus.LISTED,
                    "resale_price_naira": price_naira,
                    "resale_quantity": quantity,
                    "resale_allow_bids": bool(allow_bids),
                    "resale_listed_at": now,
                    **ACCEPTED_OFFER_CLEARED,
                },
            )
            if not listed:
                raise TicketNotEligibleError("Ticket changed while listing, refresh and retry")
            await self._reject_bids(db, ticket.id, now)
            await db.refresh(ticket)

        RESALE_TRANSITIONS.labels(action="listed").inc()
        logger.info(
            "Ticket listed for resale",
            extra=log_context(
                ticket_id=ticket.id, price_naira=price_naira, quantity=quantity, allow_bids=allow_bids
            )
        )
        return ticket

    async def cancel_listing(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        actor_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> Ticket:
        now = now or utc_now()
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            if ticket.buyer_user_id != actor_user_id:
                raise NotOwnerError()
            if ticket.resale_status == ResaleStatus.OFFER_ACCEPTED:
                raise TicketNotEligibleError("Ticket is reserved for a buyer")

            cancelled = await self._update_ticket(
                db,
                ticket.id,
                [Ticket.resale_status == ResaleStatus.LISTED],
                dict(CLEARED_RESALE_STATE),
            )
            if not cancelled:
                raise TicketNotEligibleError("Ticket is not listed for resale")
            await self._reject_bids(db, ticket.id, now)
            await db.refresh(ticket)

        RESALE_TRANSITIONS.labels(action="unlisted").inc()
        logger.info("Resale listing cancelled", extra=log_context(ticket_id=ticket.id))
        return ticket

    async def accept_bid(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        bid_id: UUID,
        actor_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> Ticket:
        """
        Reserve the ticket for one bidder and reject every competing bid
        """
        now = now or utc_now()
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            if ticket.buyer_user_id != actor_user_id:
                raise NotOwnerError()
            if ticket.status != TicketStatus.PAID or ticket.resale_status != ResaleStatus.LISTED:
                raise TicketNotEligibleError("Ticket is not listed for resale")

            bid = await self._lock_bid(db, ticket.id, bid_id)
            if bid.status != BidStatus.OPEN:
                raise ConflictError(
                    "Bid is no longer open", code="BID_NOT_OPEN", details={"status": bid.status.value}
                )

            event = await db.get(Event, ticket.event_id)
            expires_at = now + self._bid_window(event)

            reserved = await self._update_ticket(
                db,
                ticket.id,
                [Ticket.status == TicketStatus.PAID, Ticket.resale_status == ResaleStatus.LISTED],
                {
                    "resale_status": ResaleStatus.OFFER_ACCEPTED,
                    "accepted_bid_id": bid.id,
                    "accepted_bid_expires_at": expires_at,
                    "resale_buyer_user_id": bid.bidder_user_id,
                },
            )
            if not reserved:
                raise TicketNotEligibleError("Ticket is not listed for resale")

            result = await db.execute(
                update(TicketResaleBid)
                .where(TicketResaleBid.id == bid.id, TicketResaleBid.status == BidStatus.OPEN)
                .values(status=BidStatus.ACCEPTED, responded_at=now, expires_at=expires_at)
            )
            if result.rowcount != 1:
                raise ConflictError("Bid is no longer open", code="BID_NOT_OPEN")

            await self._reject_bids(db, ticket.id, now, keep_bid_id=bid.id)
            await db.refresh(ticket)
            await db.refresh(bid)

        RESALE_TRANSITIONS.labels(action="bid_accepted").inc()
        logger.info(
            "Resale bid accepted",
            extra=log_context(ticket_id=ticket.id, bid_id=bid.id, expires_at=expires_at)
        )
        await notify_safely(
            self.notifications,
            bid.bidder_user_id,
            "resale_bid_accepted",
            "Your bid was accepted",
            f"Complete payment before {expires_at.isoformat()}",
            {"ticket_id": str(ticket.id), "bid_id": str(bid.id)},
        )
        return ticket

    async def reject_bid(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        bid_id: UUID,
        actor_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> TicketResaleBid:
        now = now or utc_now()
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            if ticket.buyer_user_id != actor_user_id:
                raise NotOwnerError()
            bid = await self._lock_bid(db, ticket.id, bid_id)

            result = await db.execute(
                update(TicketResaleBid)
                .where(TicketResaleBid.id == bid.id, TicketResaleBid.status == BidStatus.OPEN)
                .values(status=BidStatus.REJECTED, responded_at=now)
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "Bid is no longer open", code="BID_NOT_OPEN", details={"status": bid.status.value}
                )
            await db.refresh(bid)

        RESALE_TRANSITIONS.labels(action="bid_rejected").inc()
        await notify_safely(
            self.notifications,
            bid.bidder_user_id,
            "resale_bid_rejected",
            "Your bid was declined",
            "The seller declined your offer",
            {"ticket_id": str(ticket_id), "bid_id": str(bid.id)},
        )
        return bid

    # Buyer operations

    async def place_bid(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        bidder_user_id: UUID,
        amount_naira: int,
        now: Optional[datetime] = None,
    ) -> TicketResaleBid:
        """
        Create or update the bidder's single open bid on a listing
        """
        now = now or utc_now()
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            if ticket.buyer_user_id == bidder_user_id:
                raise AlreadyOwnTicketError()
            if ticket.status != TicketStatus.PAID or ticket.resale_status != ResaleStatus.LISTED:
                raise TicketNotEligibleError("Ticket is not open for bids")
            if not ticket.resale_allow_bids:
                raise TicketNotEligibleError("This listing does not accept bids")
            if amount_naira < 1 or amount_naira > (ticket.resale_price_naira or 0):
                raise ValidationError(
                    f"Bid must be between 1 and {ticket.resale_price_naira}", field="amount_naira"
                )

            result = await db.execute(
                select(TicketResaleBid)
                .where(
                    TicketResaleBid.ticket_id == ticket.id,
                    TicketResaleBid.bidder_user_id == bidder_user_id,
                    TicketResaleBid.status == BidStatus.OPEN,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            bid = result.scalar_one_or_none()
            if bid is None:
                bid = TicketResaleBid(
                    ticket_id=ticket.id,
                    event_id=ticket.event_id,
                    seller_user_id=ticket.buyer_user_id,
                    bidder_user_id=bidder_user_id,
                    amount_naira=amount_naira,
                    status=BidStatus.OPEN,
                )
                db.add(bid)
                action = "bid_placed"
            else:
                bid.amount_naira = amount_naira
                action = "bid_updated"
            await db.flush()

        RESALE_TRANSITIONS.labels(action=action).inc()
        logger.info(
            "Resale bid recorded",
            extra=log_context(ticket_id=ticket_id, bid_id=bid.id, amount_naira=amount_naira, action=action)
        )
        await notify_safely(
            self.notifications,
            ticket.buyer_user_id,
            "resale_bid_received",
            "New bid on your ticket",
            f"A buyer offered {amount_naira} NGN",
            {"ticket_id": str(ticket_id), "bid_id": str(bid.id)},
        )
        return bid

    async def withdraw_bid(
        self,
        db: AsyncSession,
        bid_id: UUID,
        bidder_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> TicketResaleBid:
        """
        Withdraw an open bid, or give up an accepted one, which puts the
        ticket back on the market.
        """
        now = now or utc_now()
        bid = await db.get(TicketResaleBid, bid_id, populate_existing=True)
        if not bid:
            raise NotFoundError("Bid", bid_id)
        if bid.bidder_user_id != bidder_user_id:
            raise AuthorizationError("Only the bidder can withdraw this bid")
        await self.expire_offer(db, bid.ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, bid.ticket_id)
            bid = await self._lock_bid(db, ticket.id, bid_id)

            if bid.status == BidStatus.OPEN:
                result = await db.execute(
                    update(TicketResaleBid)
                    .where(TicketResaleBid.id == bid.id, TicketResaleBid.status == BidStatus.OPEN)
                    .values(status=BidStatus.WITHDRAWN, responded_at=now)
                )
            elif bid.status == BidStatus.ACCEPTED:
                result = await db.execute(
                    update(TicketResaleBid)
                    .where(TicketResaleBid.id == bid.id, TicketResaleBid.status == BidStatus.ACCEPTED)
                    .values(status=BidStatus.WITHDRAWN, responded_at=now)
                )
                await self._update_ticket(
                    db,
                    ticket.id,
                    [
                        Ticket.resale_status == ResaleStatus.OFFER_ACCEPTED,
                        Ticket.accepted_bid_id == bid.id,
                    ],
                    {"resale_status": ResaleStatus.LISTED, **ACCEPTED_OFFER_CLEARED},
                )
            else:
                raise ConflictError(
                    "Bid is no longer active", code="BID_NOT_ACTIVE", details={"status": bid.status.value}
                )

            if result.rowcount != 1:
                raise ConflictError("Bid is no longer active", code="BID_NOT_ACTIVE")
            await db.refresh(bid)

        RESALE_TRANSITIONS.labels(action="bid_withdrawn").inc()
        logger.info("Resale bid withdrawn", extra=log_context(ticket_id=bid.ticket_id, bid_id=bid.id))
        return bid

    async def _prepare_purchase(
        self,
        db: AsyncSession,
        ticket: Ticket,
        buyer_user_id: UUID,
        now: datetime,
    ) -> Tuple[int, Optional[UUID]]:
        """
        Check the buyer may pay for this listing and make sure the ticket
        is reserved for them. Returns the amount due and the accepted bid.
        Caller holds the transaction and the ticket lock.
        """
        if ticket.buyer_user_id == buyer_user_id:
            raise AlreadyOwnTicketError()
        if ticket.status != TicketStatus.PAID:
            raise TicketNotEligibleError("Ticket is no longer available")

        if ticket.resale_status == ResaleStatus.OFFER_ACCEPTED:
            if ticket.resale_buyer_user_id != buyer_user_id:
                raise TicketNotEligibleError("Ticket is reserved for another buyer")
            if ticket.accepted_bid_expires_at and ticket.accepted_bid_expires_at <= now:
                raise OfferWindowExpiredError(ticket.accepted_bid_expires_at)
            if ticket.accepted_bid_id is None:
                return ticket.resale_price_naira, None
            bid = await db.get(TicketResaleBid, ticket.accepted_bid_id)
            if not bid or bid.status != BidStatus.ACCEPTED:
                raise TicketNotEligibleError("Accepted bid is no longer valid")
            return bid.amount_naira, bid.id

        if ticket.resale_status == ResaleStatus.LISTED:
            if ticket.resale_allow_bids:
                raise BiddingRequiredError()

            # Direct purchase takes the same exclusive reservation a bid would
            event = await db.get(Event, ticket.event_id)
            reserved = await self._update_ticket(
                db,
                ticket.id,
                [
                    Ticket.status == TicketStatus.PAID,
                    Ticket.resale_status == ResaleStatus.LISTED,
                    Ticket.resale_allow_bids.is_(False),
                ],
                {
                    "resale_status": ResaleStatus.OFFER_ACCEPTED,
                    "accepted_bid_id": None,
                    "accepted_bid_expires_at": now + self._bid_window(event),
                    "resale_buyer_user_id": buyer_user_id,
                },
            )
            if not reserved:
                raise TicketNotEligibleError("Ticket is no longer available")
            RESALE_TRANSITIONS.labels(action="reserved").inc()
            return ticket.resale_price_naira, None

        raise TicketNotEligibleError("Ticket is not listed for resale")

    async def _open_checkout(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        buyer_user_id: UUID,
        accepted_bid_id: Optional[UUID],
        amount_naira: int,
        quantity: int,
        price_naira: Optional[int],
    ) -> Optional[PaymentAttempt]:
        """Unpaid checkout already opened for this reservation on the same terms"""
        bid_condition = (
            PaymentAttempt.accepted_bid_id.is_(None)
            if accepted_bid_id is None
            else PaymentAttempt.accepted_bid_id == accepted_bid_id
        )
        result = await db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.kind == PaymentKind.TICKET_RESALE_PURCHASE,
                PaymentAttempt.resale_source_ticket_id == ticket_id,
                PaymentAttempt.buyer_user_id == buyer_user_id,
                bid_condition,
                PaymentAttempt.status == PaymentAttemptStatus.INITIALIZED,
                PaymentAttempt.fulfillment_status == FulfillmentStatus.PENDING,
                PaymentAttempt.authorization_url != "",
                PaymentAttempt.amount_minor_units == to_minor_units(amount_naira),
                PaymentAttempt.resale_quantity == quantity,
                PaymentAttempt.resale_price_naira == price_naira,
            )
            .order_by(PaymentAttempt.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def begin_resale_checkout(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        buyer_user_id: UUID,
        callback_url: str = "",
        now: Optional[datetime] = None,
    ) -> PaymentAttempt:
        """
        Open a gateway checkout for a listing reserved for this buyer
        """
        now = now or utc_now()
        buyer = await db.get(User, buyer_user_id)
        if not buyer:
            raise NotFoundError("User", buyer_user_id)

        ticket = await db.get(Ticket, ticket_id, populate_existing=True)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id)
        lapsed_at = ticket.accepted_bid_expires_at
        lapsed_for_buyer = (
            ticket.resale_status == ResaleStatus.OFFER_ACCEPTED
            and ticket.resale_buyer_user_id == buyer_user_id
            and lapsed_at is not None
            and lapsed_at <= now
        )
        await self.expire_offer(db, ticket_id, now)
        if lapsed_for_buyer:
            raise OfferWindowExpiredError(lapsed_at)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            amount_naira, accepted_bid_id = await self._prepare_purchase(db, ticket, buyer_user_id, now)
            quantity = ticket.resale_quantity or ticket.quantity
            price_naira = ticket.resale_price_naira
            event_id = ticket.event_id
            open_attempt = await self._open_checkout(
                db, ticket_id, buyer_user_id, accepted_bid_id, amount_naira, quantity, price_naira
            )

        if open_attempt is not None:
            logger.info(
                "Reusing open resale checkout",
                extra=log_context(ticket_id=ticket_id, reference=open_attempt.reference)
            )
            return open_attempt

        return await self.checkout.begin_checkout(
            db,
            PaymentKind.TICKET_RESALE_PURCHASE,
            buyer,
            event_id,
            amount_naira,
            callback_url=callback_url,
            resale_source_ticket_id=ticket_id,
            accepted_bid_id=accepted_bid_id,
            resale_quantity=quantity,
            resale_price_naira=price_naira,
            metadata={"quantity": quantity, "ticket_code": ticket.ticket_code},
        )

    async def purchase_resale(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        buyer_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> ResaleTransfer:
        """
        Complete a resale without a gateway. Only allowed while the
        payment bypass is active.
        """
        if self.gateway.is_configured or not settings.paystack_bypass_allowed:
            raise ConflictError(
                "Resale purchases must be paid through checkout", code="CHECKOUT_REQUIRED"
            )

        now = now or utc_now()
        buyer = await db.get(User, buyer_user_id)
        if not buyer:
            raise NotFoundError("User", buyer_user_id)
        await self.expire_offer(db, ticket_id, now)

        async with db_manager.transaction(db):
            ticket = await self._lock_ticket(db, ticket_id)
            _, accepted_bid_id = await self._prepare_purchase(db, ticket, buyer_user_id, now)
            transfer = await self.complete_purchase(db, ticket_id, buyer_user_id, accepted_bid_id, now)

        await self.notify_transfer(transfer, buyer_user_id)
        return transfer

    # Settlement

    async def complete_purchase(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        buyer_user_id: UUID,
        accepted_bid_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
        expected_quantity: Optional[int] = None,
        expected_price_naira: Optional[int] = None,
    ) -> ResaleTransfer:
        """
        Move the listed seats to the buyer.

        Runs inside the caller's transaction. A partial sale splits a new
        ticket off the source; a full sale rewrites ownership in place.

        The sale goes through only while the reservation is still held for
        this buyer and bid, or, once it has lapsed, while the ticket is back
        on the direct-sale market on exactly the terms the buyer paid for.
        ``expected_quantity`` and ``expected_price_naira`` are those terms.
        """
        now = now or utc_now()
        ticket = await self._lock_ticket(db, ticket_id)
        seller_user_id = ticket.buyer_user_id

        if ticket.status != TicketStatus.PAID:
            raise TicketNotEligibleError(
                "Ticket is no longer available for transfer", details={"status": ticket.status.value}
            )
        if seller_user_id == buyer_user_id:
            raise AlreadyOwnTicketError()
        if ticket.resale_status == ResaleStatus.OFFER_ACCEPTED:
            if ticket.resale_buyer_user_id != buyer_user_id:
                raise TicketNotEligibleError("Ticket is reserved for another buyer")
            if ticket.accepted_bid_id != accepted_bid_id:
                raise OfferWindowExpiredError()
        elif ticket.resale_status == ResaleStatus.LISTED:
            # Reservation lapsed; a bid price is no longer on offer
            if accepted_bid_id is not None or ticket.resale_allow_bids:
                raise OfferWindowExpiredError()
        else:
            raise TicketNotEligibleError("Ticket is not listed for resale")

        listed_quantity = ticket.resale_quantity or ticket.quantity
        if (
            (expected_quantity is not None and listed_quantity != expected_quantity)
            or (expected_price_naira is not None and ticket.resale_price_naira != expected_price_naira)
        ):
            raise OfferWindowExpiredError()

        buyer = await db.get(User, buyer_user_id)
        if not buyer:
            raise NotFoundError("User", buyer_user_id)

        quantity = min(listed_quantity, ticket.quantity)
        resale_guard = [
            Ticket.status == TicketStatus.PAID,
            Ticket.buyer_user_id == seller_user_id,
            Ticket.quantity == ticket.quantity,
            Ticket.resale_status.in_([ResaleStatus.LISTED, ResaleStatus.OFFER_ACCEPTED]),
        ]

        if quantity < ticket.quantity:
            sibling_total = proportional_total(ticket.total_price_naira, quantity, ticket.quantity)

            def build(code: str) -> Ticket:
                return Ticket(
                    event_id=ticket.event_id,
                    category_id=ticket.category_id,
                    category_name=ticket.category_name,
                    organizer_user_id=ticket.organizer_user_id,
                    buyer_user_id=buyer.id,
                    quantity=quantity,
                    unit_price_naira=ticket.unit_price_naira,
                    total_price_naira=sibling_total,
                    currency=ticket.currency,
                    status=TicketStatus.PAID,
                    payment_provider=PaymentProvider.PAYSTACK,
                    payment_metadata={"resale_source_ticket_id": str(ticket.id)},
                    attendee_name=buyer.full_name or "",
                    attendee_email=buyer.email.lower(),
                    ticket_code=code,
                    barcode_value=build_barcode_value(code, ticket.event_id),
                    paid_at=now,
                    verified_at=now,
                    resale_status=ResaleStatus.NONE,
                    last_transferred_at=now,
                )

            result_ticket = await self.allocator.insert_ticket(db, build)
            reduced = await self._update_ticket(
                db,
                ticket.id,
                resale_guard,
                {
                    "quantity": ticket.quantity - quantity,
                    "total_price_naira": ticket.total_price_naira - sibling_total,
                    **CLEARED_RESALE_STATE,
                },
            )
            if not reduced:
                raise ConflictError("Ticket changed during transfer", code="TRANSFER_CONFLICT")
            await db.refresh(ticket)
            split = True
        else:
            transferred = await self._update_ticket(
                db,
                ticket.id,
                resale_guard,
                {
                    "buyer_user_id": buyer.id,
                    "attendee_name": buyer.full_name or "",
                    "attendee_email": buyer.email.lower(),
                    "last_transferred_at": now,
                    **CLEARED_RESALE_STATE,
                },
            )
            if not transferred:
                raise ConflictError("Ticket changed during transfer", code="TRANSFER_CONFLICT")
            await db.refresh(ticket)
            result_ticket = ticket
            split = False

        if accepted_bid_id is not None:
            await db.execute(
                update(TicketResaleBid)
                .where(
                    TicketResaleBid.id == accepted_bid_id,
                    TicketResaleBid.status == BidStatus.ACCEPTED,
                )
                .values(status=BidStatus.PAID, paid_at=now)
            )
        await self._reject_bids(
            db, ticket.id, now, statuses=(BidStatus.OPEN, BidStatus.ACCEPTED), keep_bid_id=accepted_bid_id
        )

        RESALE_TRANSITIONS.labels(action="split" if split else "transferred").inc()
        logger.info(
            "Resale transfer completed",
            extra=log_context(
                source_ticket_id=ticket.id,
                ticket_id=result_ticket.id,
                seller_user_id=seller_user_id,
                buyer_user_id=buyer_user_id,
                quantity=quantity,
                split=split,
            )
        )
        return ResaleTransfer(
            ticket=result_ticket,
            source_ticket_id=ticket.id,
            seller_user_id=seller_user_id,
            quantity=quantity,
            split=split,
        )

    async def notify_transfer(self, transfer: ResaleTransfer, buyer_user_id: UUID):
        await notify_safely(
            self.notifications,
            buyer_user_id,
            "resale_purchase_completed",
            "Ticket transferred to you",
            f"Ticket {transfer.ticket.ticket_code} is now yours",
            {"ticket_id": str(transfer.ticket.id)},
        )
        await notify_safely(
            self.notifications,
            transfer.seller_user_id,
            "resale_sold",
            "Your ticket was sold",
            f"{transfer.quantity} seat(s) were transferred to the buyer",
            {"ticket_id": str(transfer.source_ticket_id)},
        )

    # Reads

    async def list_event_resales(
        self, db: AsyncSession, event_id: UUID, now: Optional[datetime] = None
    ) -> List[Ticket]:
        await self.expire_due_offers_for_event(db, event_id, now)
        result = await db.execute(
            select(Ticket)
            .where(
                Ticket.event_id == event_id,
                Ticket.status == TicketStatus.PAID,
                Ticket.resale_status == ResaleStatus.LISTED,
            )
            .order_by(Ticket.resale_listed_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_ticket_bids(
        self,
        db: AsyncSession,
        ticket_id: UUID,
        actor_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> List[TicketResaleBid]:
        await self.expire_offer(db, ticket_id, now)
        ticket = await db.get(Ticket, ticket_id, populate_existing=True)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id)
        if ticket.buyer_user_id != actor_user_id:
            raise NotOwnerError()
        result = await db.execute(
            select(TicketResaleBid)
            .where(TicketResaleBid.ticket_id == ticket_id)
            .order_by(TicketResaleBid.amount_naira.desc(), TicketResaleBid.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_my_bids(self, db: AsyncSession, bidder_user_id: UUID) -> List[TicketResaleBid]:
        result = await db.execute(
            select(TicketResaleBid)
            .where(TicketResaleBid.bidder_user_id == bidder_user_id)
            .order_by(TicketResaleBid.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
