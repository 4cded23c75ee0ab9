"""
Payment attempt ledger: checkout initialization and attempt lookups
"""

import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from vera.config import settings
from vera.core.database import LIKE_ESCAPE, contains_pattern, db_manager
from vera.core.exceptions import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
    VeraException,
)
from vera.core.logging import log_context
from vera.core.metrics import CHECKOUTS
from vera.models.base import utc_now
from vera.models.event import Event
from vera.models.payment import (
    FulfillmentStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentEventLog,
    PaymentKind,
)
from vera.models.ticket import PaymentProvider, ResaleStatus, Ticket, TicketStatus
from vera.models.user import User
from vera.services.paystack import PaymentGateway

logger = logging.getLogger(__name__)

REFERENCE_KIND_LABELS = {
    PaymentKind.TICKET_PURCHASE: "purchase",
    PaymentKind.TICKET_RESALE_PURCHASE: "resale",
}


def to_minor_units(amount_naira: int) -> int:
    return int(amount_naira) * 100


def generate_reference(kind: PaymentKind, subject_id: Optional[UUID] = None) -> str:
    suffix = subject_id.hex[:8] if subject_id else secrets.token_hex(4)
    millis = int(time.time() * 1000)
    return f"vera_{REFERENCE_KIND_LABELS[kind]}_{suffix}_{millis}_{secrets.token_hex(4)}"


class CheckoutService:
    """
    Opens gateway checkouts and keeps the attempt ledger consistent
    with the outcome of the gateway call.
    """

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    async def begin_checkout(
        self,
        db: AsyncSession,
        kind: PaymentKind,
        buyer: User,
        event_id: UUID,
        amount_naira: int,
        callback_url: str = "",
        ticket_id: Optional[UUID] = None,
        resale_source_ticket_id: Optional[UUID] = None,
        accepted_bid_id: Optional[UUID] = None,
        resale_quantity: Optional[int] = None,
        resale_price_naira: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentAttempt:
        """
        Record an initialized attempt, then ask the gateway for a checkout.

        The gateway call runs outside any database transaction. If it fails
        the attempt is marked failed and any local state created for it is
        released before the error is re-raised.
        """
        subject_id = ticket_id or resale_source_ticket_id
        reference = generate_reference(kind, subject_id)
        callback_url = callback_url or settings.PAYSTACK_CALLBACK_URL
        gateway_metadata = {
            "kind": kind.value,
            "event_id": str(event_id),
            "buyer_user_id": str(buyer.id),
            **(metadata or {}),
        }
        if ticket_id:
            gateway_metadata["ticket_id"] = str(ticket_id)
        if resale_source_ticket_id:
            gateway_metadata["resale_source_ticket_id"] = str(resale_source_ticket_id)

        attempt = PaymentAttempt(
            reference=reference,
            provider="paystack",
            kind=kind,
            status=PaymentAttemptStatus.INITIALIZED,
            buyer_user_id=buyer.id,
            event_id=event_id,
            ticket_id=ticket_id,
            resale_source_ticket_id=resale_source_ticket_id,
            accepted_bid_id=accepted_bid_id,
            resale_quantity=resale_quantity,
            resale_price_naira=resale_price_naira,
            amount_minor_units=to_minor_units(amount_naira),
            currency=settings.PAYMENT_CURRENCY,
            callback_url=callback_url,
            fulfillment_status=FulfillmentStatus.PENDING,
        )

        async with db_manager.transaction(db):
            db.add(attempt)
            if kind == PaymentKind.TICKET_PURCHASE and ticket_id:
                await db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket_id)
                    .values(payment_reference=reference, payment_provider=PaymentProvider.PAYSTACK)
                )

        try:
            checkout = await self.gateway.initialize_transaction(
                email=buyer.email,
                amount_minor_units=attempt.amount_minor_units,
                reference=reference,
                callback_url=callback_url,
                metadata=gateway_metadata,
            )
        except Exception as e:
            reason = e.message if isinstance(e, VeraException) else str(e)
            await self._record_failure(db, attempt, reason)
            CHECKOUTS.labels(kind=kind.value, outcome="failed").inc()
            if isinstance(e, VeraException):
                raise
            raise ExternalServiceError("paystack", "Payment gateway is unavailable", status_code=502) from e

        async with db_manager.transaction(db):
            attempt.authorization_url = checkout.authorization_url
            attempt.access_code = checkout.access_code
            attempt.initialize_payload = checkout.raw
            db.add(attempt)
            if kind == PaymentKind.TICKET_PURCHASE and ticket_id:
                await db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket_id)
                    .values(
                        payment_authorization_url=checkout.authorization_url,
                        payment_access_code=checkout.access_code,
                        payment_metadata=gateway_metadata,
                    )
                )

        CHECKOUTS.labels(kind=kind.value, outcome="initialized").inc()
        logger.info(
            "Checkout initialized",
            extra=log_context(
                reference=reference,
                kind=kind.value,
                buyer_user_id=buyer.id,
                amount_minor_units=attempt.amount_minor_units,
            )
        )
        return attempt

    async def _record_failure(self, db: AsyncSession, attempt: PaymentAttempt, reason: str):
        now = utc_now()
        try:
            async with db_manager.transaction(db):
                await db.execute(
                    update(PaymentAttempt)
                    .where(
                        PaymentAttempt.id == attempt.id,
                        PaymentAttempt.fulfillment_status != FulfillmentStatus.DONE,
                    )
                    .values(
                        status=PaymentAttemptStatus.FAILED,
                        fulfillment_status=FulfillmentStatus.FAILED,
                        failure_reason=reason[:1000],
                    )
                )

                if attempt.kind == PaymentKind.TICKET_PURCHASE and attempt.ticket_id:
                    # Roll the reservation forward so capacity is freed
                    await db.execute(
                        update(Ticket)
                        .where(Ticket.id == attempt.ticket_id, Ticket.status == TicketStatus.PENDING)
                        .values(status=TicketStatus.CANCELLED, cancelled_at=now)
                    )

                if (
                    attempt.kind == PaymentKind.TICKET_RESALE_PURCHASE
                    and attempt.accepted_bid_id is None
                    and attempt.resale_source_ticket_id
                ):
                    # Release the implicit reservation taken for a direct purchase
                    await db.execute(
                        update(Ticket)
                        .where(
                            Ticket.id == attempt.resale_source_ticket_id,
                            Ticket.resale_status == ResaleStatus.OFFER_ACCEPTED,
                            Ticket.accepted_bid_id.is_(None),
                            Ticket.resale_buyer_user_id == attempt.buyer_user_id,
                        )
                        .values(
                            resale_status=ResaleStatus.LISTED,
                            resale_buyer_user_id=None,
                            accepted_bid_expires_at=None,
                        )
                    )
        except Exception:
            logger.exception(
                "Could not record checkout failure",
                extra=log_context(reference=attempt.reference)
            )
            raise

        logger.warning(
            f"Checkout initialization failed: {reason}",
            extra=log_context(reference=attempt.reference, kind=attempt.kind.value)
        )


ATTEMPT_SCOPES = ("mine", "organizer")


async def list_payment_attempts(
    db: AsyncSession,
    actor_user_id: UUID,
    scope: str = "mine",
    event_id: Optional[UUID] = None,
    status: Optional[PaymentAttemptStatus] = None,
    kind: Optional[PaymentKind] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[PaymentAttempt], int]:
    """
    One page of the attempt ledger and the total match count.

    ``mine`` lists the actor's own payments. ``organizer`` lists payments
    for events the actor organizes, optionally narrowed to one of them.
    """
    if scope not in ATTEMPT_SCOPES:
        raise ValidationError(f"Unknown scope '{scope}'", field="scope")

    conditions = []
    if scope == "organizer":
        if event_id is not None:
            event = await db.get(Event, event_id)
            if not event:
                raise NotFoundError("Event", event_id)
            if event.organizer_user_id != actor_user_id:
                raise AuthorizationError("You can only inspect payment attempts for your events")
            conditions.append(PaymentAttempt.event_id == event_id)
        else:
            conditions.append(
                PaymentAttempt.event_id.in_(
                    select(Event.id).where(Event.organizer_user_id == actor_user_id)
                )
            )
    else:
        conditions.append(PaymentAttempt.buyer_user_id == actor_user_id)
        if event_id is not None:
            conditions.append(PaymentAttempt.event_id == event_id)

    if status is not None:
        conditions.append(PaymentAttempt.status == status)
    if kind is not None:
        conditions.append(PaymentAttempt.kind == kind)
    term = (search or "").strip()
    if term:
        pattern = contains_pattern(term)
        conditions.append(
            or_(
                PaymentAttempt.reference.ilike(pattern, escape=LIKE_ESCAPE),
                PaymentAttempt.failure_reason.ilike(pattern, escape=LIKE_ESCAPE),
            )
        )

    total = await db.scalar(select(func.count()).select_from(PaymentAttempt).where(*conditions))
    result = await db.execute(
        select(PaymentAttempt)
        .where(*conditions)
        .order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.id)
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return list(result.scalars().all()), total or 0


async def get_payment_attempt(
    db: AsyncSession,
    attempt_id: UUID,
    actor_user_id: UUID,
) -> Dict[str, Any]:
    """
    Attempt detail with its webhook audit trail.
    Visible to the buyer and to the event organizer.
    """
    attempt = await db.get(PaymentAttempt, attempt_id)
    if not attempt:
        raise NotFoundError("Payment attempt", attempt_id)

    if attempt.buyer_user_id != actor_user_id:
        event = await db.get(Event, attempt.event_id)
        if not event or event.organizer_user_id != actor_user_id:
            raise AuthorizationError("You cannot view this payment attempt")

    result = await db.execute(
        select(PaymentEventLog)
        .where(
            or_(
                PaymentEventLog.payment_attempt_id == attempt.id,
                PaymentEventLog.reference == attempt.reference,
            )
        )
        .order_by(PaymentEventLog.created_at)
    )
    return {"attempt": attempt, "events": list(result.scalars().all())}
