"""
Payment reconciliation

The single place where a gateway confirmation turns into a paid ticket or a
completed resale transfer. Safe to call any number of times, concurrently,
from the verify endpoint and from the webhook for the same reference.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vera.config import settings
from vera.core.database import db_manager
from vera.core.exceptions import (
    AmountMismatchError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentNotCompletedError,
    TicketNotEligibleError,
    VeraException,
)
from vera.core.logging import log_context
from vera.core.metrics import PAYMENT_RECONCILIATIONS
from vera.models.base import utc_now
from vera.models.payment import (
    FulfillmentStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentKind,
)
from vera.models.ticket import Ticket, TicketStatus
from vera.services.notifications import NotificationSink, notification_sink, notify_safely
from vera.services.paystack import GatewayVerification, PaymentGateway
from vera.services.resale import ResaleMarketplace

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    ticket: Optional[Ticket]
    status: str
    already_verified: bool
    attempt: Optional[PaymentAttempt] = None


class _AlreadyFulfilled(Exception):
    """Another writer completed the attempt first; roll back ours"""


class PaymentReconciler:
    """
    Turns successful gateway payments into fulfilled tickets exactly once
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        marketplace: ResaleMarketplace,
        notifications: Optional[NotificationSink] = None,
    ):
        self.gateway = gateway
        self.marketplace = marketplace
        self.notifications = notifications or notification_sink
        self._handlers: Dict[PaymentKind, Callable[..., Awaitable[Ticket]]] = {
            PaymentKind.TICKET_PURCHASE: self._fulfill_purchase,
            PaymentKind.TICKET_RESALE_PURCHASE: self._fulfill_resale,
        }

    async def _load_attempt(self, db: AsyncSession, reference: str, lock: bool = False):
        query = (
            select(PaymentAttempt)
            .where(PaymentAttempt.reference == reference)
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        return (await db.execute(query)).scalar_one_or_none()

    async def _fulfilled_result(self, db: AsyncSession, attempt: PaymentAttempt) -> ReconcileResult:
        ticket_id = attempt.fulfillment_ticket_id or attempt.ticket_id or attempt.resale_source_ticket_id
        ticket = await db.get(Ticket, ticket_id, populate_existing=True) if ticket_id else None
        PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="already_verified").inc()
        return ReconcileResult(
            ticket=ticket,
            status=attempt.status.value,
            already_verified=True,
            attempt=attempt,
        )

    async def _verification_for(
        self,
        reference: str,
        gateway_payload: Optional[Union[GatewayVerification, Dict[str, Any]]],
    ) -> GatewayVerification:
        if gateway_payload is None:
            return await self.gateway.verify_transaction(reference)
        if isinstance(gateway_payload, GatewayVerification):
            return gateway_payload
        return GatewayVerification.from_payload(gateway_payload)

    async def _mark_attempt_failed(
        self,
        db: AsyncSession,
        attempt: PaymentAttempt,
        reason: str,
        status: Optional[PaymentAttemptStatus] = None,
        verify_payload: Optional[Dict[str, Any]] = None,
    ):
        """Record a failure without touching an attempt that is already done"""
        values: Dict[str, Any] = {
            "fulfillment_status": FulfillmentStatus.FAILED,
            "failure_reason": reason[:1000],
        }
        if status is not None:
            values["status"] = status
        if verify_payload is not None:
            values["verify_payload"] = verify_payload

        async with db_manager.transaction(db):
            await db.execute(
                update(PaymentAttempt)
                .where(
                    PaymentAttempt.id == attempt.id,
                    PaymentAttempt.fulfillment_status != FulfillmentStatus.DONE,
                )
                .values(**values)
            )

    async def reconcile(
        self,
        db: AsyncSession,
        reference: str,
        gateway_payload: Optional[Union[GatewayVerification, Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Apply the gateway's view of ``reference``.

        ``gateway_payload`` is the webhook's transaction object; when absent
        the gateway is asked directly.
        """
        now = now or utc_now()
        attempt = await self._load_attempt(db, reference)
        if attempt is None:
            return await self._reconcile_legacy(db, reference, gateway_payload, now)

        if attempt.fulfillment_status == FulfillmentStatus.DONE:
            return await self._fulfilled_result(db, attempt)

        # no transaction stays open across the gateway call
        await db.commit()
        verification = await self._verification_for(reference, gateway_payload)
        self._check_verification(attempt, verification)
        await self._reject_unpaid(db, attempt, verification)

        try:
            async with db_manager.transaction(db):
                locked = await self._load_attempt(db, reference, lock=True)
                if locked.fulfillment_status == FulfillmentStatus.DONE:
                    raise _AlreadyFulfilled()

                handler = self._handlers[locked.kind]
                ticket = await handler(db, locked, now)

                result = await db.execute(
                    update(PaymentAttempt)
                    .where(
                        PaymentAttempt.id == locked.id,
                        PaymentAttempt.fulfillment_status != FulfillmentStatus.DONE,
                    )
                    .values(
                        status=PaymentAttemptStatus.SUCCESS,
                        fulfillment_status=FulfillmentStatus.DONE,
                        fulfillment_ticket_id=ticket.id,
                        fulfilled_at=now,
                        verify_payload=verification.raw,
                        failure_reason="",
                    )
                )
                if result.rowcount != 1:
                    raise _AlreadyFulfilled()
        except _AlreadyFulfilled:
            attempt = await self._load_attempt(db, reference)
            return await self._fulfilled_result(db, attempt)
        except VeraException as e:
            logger.error(
                f"Payment fulfillment failed: {e.message}",
                extra=log_context(reference=reference, kind=attempt.kind.value, code=e.code)
            )
            await self._mark_attempt_failed(db, attempt, e.message, verify_payload=verification.raw)
            PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="fulfillment_failed").inc()
            raise
        except Exception as e:
            logger.exception(
                "Payment fulfillment crashed",
                extra=log_context(reference=reference, kind=attempt.kind.value)
            )
            try:
                await db.rollback()
                await self._mark_attempt_failed(
                    db, attempt, str(e) or type(e).__name__, verify_payload=verification.raw
                )
            except Exception:
                logger.exception(
                    "Could not record fulfillment failure", extra=log_context(reference=reference)
                )
            PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="fulfillment_error").inc()
            raise

        attempt = await self._load_attempt(db, reference)
        PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="fulfilled").inc()
        logger.info(
            "Payment reconciled",
            extra=log_context(
                reference=reference,
                kind=attempt.kind.value,
                ticket_id=ticket.id,
                amount_minor_units=verification.amount_minor_units,
            )
        )
        await self._notify_fulfilled(attempt, ticket)
        return ReconcileResult(
            ticket=ticket,
            status=attempt.status.value,
            already_verified=False,
            attempt=attempt,
        )

    def _check_verification(self, attempt: PaymentAttempt, verification: GatewayVerification):
        if verification.reference and verification.reference != attempt.reference:
            raise ConflictError(
                "Gateway reference does not match this payment",
                code="REFERENCE_MISMATCH",
                details={"reference": attempt.reference, "gateway_reference": verification.reference}
            )

    async def _reject_unpaid(
        self, db: AsyncSession, attempt: PaymentAttempt, verification: GatewayVerification
    ):
        """Record and raise when the gateway has not taken the full amount"""
        if not verification.is_success:
            status = (
                PaymentAttemptStatus.ABANDONED
                if verification.status == "abandoned"
                else PaymentAttemptStatus.FAILED
            )
            reason = f"Gateway reported status '{verification.status or 'unknown'}'"
            await self._mark_attempt_failed(db, attempt, reason, status, verification.raw)
            PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="not_completed").inc()
            logger.warning(reason, extra=log_context(reference=attempt.reference))
            raise PaymentNotCompletedError(verification.status or "unknown")

        expected_currency = (attempt.currency or settings.PAYMENT_CURRENCY).upper()
        details = {
            "expected_minor_units": attempt.amount_minor_units,
            "paid_minor_units": verification.amount_minor_units,
            "expected_currency": expected_currency,
            "paid_currency": verification.currency,
        }
        if verification.currency != expected_currency:
            reason = "Payment currency does not match"
        elif verification.amount_minor_units < attempt.amount_minor_units:
            reason = "Paid amount is less than the amount due"
        else:
            return

        await self._mark_attempt_failed(
            db, attempt, reason, PaymentAttemptStatus.FAILED, verification.raw
        )
        PAYMENT_RECONCILIATIONS.labels(kind=attempt.kind.value, outcome="amount_mismatch").inc()
        logger.warning(reason, extra=log_context(reference=attempt.reference, **details))
        raise AmountMismatchError(reason, details=details)

    async def _mark_ticket_paid(self, db: AsyncSession, ticket_id: UUID, now: datetime) -> Ticket:
        """Conditional ``pending -> paid``; a ticket already paid or used is left alone"""
        ticket = await db.get(Ticket, ticket_id, populate_existing=True, with_for_update=True)
        if not ticket:
            raise NotFoundError("Ticket", ticket_id)

        await db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.PENDING)
            .values(status=TicketStatus.PAID, paid_at=now, verified_at=now)
        )
        await db.refresh(ticket)

        if ticket.status not in (TicketStatus.PAID, TicketStatus.USED):
            raise TicketNotEligibleError(
                f"Ticket is {ticket.status.value} and cannot be fulfilled",
                details={"ticket_id": str(ticket.id), "status": ticket.status.value}
            )
        return ticket

    async def _fulfill_purchase(self, db: AsyncSession, attempt: PaymentAttempt, now: datetime) -> Ticket:
        return await self._mark_ticket_paid(db, attempt.ticket_id, now)

    async def _fulfill_resale(self, db: AsyncSession, attempt: PaymentAttempt, now: datetime) -> Ticket:
        # The buyer always comes from the attempt, never from the caller
        transfer = await self.marketplace.complete_purchase(
            db,
            attempt.resale_source_ticket_id,
            attempt.buyer_user_id,
            attempt.accepted_bid_id,
            now,
            expected_quantity=attempt.resale_quantity,
            expected_price_naira=attempt.resale_price_naira,
        )
        return transfer.ticket

    async def _notify_fulfilled(self, attempt: PaymentAttempt, ticket: Ticket):
        if attempt.kind == PaymentKind.TICKET_RESALE_PURCHASE:
            await notify_safely(
                self.notifications,
                attempt.buyer_user_id,
                "resale_purchase_completed",
                "Ticket transferred to you",
                f"Ticket {ticket.ticket_code} is now yours",
                {"ticket_id": str(ticket.id), "reference": attempt.reference},
            )
            return
        await notify_safely(
            self.notifications,
            attempt.buyer_user_id,
            "ticket_payment_confirmed",
            "Payment confirmed",
            f"Ticket {ticket.ticket_code} is confirmed",
            {"ticket_id": str(ticket.id), "reference": attempt.reference},
        )

    async def _reconcile_legacy(
        self,
        db: AsyncSession,
        reference: str,
        gateway_payload: Optional[Union[GatewayVerification, Dict[str, Any]]],
        now: datetime,
    ) -> ReconcileResult:
        """Tickets created before the attempt ledger carry only a reference"""
        ticket = (
            await db.execute(
                select(Ticket)
                .where(Ticket.payment_reference == reference)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if not ticket:
            raise NotFoundError("Payment", reference)

        if ticket.status in (TicketStatus.PAID, TicketStatus.USED):
            PAYMENT_RECONCILIATIONS.labels(kind="legacy", outcome="already_verified").inc()
            return ReconcileResult(ticket=ticket, status="success", already_verified=True)

        verification = await self._verification_for(reference, gateway_payload)
        expected = ticket.total_price_naira * 100
        if not verification.is_success:
            raise PaymentNotCompletedError(verification.status or "unknown")
        if verification.amount_minor_units < expected:
            raise AmountMismatchError(
                "Paid amount is less than the amount due",
                details={"expected_minor_units": expected, "paid_minor_units": verification.amount_minor_units}
            )

        async with db_manager.transaction(db):
            result = await db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id, Ticket.status == TicketStatus.PENDING)
                .values(status=TicketStatus.PAID, paid_at=now, verified_at=now)
            )
            await db.refresh(ticket)

        if result.rowcount != 1:
            if ticket.status in (TicketStatus.PAID, TicketStatus.USED):
                return ReconcileResult(ticket=ticket, status="success", already_verified=True)
            raise TicketNotEligibleError(
                f"Ticket is {ticket.status.value} and cannot be fulfilled",
                details={"ticket_id": str(ticket.id), "status": ticket.status.value}
            )

        PAYMENT_RECONCILIATIONS.labels(kind="legacy", outcome="fulfilled").inc()
        logger.info("Legacy ticket payment reconciled", extra=log_context(reference=reference, ticket_id=ticket.id))
        return ReconcileResult(ticket=ticket, status="success", already_verified=False)

    async def verify_payment(
        self,
        db: AsyncSession,
        reference: str,
        actor_user_id: UUID,
    ) -> ReconcileResult:
        """Client-initiated verify; only the paying user may call it"""
        attempt = await self._load_attempt(db, reference)
        if attempt is not None:
            if attempt.buyer_user_id != actor_user_id:
                raise AuthorizationError("Only the buyer can verify this payment")
        else:
            ticket = (
                await db.execute(select(Ticket).where(Ticket.payment_reference == reference))
            ).scalar_one_or_none()
            if ticket is None:
                raise NotFoundError("Payment", reference)
            if ticket.buyer_user_id != actor_user_id:
                raise AuthorizationError("Only the buyer can verify this payment")

        return await self.reconcile(db, reference)
