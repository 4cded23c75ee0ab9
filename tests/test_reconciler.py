"""
Tests for payment reconciliation: idempotency, amount checks and failures
"""

import asyncio
import pytest
from sqlalchemy import select

from vera.core.exceptions import (
    AmountMismatchError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentNotCompletedError,
    TicketNotEligibleError,
)
from vera.models.payment import FulfillmentStatus, PaymentAttempt, PaymentAttemptStatus, PaymentKind
from vera.models.ticket import Ticket, TicketStatus


async def open_checkout(session_factory, ticket_service, event, buyer, quantity=1):
    async with session_factory() as db:
        purchase = await ticket_service.begin_purchase_checkout(db, event.id, buyer.id, quantity=quantity)
    return purchase.ticket, purchase.attempt


@pytest.mark.asyncio
class TestReconcilePurchase:
    """Test purchase fulfillment"""

    async def test_success_marks_ticket_paid(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load, notifications
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference)

        async with session_factory() as db:
            result = await reconciler.reconcile(db, attempt.reference)

        assert result.already_verified is False
        assert result.status == "success"
        assert result.ticket.id == ticket.id
        assert result.ticket.status == TicketStatus.PAID

        stored = await load(PaymentAttempt, attempt.id)
        assert stored.status == PaymentAttemptStatus.SUCCESS
        assert stored.fulfillment_status == FulfillmentStatus.DONE
        assert stored.fulfillment_ticket_id == ticket.id
        assert stored.fulfilled_at is not None
        assert stored.verify_payload["status"] == "success"
        assert "ticket_payment_confirmed" in notifications.types_for(alice.id)

    async def test_second_call_is_already_verified(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference)

        async with session_factory() as db:
            await reconciler.reconcile(db, attempt.reference)
        async with session_factory() as db:
            again = await reconciler.reconcile(db, attempt.reference)

        assert again.already_verified is True
        assert again.ticket.id == ticket.id
        # a fulfilled attempt never goes back to the gateway
        assert gateway.verify_calls == [attempt.reference]

    async def test_overpayment_is_accepted(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, amount=attempt.amount_minor_units + 100)

        async with session_factory() as db:
            result = await reconciler.reconcile(db, attempt.reference)

        assert result.ticket.status == TicketStatus.PAID

    async def test_underpayment_rejected(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, amount=attempt.amount_minor_units - 1)

        async with session_factory() as db:
            with pytest.raises(AmountMismatchError) as exc_info:
                await reconciler.reconcile(db, attempt.reference)

        assert exc_info.value.details["expected_minor_units"] == attempt.amount_minor_units
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PENDING
        stored = await load(PaymentAttempt, attempt.id)
        assert stored.status == PaymentAttemptStatus.FAILED
        assert stored.fulfillment_status == FulfillmentStatus.FAILED

    async def test_currency_mismatch_rejected(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, currency="USD")

        async with session_factory() as db:
            with pytest.raises(AmountMismatchError):
                await reconciler.reconcile(db, attempt.reference)

    async def test_missing_currency_rejected(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, currency="")

        async with session_factory() as db:
            with pytest.raises(AmountMismatchError) as exc_info:
                await reconciler.reconcile(db, attempt.reference)

        assert exc_info.value.details["paid_currency"] == ""
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PENDING
        assert (await load(PaymentAttempt, attempt.id)).fulfillment_status == FulfillmentStatus.FAILED

    async def test_unexpected_error_marks_fulfillment_failed(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load, monkeypatch
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference)

        async def broken_handler(db, locked, now):
            raise RuntimeError("ledger offline")

        monkeypatch.setitem(reconciler._handlers, PaymentKind.TICKET_PURCHASE, broken_handler)

        async with session_factory() as db:
            with pytest.raises(RuntimeError):
                await reconciler.reconcile(db, attempt.reference)

        stored = await load(PaymentAttempt, attempt.id)
        assert stored.fulfillment_status == FulfillmentStatus.FAILED
        assert stored.failure_reason == "ledger offline"
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PENDING

        monkeypatch.undo()
        async with session_factory() as db:
            result = await reconciler.reconcile(db, attempt.reference)
        assert result.ticket.status == TicketStatus.PAID

    async def test_unsuccessful_payment(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, status="abandoned")

        async with session_factory() as db:
            with pytest.raises(PaymentNotCompletedError) as exc_info:
                await reconciler.reconcile(db, attempt.reference)

        assert exc_info.value.status_code == 402
        assert exc_info.value.details["payment_status"] == "abandoned"
        assert (await load(PaymentAttempt, attempt.id)).status == PaymentAttemptStatus.ABANDONED
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PENDING

    async def test_failed_payment_can_succeed_later(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference, status="failed")

        async with session_factory() as db:
            with pytest.raises(PaymentNotCompletedError):
                await reconciler.reconcile(db, attempt.reference)

        gateway.settle(attempt.reference, status="success")
        async with session_factory() as db:
            result = await reconciler.reconcile(db, attempt.reference)

        assert result.ticket.status == TicketStatus.PAID
        assert result.status == "success"

    async def test_reference_mismatch(
        self, session_factory, ticket_service, reconciler, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        payload = {"reference": "someone_else", "status": "success", "amount": attempt.amount_minor_units}

        async with session_factory() as db:
            with pytest.raises(ConflictError) as exc_info:
                await reconciler.reconcile(db, attempt.reference, payload)

        assert exc_info.value.code == "REFERENCE_MISMATCH"

    async def test_cancelled_ticket_fails_fulfillment(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        async with session_factory() as db:
            row = await db.get(Ticket, ticket.id)
            row.status = TicketStatus.CANCELLED
            await db.commit()
        gateway.settle(attempt.reference)

        async with session_factory() as db:
            with pytest.raises(TicketNotEligibleError):
                await reconciler.reconcile(db, attempt.reference)

        stored = await load(PaymentAttempt, attempt.id)
        assert stored.fulfillment_status == FulfillmentStatus.FAILED
        assert "cancelled" in stored.failure_reason
        assert (await load(Ticket, ticket.id)).status == TicketStatus.CANCELLED

    async def test_unknown_reference(self, session_factory, reconciler):
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await reconciler.reconcile(db, "vera_purchase_missing")


@pytest.mark.concurrency
@pytest.mark.asyncio
class TestConcurrentReconciliation:
    """Test exactly-once fulfillment under concurrent callers"""

    async def test_parallel_reconciles_fulfill_once(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, notifications
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference)

        async def reconcile_once():
            async with session_factory() as db:
                return await reconciler.reconcile(db, attempt.reference)

        results = await asyncio.gather(*[reconcile_once() for _ in range(6)])

        fresh = [r for r in results if not r.already_verified]
        assert len(fresh) == 1
        assert all(r.ticket.id == ticket.id for r in results)
        assert notifications.types_for(alice.id).count("ticket_payment_confirmed") == 1

        async with session_factory() as db:
            attempts = (await db.execute(select(PaymentAttempt))).scalars().all()
        assert len(attempts) == 1
        assert attempts[0].fulfillment_status == FulfillmentStatus.DONE

    async def test_verify_and_webhook_split_resale_once(
        self, session_factory, marketplace, reconciler, webhook_handler, gateway, make_event,
        issue_paid_ticket, alice, bob, load, notifications
    ):
        event = await make_event()
        source = await issue_paid_ticket(event, alice, quantity=3)
        async with session_factory() as db:
            await marketplace.list_ticket(db, source.id, alice.id, 5000, quantity=1)
        async with session_factory() as db:
            attempt = await marketplace.begin_resale_checkout(db, source.id, bob.id)
        body, signature = gateway.webhook(attempt.reference)

        async def verify_once():
            async with session_factory() as db:
                return await reconciler.reconcile(db, attempt.reference)

        async def deliver_once():
            async with session_factory() as db:
                outcome = await webhook_handler.handle_gateway_event(db, body, signature)
                return outcome.result

        callers = [verify_once() if i % 2 else deliver_once() for i in range(6)]
        results = await asyncio.gather(*callers)

        fresh = [r for r in results if not r.already_verified]
        assert len(fresh) == 1
        sibling_id = fresh[0].ticket.id
        assert sibling_id != source.id
        assert all(r.ticket.id == sibling_id for r in results)
        assert notifications.types_for(bob.id).count("resale_purchase_completed") == 1

        async with session_factory() as db:
            tickets = (await db.execute(select(Ticket).where(Ticket.event_id == event.id))).scalars().all()
        assert len(tickets) == 2
        assert (await load(Ticket, source.id)).quantity == 2
        sibling = await load(Ticket, sibling_id)
        assert sibling.buyer_user_id == bob.id
        assert sibling.quantity == 1
        assert (await load(PaymentAttempt, attempt.id)).fulfillment_ticket_id == sibling_id


@pytest.mark.asyncio
class TestVerifyPayment:
    """Test client initiated verification"""

    async def test_only_buyer_may_verify(
        self, session_factory, ticket_service, reconciler, gateway, make_event, alice, bob
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        gateway.settle(attempt.reference)

        async with session_factory() as db:
            with pytest.raises(AuthorizationError):
                await reconciler.verify_payment(db, attempt.reference, bob.id)
        async with session_factory() as db:
            result = await reconciler.verify_payment(db, attempt.reference, alice.id)

        assert result.ticket.status == TicketStatus.PAID

    async def test_legacy_reference_without_attempt(
        self, session_factory, reconciler, gateway, make_event, issue_paid_ticket, alice, load
    ):
        event = await make_event()
        ticket = await issue_paid_ticket(event, alice)
        async with session_factory() as db:
            row = await db.get(Ticket, ticket.id)
            row.status = TicketStatus.PENDING
            row.payment_reference = "legacy_ref_001"
            await db.commit()
        gateway.settle("legacy_ref_001", amount=ticket.total_price_naira * 100)

        async with session_factory() as db:
            result = await reconciler.verify_payment(db, "legacy_ref_001", alice.id)
        async with session_factory() as db:
            again = await reconciler.verify_payment(db, "legacy_ref_001", alice.id)

        assert result.already_verified is False
        assert again.already_verified is True
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PAID
