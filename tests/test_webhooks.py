"""
Tests for the Paystack webhook handler and its audit log
"""

import json
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from vera.core.exceptions import InvalidSignatureError, ValidationError
from vera.models.payment import FulfillmentStatus, PaymentAttempt, PaymentEventLog, PaymentEventStatus
from vera.models.ticket import Ticket, TicketStatus


async def event_logs(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(PaymentEventLog).order_by(PaymentEventLog.created_at))
        return list(result.scalars().all())


async def open_checkout(session_factory, ticket_service, event, buyer):
    async with session_factory() as db:
        purchase = await ticket_service.begin_purchase_checkout(db, event.id, buyer.id)
    return purchase.ticket, purchase.attempt


@pytest.mark.asyncio
class TestWebhookHandler:
    """Test signature checks, dispatch and logging"""

    async def test_invalid_signature_logged_and_rejected(self, session_factory, webhook_handler):
        body = json.dumps({"event": "charge.success", "data": {"reference": "x"}}).encode()

        async with session_factory() as db:
            with pytest.raises(InvalidSignatureError):
                await webhook_handler.handle_gateway_event(db, body, "bad-signature")

        logs = await event_logs(session_factory)
        assert len(logs) == 1
        assert logs[0].status == PaymentEventStatus.INVALID_SIGNATURE
        assert logs[0].meta["has_signature"] is True

    async def test_missing_signature_rejected(self, session_factory, webhook_handler):
        async with session_factory() as db:
            with pytest.raises(InvalidSignatureError):
                await webhook_handler.handle_gateway_event(db, b"{}", None)

    async def test_non_object_body(self, session_factory, webhook_handler, gateway):
        body = b"[1, 2, 3]"

        async with session_factory() as db:
            with pytest.raises(ValidationError):
                await webhook_handler.handle_gateway_event(db, body, gateway.sign(body))

        logs = await event_logs(session_factory)
        assert logs[0].status == PaymentEventStatus.FAILED

    async def test_other_event_types_ignored(self, session_factory, webhook_handler, gateway):
        body, signature = gateway.webhook("ref_1", event="transfer.success")

        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.IGNORED
        logs = await event_logs(session_factory)
        assert logs[0].status == PaymentEventStatus.IGNORED
        assert logs[0].event_type == "transfer.success"

    async def test_missing_reference(self, session_factory, webhook_handler, gateway):
        body = json.dumps({"event": "charge.success", "data": {}}).encode()

        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, gateway.sign(body))

        assert outcome.status == PaymentEventStatus.FAILED

    async def test_charge_success_fulfills_purchase(
        self, session_factory, webhook_handler, ticket_service, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        body, signature = gateway.webhook(attempt.reference)

        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.PROCESSED
        assert outcome.result.already_verified is False
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PAID
        # the webhook payload is used directly, the gateway is not asked again
        assert gateway.verify_calls == []

        logs = await event_logs(session_factory)
        assert logs[0].status == PaymentEventStatus.PROCESSED
        assert logs[0].payment_attempt_id == attempt.id
        assert logs[0].reference == attempt.reference

    async def test_redelivery_is_already_verified(
        self, session_factory, webhook_handler, ticket_service, gateway, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        body, signature = gateway.webhook(attempt.reference)

        async with session_factory() as db:
            await webhook_handler.handle_gateway_event(db, body, signature)
        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.PROCESSED
        assert outcome.result.already_verified is True
        assert len(await event_logs(session_factory)) == 2

    async def test_webhook_then_verify(
        self, session_factory, webhook_handler, reconciler, ticket_service, gateway, make_event, alice
    ):
        event = await make_event()
        _, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        body, signature = gateway.webhook(attempt.reference)

        async with session_factory() as db:
            await webhook_handler.handle_gateway_event(db, body, signature)
        async with session_factory() as db:
            result = await reconciler.verify_payment(db, attempt.reference, alice.id)

        assert result.already_verified is True
        assert result.ticket.status == TicketStatus.PAID

    async def test_business_rejection_is_acknowledged(
        self, session_factory, webhook_handler, ticket_service, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        body, signature = gateway.webhook(attempt.reference, amount=100)

        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.FAILED
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PENDING
        assert (await load(PaymentAttempt, attempt.id)).fulfillment_status == FulfillmentStatus.FAILED
        logs = await event_logs(session_factory)
        assert logs[0].meta["code"] == "AMOUNT_MISMATCH"

    async def test_unknown_reference_is_logged(self, session_factory, webhook_handler, gateway):
        body, signature = gateway.webhook("vera_purchase_unknown", amount=500000)

        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.FAILED
        logs = await event_logs(session_factory)
        assert logs[0].payment_attempt_id is None
        assert logs[0].meta["code"] == "NOT_FOUND"

    async def test_failed_audit_write_is_not_acknowledged(
        self, engine, session_factory, webhook_handler, ticket_service, gateway, make_event, alice, load
    ):
        event = await make_event()
        ticket, attempt = await open_checkout(session_factory, ticket_service, event, alice)
        body, signature = gateway.webhook(attempt.reference)
        async with engine.begin() as conn:
            await conn.run_sync(PaymentEventLog.__table__.drop)

        async with session_factory() as db:
            with pytest.raises(OperationalError):
                await webhook_handler.handle_gateway_event(db, body, signature)

        # fulfillment committed before the audit write; redelivery records it
        assert (await load(Ticket, ticket.id)).status == TicketStatus.PAID
        async with engine.begin() as conn:
            await conn.run_sync(PaymentEventLog.__table__.create)
        async with session_factory() as db:
            outcome = await webhook_handler.handle_gateway_event(db, body, signature)

        assert outcome.status == PaymentEventStatus.PROCESSED
        assert outcome.result.already_verified is True
        logs = await event_logs(session_factory)
        assert len(logs) == 1
        assert logs[0].payment_attempt_id == attempt.id

    async def test_invalid_signature_rejected_without_audit_table(
        self, engine, session_factory, webhook_handler
    ):
        body = json.dumps({"event": "charge.success", "data": {"reference": "x"}}).encode()
        async with engine.begin() as conn:
            await conn.run_sync(PaymentEventLog.__table__.drop)

        async with session_factory() as db:
            with pytest.raises(InvalidSignatureError):
                await webhook_handler.handle_gateway_event(db, body, "bad-signature")
