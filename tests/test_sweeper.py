"""
Tests for the background resale expiry sweeper
"""

import asyncio
import pytest
from datetime import timedelta

from vera.config import settings
from vera.models.ticket import BidStatus, ResaleStatus, Ticket, TicketResaleBid
from vera.services.sweeper import ResaleExpirySweeper


async def accepted_offer(session_factory, marketplace, event, ticket, seller, bidder, now):
    async with session_factory() as db:
        await marketplace.list_ticket(db, ticket.id, seller.id, 6000, allow_bids=True, now=now)
    async with session_factory() as db:
        bid = await marketplace.place_bid(db, ticket.id, bidder.id, 5000, now=now)
    async with session_factory() as db:
        await marketplace.accept_bid(db, ticket.id, bid.id, seller.id, now=now)
    return bid


@pytest.mark.asyncio
class TestResaleExpirySweeper:
    """Test batch expiry of lapsed offers"""

    async def test_run_once_expires_due_offers(
        self, session_factory, marketplace, make_event, issue_paid_ticket, alice, bob, carol, now, load, notifications
    ):
        event = await make_event()
        due = await issue_paid_ticket(event, alice)
        not_due = await issue_paid_ticket(event, alice)
        due_bid = await accepted_offer(session_factory, marketplace, event, due, alice, bob, now)
        later_bid = await accepted_offer(
            session_factory, marketplace, event, not_due, alice, carol, now + timedelta(hours=12)
        )

        sweeper = ResaleExpirySweeper(session_factory, marketplace, interval_seconds=60)
        sweep_at = now + timedelta(hours=settings.RESALE_DEFAULT_BID_WINDOW_HOURS, minutes=1)
        expired = await sweeper.run_once(sweep_at)

        assert expired == 1
        assert (await load(Ticket, due.id)).resale_status == ResaleStatus.LISTED
        assert (await load(TicketResaleBid, due_bid.id)).status == BidStatus.EXPIRED
        assert (await load(Ticket, not_due.id)).resale_status == ResaleStatus.OFFER_ACCEPTED
        assert (await load(TicketResaleBid, later_bid.id)).status == BidStatus.ACCEPTED
        assert "resale_offer_expired" in notifications.types_for(bob.id)

    async def test_second_run_is_noop(
        self, session_factory, marketplace, make_event, issue_paid_ticket, alice, bob, now
    ):
        event = await make_event()
        ticket = await issue_paid_ticket(event, alice)
        await accepted_offer(session_factory, marketplace, event, ticket, alice, bob, now)

        sweeper = ResaleExpirySweeper(session_factory, marketplace)
        sweep_at = now + timedelta(days=2)

        assert await sweeper.run_once(sweep_at) == 1
        assert await sweeper.run_once(sweep_at) == 0

    async def test_batch_size_limits_run(
        self, session_factory, marketplace, make_event, issue_paid_ticket, alice, bob, now
    ):
        event = await make_event()
        for _ in range(3):
            ticket = await issue_paid_ticket(event, alice)
            await accepted_offer(session_factory, marketplace, event, ticket, alice, bob, now)

        sweeper = ResaleExpirySweeper(session_factory, marketplace, batch_size=2)
        sweep_at = now + timedelta(days=2)

        assert await sweeper.run_once(sweep_at) == 2
        assert await sweeper.run_once(sweep_at) == 1

    async def test_run_in_progress_skips(self, session_factory, marketplace):
        sweeper = ResaleExpirySweeper(session_factory, marketplace)

        async with sweeper._lock:
            assert await sweeper.run_once() == 0

    async def test_overlapping_runs_expire_once(
        self, session_factory, marketplace, make_event, issue_paid_ticket, alice, bob, now
    ):
        event = await make_event()
        ticket = await issue_paid_ticket(event, alice)
        await accepted_offer(session_factory, marketplace, event, ticket, alice, bob, now)

        first = ResaleExpirySweeper(session_factory, marketplace)
        second = ResaleExpirySweeper(session_factory, marketplace)
        sweep_at = now + timedelta(days=2)

        results = await asyncio.gather(first.run_once(sweep_at), second.run_once(sweep_at))

        assert sum(results) == 1

    async def test_start_and_shutdown(self, session_factory, marketplace):
        sweeper = ResaleExpirySweeper(session_factory, marketplace, interval_seconds=3600)

        sweeper.start()
        try:
            assert sweeper.running is True
        finally:
            sweeper.shutdown()

        assert sweeper.running is False
