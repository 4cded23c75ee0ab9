"""
Background release of lapsed accepted resale offers
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from vera.config import settings
from vera.core.logging import log_context
from vera.models.base import utc_now
from vera.models.ticket import ResaleStatus, Ticket
from vera.services.resale import ResaleMarketplace

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "resale_expiry_sweep"


class ResaleExpirySweeper:
    """
    Periodically expires accepted offers whose payment window has passed.

    Owned by the application lifespan. A run already in progress makes the
    next tick a no-op.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        marketplace: ResaleMarketplace,
        interval_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.marketplace = marketplace
        self.interval_seconds = interval_seconds or settings.RESALE_SWEEP_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.RESALE_SWEEP_BATCH_SIZE
        self._lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Expire one batch of due offers and return how many were released"""
        if self._lock.locked():
            logger.debug("Resale sweep already in progress, skipping")
            return 0

        async with self._lock:
            now = now or utc_now()
            async with self.session_factory() as db:
                ticket_ids = (
                    await db.scalars(
                        select(Ticket.id)
                        .where(
                            Ticket.resale_status == ResaleStatus.OFFER_ACCEPTED,
                            Ticket.accepted_bid_expires_at <= now,
                        )
                        .order_by(Ticket.accepted_bid_expires_at)
                        .limit(self.batch_size)
                    )
                ).all()

            expired = 0
            for ticket_id in ticket_ids:
                try:
                    async with self.session_factory() as db:
                        if await self.marketplace.expire_offer(db, ticket_id, now, source="sweeper"):
                            expired += 1
                except Exception:
                    logger.exception(
                        "Failed to expire resale offer",
                        extra=log_context(ticket_id=ticket_id)
                    )

            if ticket_ids:
                logger.info(
                    "Resale sweep finished",
                    extra=log_context(due=len(ticket_ids), expired=expired)
                )
            return expired

    def start(self):
        if self.running:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self.interval_seconds,
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Resale expiry sweeper started (every {self.interval_seconds}s)")

    def shutdown(self):
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Resale expiry sweeper stopped")
