"""
Ticket code allocation
"""

import logging
import secrets
import time
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vera.config import settings
from vera.core.exceptions import AllocationExhaustedError, ConflictError
from vera.core.logging import log_context
from vera.models.ticket import Ticket

logger = logging.getLogger(__name__)

BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
RANDOM_SUFFIX_LENGTH = 5


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def _is_code_collision(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "uq_tickets_ticket_code" in message or "tickets.ticket_code" in message


class TicketCodeAllocator:
    """
    Generates human-readable ticket codes and inserts tickets under them,
    retrying on the rare unique-constraint collision.
    """

    def __init__(
        self,
        prefix: Optional[str] = None,
        max_attempts: Optional[int] = None,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        self.prefix = prefix or settings.TICKET_CODE_PREFIX
        self.max_attempts = max_attempts or settings.TICKET_CODE_MAX_ATTEMPTS
        self._code_factory = code_factory

    def generate(self) -> str:
        if self._code_factory is not None:
            return self._code_factory()
        timestamp = to_base36(int(time.time() * 1000))
        suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
        return f"{self.prefix}-{timestamp}-{suffix}"

    async def insert_ticket(self, db: AsyncSession, build: Callable[[str], Ticket]) -> Ticket:
        """
        Build and flush a ticket under a freshly generated code.

        Must be called inside an open transaction. Each try runs in a
        savepoint so a collision only discards that one insert.
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self.generate()
            ticket = build(code)
            try:
                async with db.begin_nested():
                    db.add(ticket)
                    await db.flush()
                return ticket
            except IntegrityError as e:
                if not _is_code_collision(e):
                    raise ConflictError("Duplicate ticket data", details={"error": str(e.orig)}) from e
                logger.warning(
                    "Ticket code collision, retrying",
                    extra=log_context(ticket_code=code, attempt=attempt)
                )

        logger.error(
            "Ticket code allocation exhausted",
            extra=log_context(attempts=self.max_attempts, prefix=self.prefix)
        )
        raise AllocationExhaustedError(self.max_attempts)


ticket_code_allocator = TicketCodeAllocator()
