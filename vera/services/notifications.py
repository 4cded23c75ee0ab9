"""
Notification sink used for ticket and resale events.
Delivery (push, email) belongs to the notifications service.
"""

import logging
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from vera.core.logging import log_context

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(
        self,
        user_id: UUID,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class LoggingNotificationSink:
    """Default sink: records the notification in the application log"""

    async def notify(self, user_id, type, title, message, data=None):
        logger.info(
            f"Notification {type} for user {user_id}: {title}",
            extra=log_context(user_id=user_id, notification_type=type, message=message)
        )


async def notify_safely(
    sink: NotificationSink,
    user_id: Optional[UUID],
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Send a notification without letting a sink failure affect the caller
    """
    if user_id is None:
        return
    try:
        await sink.notify(user_id, type, title, message, data or {})
    except Exception as e:
        logger.warning(
            f"Notification delivery failed: {e}",
            extra=log_context(user_id=user_id, notification_type=type)
        )


notification_sink = LoggingNotificationSink()
