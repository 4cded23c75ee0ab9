"""
Inbound payment gateway webhooks
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vera.core.database import db_manager
from vera.core.exceptions import InvalidSignatureError, ValidationError, VeraException
from vera.core.logging import log_context
from vera.core.metrics import WEBHOOK_EVENTS
from vera.models.payment import PaymentAttempt, PaymentEventLog, PaymentEventStatus
from vera.services.paystack import PaymentGateway
from vera.services.reconciler import PaymentReconciler, ReconcileResult

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


@dataclass
class WebhookOutcome:
    status: PaymentEventStatus
    event_type: str
    reference: str
    message: str = ""
    result: Optional[ReconcileResult] = None


class WebhookHandler:
    """
    Verifies, records and dispatches gateway events.

    Business rejections are recorded and acknowledged so the gateway stops
    retrying; infrastructure errors propagate so it redelivers.
    """

    def __init__(self, gateway: PaymentGateway, reconciler: PaymentReconciler, provider: str = "paystack"):
        self.gateway = gateway
        self.reconciler = reconciler
        self.provider = provider

    async def _record(
        self,
        db: AsyncSession,
        status: PaymentEventStatus,
        event_type: str = "",
        reference: str = "",
        message: str = "",
        payload: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
        best_effort: bool = False,
    ):
        """
        Write the audit row.

        A failed write propagates so the gateway redelivers the event, unless
        ``best_effort`` is set for rows that only annotate a rejection.
        """
        WEBHOOK_EVENTS.labels(status=status.value).inc()
        try:
            attempt_id: Optional[UUID] = None
            if reference:
                attempt_id = await db.scalar(
                    select(PaymentAttempt.id).where(PaymentAttempt.reference == reference)
                )
            async with db_manager.transaction(db):
                db.add(PaymentEventLog(
                    provider=self.provider,
                    event_type=event_type[:80],
                    reference=reference[:120],
                    payment_attempt_id=attempt_id,
                    status=status,
                    message=message[:2000],
                    payload=payload,
                    meta=meta,
                ))
        except Exception:
            logger.exception(
                "Could not record payment event",
                extra=log_context(event_type=event_type, reference=reference, status=status.value)
            )
            await db.rollback()
            if not best_effort:
                raise

    async def handle_gateway_event(
        self,
        db: AsyncSession,
        raw_body: bytes,
        signature: Optional[str],
    ) -> WebhookOutcome:
        if not self.gateway.validate_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            await self._record(
                db,
                PaymentEventStatus.INVALID_SIGNATURE,
                message="Invalid webhook signature",
                meta={"body_bytes": len(raw_body), "has_signature": bool(signature)},
                best_effort=True,
            )
            raise InvalidSignatureError()

        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            await self._record(
                db,
                PaymentEventStatus.FAILED,
                message="Webhook body is not a JSON object",
                meta={"body_bytes": len(raw_body)},
            )
            raise ValidationError("Invalid webhook payload")

        event_type = str(payload.get("event") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = str(data.get("reference") or "")

        if event_type != CHARGE_SUCCESS:
            message = f"Event type '{event_type}' is not handled"
            await self._record(db, PaymentEventStatus.IGNORED, event_type, reference, message, payload)
            logger.info(message, extra=log_context(reference=reference))
            return WebhookOutcome(PaymentEventStatus.IGNORED, event_type, reference, message)

        if not reference:
            message = "Event carries no transaction reference"
            await self._record(db, PaymentEventStatus.FAILED, event_type, reference, message, payload)
            return WebhookOutcome(PaymentEventStatus.FAILED, event_type, reference, message)

        try:
            result = await self.reconciler.reconcile(db, reference, data)
        except VeraException as e:
            await db.rollback()
            await self._record(
                db,
                PaymentEventStatus.FAILED,
                event_type,
                reference,
                e.message,
                payload,
                meta={"code": e.code, **e.details},
            )
            logger.warning(
                f"Webhook reconciliation rejected: {e.message}",
                extra=log_context(reference=reference, code=e.code)
            )
            return WebhookOutcome(PaymentEventStatus.FAILED, event_type, reference, e.message)
        except Exception as e:
            await db.rollback()
            await self._record(
                db, PaymentEventStatus.FAILED, event_type, reference, str(e), payload, best_effort=True
            )
            raise

        message = "Already verified" if result.already_verified else "Payment fulfilled"
        await self._record(
            db,
            PaymentEventStatus.PROCESSED,
            event_type,
            reference,
            message,
            payload,
            meta={"already_verified": result.already_verified},
        )
        return WebhookOutcome(PaymentEventStatus.PROCESSED, event_type, reference, message, result)
