"""
Payment endpoints: client verify, gateway webhook and the attempt ledger
"""

from typing import Any, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from vera.api.deps import get_reconciler, get_session, get_webhook_handler
from vera.core.security import get_current_user_id
from vera.models.payment import PaymentAttemptStatus, PaymentKind
from vera.schemas.payment import (
    PaymentAttemptDetailResponse,
    PaymentAttemptResponse,
    VerifyPaymentResponse,
    WebhookAckResponse,
)
from vera.schemas.response import PaginatedResponse, PaginationMeta
from vera.schemas.ticket import TicketResponse
from vera.services.checkout import get_payment_attempt, list_payment_attempts
from vera.services.reconciler import PaymentReconciler
from vera.services.webhooks import WebhookHandler

router = APIRouter()


@router.post("/verify/{reference}", response_model=VerifyPaymentResponse)
async def verify_payment(
    reference: str,
    user_id: UUID = Depends(get_current_user_id),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Confirm a purchase or resale payment with the gateway.
    Repeated calls report ``already_verified``.
    """
    result = await reconciler.verify_payment(db, reference, user_id)
    return VerifyPaymentResponse(
        reference=reference,
        status=result.status,
        already_verified=result.already_verified,
        ticket=TicketResponse.model_validate(result.ticket) if result.ticket else None,
    )


@router.post("/webhook/paystack", response_model=WebhookAckResponse)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Paystack event receiver; the signature covers the raw body
    """
    raw_body = await request.body()
    outcome = await handler.handle_gateway_event(db, raw_body, x_paystack_signature)
    return WebhookAckResponse(status=outcome.status.value, message=outcome.message)


@router.get("/attempts", response_model=PaginatedResponse[PaymentAttemptResponse])
async def list_attempts(
    scope: str = Query("mine", pattern="^(mine|organizer)$"),
    event_id: Optional[UUID] = None,
    attempt_status: Optional[PaymentAttemptStatus] = Query(None, alias="status"),
    kind: Optional[PaymentKind] = None,
    search: Optional[str] = Query(None, max_length=120),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session)
) -> Any:
    """
    Payment attempt ledger: your own attempts, or those on events you organize
    """
    attempts, total = await list_payment_attempts(
        db,
        user_id,
        scope=scope,
        event_id=event_id,
        status=attempt_status,
        kind=kind,
        search=search,
        page=page,
        limit=limit,
    )
    return PaginatedResponse[PaymentAttemptResponse](
        data=[PaymentAttemptResponse.model_validate(a) for a in attempts],
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.get("/attempts/{attempt_id}", response_model=PaymentAttemptDetailResponse)
async def get_attempt(
    attempt_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session)
) -> Any:
    return await get_payment_attempt(db, attempt_id, user_id)
