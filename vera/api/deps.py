"""
FastAPI dependency providers.
Tests override ``get_gateway`` and ``get_session``.
"""

from fastapi import Depends

from vera.core.database import get_session  # noqa: F401
from vera.services.paystack import PaymentGateway, paystack_client
from vera.services.reconciler import PaymentReconciler
from vera.services.resale import ResaleMarketplace
from vera.services.tickets import TicketService
from vera.services.webhooks import WebhookHandler


def get_gateway() -> PaymentGateway:
    return paystack_client


def get_ticket_service(gateway: PaymentGateway = Depends(get_gateway)) -> TicketService:
    return TicketService(gateway)


def get_marketplace(gateway: PaymentGateway = Depends(get_gateway)) -> ResaleMarketplace:
    return ResaleMarketplace(gateway)


def get_reconciler(
    gateway: PaymentGateway = Depends(get_gateway),
    marketplace: ResaleMarketplace = Depends(get_marketplace),
) -> PaymentReconciler:
    return PaymentReconciler(gateway, marketplace)


def get_webhook_handler(
    gateway: PaymentGateway = Depends(get_gateway),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> WebhookHandler:
    return WebhookHandler(gateway, reconciler)
