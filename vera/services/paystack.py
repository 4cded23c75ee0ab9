"""
Paystack payment gateway client
Initializes and verifies transactions and validates webhook signatures
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from vera.config import settings
from vera.core.exceptions import ExternalServiceError
from vera.core.logging import log_context
from vera.core.metrics import GATEWAY_LATENCY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayCheckout:
    reference: str
    authorization_url: str
    access_code: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayVerification:
    reference: str
    status: str
    amount_minor_units: int
    currency: str
    gateway_response: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GatewayVerification":
        """Build from a transaction object (verify response or webhook ``data``)"""
        try:
            amount = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        return cls(
            reference=str(data.get("reference") or ""),
            status=str(data.get("status") or "").lower(),
            amount_minor_units=amount,
            currency=str(data.get("currency") or "").upper(),
            gateway_response=str(data.get("gateway_response") or ""),
            raw=dict(data),
        )


class PaymentGateway(Protocol):
    """What the ticketing core needs from a payment provider"""

    @property
    def is_configured(self) -> bool: ...

    async def initialize_transaction(
        self,
        email: str,
        amount_minor_units: int,
        reference: str,
        callback_url: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayCheckout: ...

    async def verify_transaction(self, reference: str) -> GatewayVerification: ...

    def validate_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool: ...


class PaystackClient:
    """Paystack REST client on top of httpx"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = settings.PAYSTACK_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or settings.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYSTACK_TIMEOUT_SECONDS
        self.currency = currency or settings.PAYMENT_CURRENCY
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.is_configured:
            raise ExternalServiceError("paystack", "Payment gateway is not configured")

        started = time.perf_counter()
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                f"Paystack {operation} request failed: {e}",
                extra=log_context(operation=operation, path=path)
            )
            raise ExternalServiceError(
                "paystack", "Payment gateway is unreachable", status_code=502
            ) from e
        finally:
            GATEWAY_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.error(
                f"Paystack {operation} rejected: {message}",
                extra=log_context(operation=operation, status_code=response.status_code)
            )
            raise ExternalServiceError(
                "paystack",
                f"Payment gateway error: {message}",
                status_code=502,
                details={"gateway_status": response.status_code},
            )

        return body.get("data") or {}

    async def initialize_transaction(
        self,
        email: str,
        amount_minor_units: int,
        reference: str,
        callback_url: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayCheckout:
        """Create a hosted checkout for ``amount_minor_units`` kobo"""
        payload: Dict[str, Any] = {
            "email": email,
            "amount": int(amount_minor_units),
            "reference": reference,
            "currency": self.currency,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = await self._request("initialize", "POST", "/transaction/initialize", json=payload)
        checkout = GatewayCheckout(
            reference=str(data.get("reference") or reference),
            authorization_url=str(data.get("authorization_url") or ""),
            access_code=str(data.get("access_code") or ""),
            raw=data,
        )
        if not checkout.authorization_url:
            raise ExternalServiceError(
                "paystack", "Payment gateway returned no authorization url", status_code=502
            )

        logger.info("Paystack transaction initialized", extra=log_context(reference=reference))
        return checkout

    async def verify_transaction(self, reference: str) -> GatewayVerification:
        data = await self._request("verify", "GET", f"/transaction/verify/{reference}")
        return GatewayVerification.from_payload(data)

    def validate_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw body with the secret key, hex encoded"""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())


paystack_client = PaystackClient()
