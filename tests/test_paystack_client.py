"""
Tests for the Paystack HTTP client
"""

import hashlib
import hmac
import json
import httpx
import pytest

from vera.core.exceptions import ExternalServiceError
from vera.services.paystack import GatewayVerification, PaystackClient

SECRET = "sk_test_client"


def make_client(handler, secret=SECRET) -> PaystackClient:
    return PaystackClient(
        secret_key=secret,
        base_url="https://api.paystack.test",
        currency="NGN",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
class TestPaystackClient:
    """Test initialize and verify calls"""

    async def test_initialize_transaction(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "vera_purchase_1",
                },
            })

        client = make_client(handler)
        try:
            checkout = await client.initialize_transaction(
                "buyer@example.com", 500000, "vera_purchase_1", callback_url="https://app/cb", metadata={"k": "v"}
            )
        finally:
            await client.close()

        assert checkout.authorization_url == "https://checkout.paystack.com/abc"
        assert checkout.access_code == "abc"
        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == f"Bearer {SECRET}"
        assert seen["body"] == {
            "email": "buyer@example.com",
            "amount": 500000,
            "reference": "vera_purchase_1",
            "currency": "NGN",
            "metadata": {"k": "v"},
            "callback_url": "https://app/cb",
        }

    async def test_verify_transaction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/transaction/verify/vera_purchase_2"
            return httpx.Response(200, json={
                "status": True,
                "data": {"reference": "vera_purchase_2", "status": "SUCCESS", "amount": 250000, "currency": "ngn"},
            })

        client = make_client(handler)
        try:
            verification = await client.verify_transaction("vera_purchase_2")
        finally:
            await client.close()

        assert verification.is_success is True
        assert verification.amount_minor_units == 250000
        assert verification.currency == "NGN"

    async def test_gateway_error_status(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Duplicate Transaction Reference"})

        client = make_client(handler)
        try:
            with pytest.raises(ExternalServiceError) as exc_info:
                await client.initialize_transaction("b@example.com", 100, "dup")
        finally:
            await client.close()

        assert exc_info.value.status_code == 502
        assert "Duplicate Transaction Reference" in exc_info.value.message
        assert exc_info.value.details["gateway_status"] == 400

    async def test_false_status_in_ok_response(self):
        def handler(request):
            return httpx.Response(200, json={"status": False, "message": "Invalid key"})

        client = make_client(handler)
        try:
            with pytest.raises(ExternalServiceError):
                await client.verify_transaction("ref")
        finally:
            await client.close()

    async def test_missing_authorization_url(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"reference": "r"}})

        client = make_client(handler)
        try:
            with pytest.raises(ExternalServiceError):
                await client.initialize_transaction("b@example.com", 100, "r")
        finally:
            await client.close()

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        try:
            with pytest.raises(ExternalServiceError) as exc_info:
                await client.verify_transaction("ref")
        finally:
            await client.close()

        assert exc_info.value.status_code == 502

    async def test_unconfigured_client(self):
        client = make_client(lambda request: httpx.Response(200), secret="")

        assert client.is_configured is False
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.verify_transaction("ref")
        assert exc_info.value.status_code == 503


@pytest.mark.unit
class TestWebhookSignature:
    """Test HMAC-SHA512 validation"""

    def test_valid_signature(self):
        client = PaystackClient(secret_key=SECRET)
        body = b'{"event":"charge.success"}'
        signature = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

        assert client.validate_webhook_signature(body, signature) is True
        assert client.validate_webhook_signature(body, signature.upper()) is True

    def test_invalid_signature(self):
        client = PaystackClient(secret_key=SECRET)
        body = b'{"event":"charge.success"}'
        signature = hmac.new(b"other", body, hashlib.sha512).hexdigest()

        assert client.validate_webhook_signature(body, signature) is False
        assert client.validate_webhook_signature(body, None) is False
        assert client.validate_webhook_signature(body + b" ", hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()) is False

    def test_unconfigured_rejects_everything(self):
        client = PaystackClient(secret_key="")
        assert client.validate_webhook_signature(b"{}", "anything") is False


@pytest.mark.unit
class TestGatewayVerification:
    """Test payload normalization"""

    def test_from_payload_defaults(self):
        verification = GatewayVerification.from_payload({"reference": "r", "amount": "oops"})

        assert verification.amount_minor_units == 0
        assert verification.status == ""
        assert verification.is_success is False
