"""
Test configuration and fixtures
Every test gets its own SQLite database file and a fake Paystack gateway.
"""

import hashlib
import hmac
import json
import os
import tempfile
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from httpx import AsyncClient, ASGITransport

# Set test environment before the application reads its settings
_TEST_DIR = tempfile.mkdtemp(prefix="vera-tests-")
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["PAYSTACK_SECRET_KEY"] = ""
os.environ["PAYSTACK_DEV_BYPASS"] = "false"
os.environ["RESALE_SWEEPER_ENABLED"] = "false"
os.environ["LOG_FILE"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

from vera.core.database import Base, build_engine, build_session_factory
from vera.core.exceptions import ExternalServiceError
from vera.core.security import create_access_token
import vera.models  # noqa: F401
from vera.models.event import Event, EventStatus, RecurrenceType, TicketCategory
from vera.models.ticket import PaymentProvider, ResaleStatus, Ticket, TicketStatus
from vera.models.user import User
from vera.services.paystack import GatewayCheckout, GatewayVerification
from vera.services.reconciler import PaymentReconciler
from vera.services.resale import ResaleMarketplace
from vera.services.tickets import TicketService, build_barcode_value
from vera.services.webhooks import WebhookHandler

FAKE_SECRET = "sk_test_fake_secret"


class FakeGateway:
    """In-memory stand-in for Paystack"""

    def __init__(self, configured: bool = True, secret: str = FAKE_SECRET):
        self.configured = configured
        self.secret = secret
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.initialized: List[Dict[str, Any]] = []
        self.verify_calls: List[str] = []
        self.fail_initialize = False

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def initialize_transaction(
        self, email, amount_minor_units, reference, callback_url="", metadata=None
    ):
        if self.fail_initialize:
            raise ExternalServiceError("paystack", "Payment gateway is unreachable", status_code=502)
        self.initialized.append({
            "email": email,
            "amount": amount_minor_units,
            "reference": reference,
            "metadata": metadata or {},
        })
        self.transactions[reference] = {
            "reference": reference,
            "status": "ongoing",
            "amount": amount_minor_units,
            "currency": "NGN",
        }
        return GatewayCheckout(
            reference=reference,
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code=f"ac_{reference[-8:]}",
            raw={"reference": reference},
        )

    def settle(
        self,
        reference: str,
        status: str = "success",
        amount: Optional[int] = None,
        currency: str = "NGN",
    ) -> Dict[str, Any]:
        """Mark a transaction as settled and return its transaction object"""
        transaction = self.transactions.setdefault(reference, {"reference": reference, "amount": 0})
        transaction["status"] = status
        transaction["currency"] = currency
        if amount is not None:
            transaction["amount"] = amount
        return dict(transaction)

    async def verify_transaction(self, reference):
        self.verify_calls.append(reference)
        transaction = self.transactions.get(
            reference, {"reference": reference, "status": "failed", "amount": 0, "currency": "NGN"}
        )
        return GatewayVerification.from_payload(transaction)

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.secret.encode(), raw_body, hashlib.sha512).hexdigest()

    def validate_webhook_signature(self, raw_body, signature):
        if not signature:
            return False
        return hmac.compare_digest(self.sign(raw_body), signature)

    def webhook(self, reference: str, event: str = "charge.success", **settle_kwargs):
        """Signed webhook body for a settled transaction"""
        data = self.settle(reference, **settle_kwargs) if event == "charge.success" else {"reference": reference}
        body = json.dumps({"event": event, "data": data}).encode()
        return body, self.sign(body)


class RecordingSink:
    """Notification sink that keeps every notification"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, user_id, type, title, message, data=None):
        self.sent.append({"user_id": user_id, "type": type, "title": title, "data": data or {}})

    def types_for(self, user_id) -> List[str]:
        return [n["type"] for n in self.sent if n["user_id"] == user_id]


# Database fixtures

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh SQLite database per test"""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/vera_test.db")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                await session.rollback()


# Collaborators

@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def unconfigured_gateway():
    return FakeGateway(configured=False)


@pytest.fixture
def notifications():
    return RecordingSink()


@pytest.fixture
def ticket_service(gateway, notifications):
    return TicketService(gateway, notifications=notifications)


@pytest.fixture
def marketplace(gateway, notifications):
    return ResaleMarketplace(gateway, notifications=notifications)


@pytest.fixture
def reconciler(gateway, marketplace, notifications):
    return PaymentReconciler(gateway, marketplace, notifications=notifications)


@pytest.fixture
def webhook_handler(gateway, reconciler):
    return WebhookHandler(gateway, reconciler)


# Data fixtures

@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


async def _create_user(session_factory, name: str) -> User:
    async with session_factory() as session:
        user = User(email=f"{name}_{uuid4().hex[:8]}@example.com", full_name=name.title())
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def organizer(session_factory):
    return await _create_user(session_factory, "organizer")


@pytest_asyncio.fixture
async def alice(session_factory):
    return await _create_user(session_factory, "alice")


@pytest_asyncio.fixture
async def bob(session_factory):
    return await _create_user(session_factory, "bob")


@pytest_asyncio.fixture
async def carol(session_factory):
    return await _create_user(session_factory, "carol")


@pytest.fixture
def make_user(session_factory):
    async def factory(name: str = "user") -> User:
        return await _create_user(session_factory, name)
    return factory


@pytest.fixture
def make_event(session_factory, organizer, now):
    """Create an event; defaults to a published paid event three days out"""

    async def factory(**overrides) -> Event:
        starts_at = overrides.pop("starts_at", now + timedelta(days=3))
        fields = {
            "organizer_user_id": organizer.id,
            "name": f"Event {uuid4().hex[:6]}",
            "status": EventStatus.PUBLISHED,
            "starts_at": starts_at,
            "ends_at": starts_at + timedelta(hours=3),
            "recurrence_type": RecurrenceType.NONE,
            "recurrence_interval": 1,
            "is_paid": True,
            "ticket_price_naira": 5000,
            "currency": "NGN",
            "expected_tickets": 100,
            "dynamic_pricing_enabled": False,
            "resale_enabled": True,
        }
        fields.update(overrides)
        async with session_factory() as session:
            event = Event(**fields)
            session.add(event)
            await session.commit()
            return event

    return factory


@pytest.fixture
def make_category(session_factory):
    async def factory(event: Event, name: str = "VIP", price_naira: int = 20000, capacity: int = 10):
        async with session_factory() as session:
            category = TicketCategory(event_id=event.id, name=name, price_naira=price_naira, capacity=capacity)
            session.add(category)
            await session.commit()
            return category
    return factory


@pytest.fixture
def issue_paid_ticket(session_factory, now):
    """Insert a paid ticket directly, bypassing reservation"""

    async def factory(event: Event, owner: User, quantity: int = 1, unit_price_naira: Optional[int] = None):
        unit_price = event.ticket_price_naira if unit_price_naira is None else unit_price_naira
        code = f"VRA-TEST-{uuid4().hex[:10].upper()}"
        async with session_factory() as session:
            ticket = Ticket(
                event_id=event.id,
                organizer_user_id=event.organizer_user_id,
                buyer_user_id=owner.id,
                quantity=quantity,
                unit_price_naira=unit_price,
                total_price_naira=unit_price * quantity,
                currency="NGN",
                status=TicketStatus.PAID,
                payment_provider=PaymentProvider.PAYSTACK,
                attendee_name=owner.full_name,
                attendee_email=owner.email,
                ticket_code=code,
                barcode_value=build_barcode_value(code, event.id),
                paid_at=now,
                verified_at=now,
                resale_status=ResaleStatus.NONE,
            )
            session.add(ticket)
            await session.commit()
            return ticket

    return factory


@pytest.fixture
def load(session_factory):
    """Read a fresh copy of a row in its own session"""

    async def loader(model, id_):
        async with session_factory() as session:
            return await session.get(model, id_)

    return loader


# API fixtures

@pytest.fixture
def auth_headers():
    def build(user: User) -> Dict[str, str]:
        token = create_access_token(data={"sub": str(user.id), "email": user.email})
        return {"Authorization": f"Bearer {token}"}
    return build


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    """Test client with the database and gateway overridden"""
    from vera.main import app
    from vera.api.deps import get_gateway, get_session

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_gateway] = lambda: gateway

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
