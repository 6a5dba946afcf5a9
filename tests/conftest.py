"""Shared test fixtures for the clinic booking API.

Uses the application's own engine pointed at an in-memory SQLite database so
services that open their own sessions (sweeper, notifier) see the same data.
"""

import hashlib
import hmac
import itertools
import json
import os
import time as _time
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from types import SimpleNamespace

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["SENDGRID_API_KEY"] = ""
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "platform_rzp_whsec"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_platform"

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.core.database import Base, async_session, engine
from app.core.deps import get_auditor, get_gateways, get_notifier
from app.main import app
from app.models.appointment import Appointment
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.clinic import Clinic, Doctor
from app.models.notification import ClinicNotification  # noqa: F401
from app.models.payment import Payment  # noqa: F401
from app.models.payment_gateway import ClinicGateway, Provider
from app.models.slot import Slot, SlotKind, SlotPaymentMode
from app.models.subscription_plan import Plan, Subscription, SubscriptionStatus
from app.models.user import User
from app.services.auth import create_access_token
from app.services.gateways import GatewayRegistry

T0 = datetime(2026, 10, 16, 9, 0, 0)
SLOT_DAY = date(2026, 10, 20)

RZP_KEY = "rzp_test_key"
RZP_SECRET = "rzp_test_secret"
RZP_WEBHOOK_SECRET = "rzp_clinic_whsec"
STRIPE_SECRET = "sk_test_clinic"
STRIPE_WEBHOOK_SECRET = "whsec_clinic"


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    """Direct DB session for test setup/assertions."""
    async with async_session() as session:
        yield session


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms)
        return self.now

    def at(self, ms_after_t0: int) -> datetime:
        self.now = T0 + timedelta(milliseconds=ms_after_t0)
        return self.now


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock(T0)
    monkeypatch.setattr("app.utils.clock.utcnow", frozen)
    return frozen


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, event, payload):
        self.sent.append((event, payload))

    def events(self):
        return [event for event, _ in self.sent]


class RecordingAuditor:
    def __init__(self):
        self.records = []

    def record(self, action, actor, entity, details=None):
        self.records.append((action, actor, entity, details or {}))

    def actions(self):
        return [r[0] for r in self.records]


class RazorpayAPI:
    """Stands in for api.razorpay.com via httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.orders = {}
        self.fail = False
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(502, json={"error": {"description": "gateway down"}})
        if request.method == "GET":
            order = self.orders.get(request.url.path.rsplit("/", 1)[-1])
            if order is None:
                return httpx.Response(404, json={"error": {"description": "The id provided does not exist"}})
            return httpx.Response(200, json=order)
        body = json.loads(request.content)
        order = {
            "id": f"order_{next(self._ids)}",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "notes": body.get("notes") or {},
            "status": "created",
        }
        self.orders[order["id"]] = order
        return httpx.Response(200, json=order)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auditor():
    return RecordingAuditor()


@pytest.fixture
def razorpay_api():
    return RazorpayAPI()


@pytest.fixture
def gateways(razorpay_api):
    return GatewayRegistry(httpx.AsyncClient(transport=httpx.MockTransport(razorpay_api.handler)))


@pytest_asyncio.fixture
async def client(notifier, auditor, gateways):
    """Async HTTP test client with recording collaborators."""
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_auditor] = lambda: auditor
    app.dependency_overrides[get_gateways] = lambda: gateways
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


async def seed_clinic(db):
    """A clinic on a plan with online payments, both gateways, three patients and a set of slots."""
    clinic = Clinic(name="Sunrise Clinic", email="admin@sunrise.test")
    db.add(clinic)
    await db.flush()

    doctor = Doctor(clinic_id=clinic.id, name="Dr. Rao", email="rao@sunrise.test")
    plan = Plan(name="Pro", slug="pro", price_monthly=Decimal("999"), allow_online_payments=True)
    db.add_all([doctor, plan])
    await db.flush()

    db.add(Subscription(clinic_id=clinic.id, plan_id=plan.id, status=SubscriptionStatus.ACTIVE, start_date=T0 - timedelta(days=30)))
    db.add(ClinicGateway(
        clinic_id=clinic.id, name=Provider.RAZORPAY.value,
        api_key=RZP_KEY, secret=RZP_SECRET, webhook_secret=RZP_WEBHOOK_SECRET,
    ))
    db.add(ClinicGateway(
        clinic_id=clinic.id, name=Provider.STRIPE.value,
        api_key="pk_test_clinic", secret=STRIPE_SECRET, webhook_secret=STRIPE_WEBHOOK_SECRET,
    ))

    def slot(hour, mode, price, kind=SlotKind.APPOINTMENT):
        return Slot(
            clinic_id=clinic.id, doctor_id=doctor.id, date=SLOT_DAY, time=time(hour, 0),
            payment_mode=mode, price=Decimal(price), kind=kind,
        )

    slots = SimpleNamespace(
        online=slot(10, SlotPaymentMode.ONLINE, "500"),
        online_pricier=slot(11, SlotPaymentMode.ONLINE, "800"),
        online_cheaper=slot(12, SlotPaymentMode.ONLINE, "300"),
        offline=slot(14, SlotPaymentMode.OFFLINE, "400"),
        free=slot(15, SlotPaymentMode.FREE, "0"),
        lunch=slot(13, SlotPaymentMode.FREE, "0", kind=SlotKind.BREAK),
    )
    db.add_all(vars(slots).values())

    user_a = User(name="Asha", email="asha@example.com")
    user_b = User(name="Bilal", email="bilal@example.com")
    user_c = User(name="Chen", email="chen@example.com")
    db.add_all([user_a, user_b, user_c])
    await db.commit()

    return SimpleNamespace(
        clinic=clinic, doctor=doctor, plan=plan, slots=slots,
        user_a=user_a, user_b=user_b, user_c=user_c,
    )


@pytest_asyncio.fixture
async def clinic(db):
    return await seed_clinic(db)


async def get_appointment(appointment_id) -> Appointment:
    from uuid import UUID
    async with async_session() as session:
        return await session.get(Appointment, UUID(str(appointment_id)))


async def get_slot(slot_id) -> Slot:
    async with async_session() as session:
        return await session.get(Slot, slot_id)


async def count_rows(model, *criteria) -> int:
    from sqlalchemy import func, select
    async with async_session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()


def razorpay_proof(order_id: str, payment_id: str, secret: str = RZP_SECRET) -> dict:
    signature = hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": signature,
    }


def razorpay_webhook(order_id: str, payment_id: str, appointment_ref: str = "", secret: str = RZP_WEBHOOK_SECRET, event: str = "payment.captured"):
    body = json.dumps({
        "event": event,
        "payload": {
            "payment": {"entity": {
                "id": payment_id,
                "order_id": order_id,
                "amount": 50000,
                "status": "captured",
                "notes": {"appointment_ref": appointment_ref},
            }},
        },
    }).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}


def stripe_webhook(session_id: str, payment_intent: str, appointment_ref: str = "", secret: str = STRIPE_WEBHOOK_SECRET, payment_status: str = "paid"):
    body = json.dumps({
        "id": "evt_test_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "payment_intent": payment_intent,
            "amount_total": 50000,
            "metadata": {"appointment_ref": appointment_ref},
        }},
    })
    timestamp = int(_time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body.encode(), {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}
