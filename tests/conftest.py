"""
Shared fixtures: a fresh SQLite file per test, real stores on top of it.
"""
import copy
import hashlib
import hmac
import json
import time
from datetime import datetime
from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient

from storecredit.core.config import Settings
from storecredit.core.database import build_engine, build_sessionmaker, init_models
from storecredit.models.order import Order, OrderStatus
from storecredit.server import create_app
from storecredit.services.credit_ledger import CreditLedger
from storecredit.services.ledger_store import LedgerStore, new_id
from storecredit.services.order_store import OrderStore
from storecredit.services.payment_gateway import StripeGateway
from storecredit.services.payment_reconciler import PaymentWebhookReconciler
from storecredit.services.reclamation import ReclamationJobs


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'storecredit_test.db'}"


@pytest.fixture
def settings(db_url, tmp_path):
    return Settings(
        database_url=db_url,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test_secret",
        session_retry_delay_seconds=0,
        store_retry_attempts=1,
        store_retry_backoff_seconds=0,
        jwt_secret="test-secret",
        admin_user_ids=frozenset({"admin-1"}),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
async def engine(db_url):
    engine = build_engine(db_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def ledger_store(sessionmaker):
    return LedgerStore(sessionmaker, retry_attempts=1, retry_backoff_seconds=0)


@pytest.fixture
def order_store(sessionmaker):
    return OrderStore(sessionmaker, retry_attempts=1, retry_backoff_seconds=0)


@pytest.fixture
def ledger(ledger_store):
    return CreditLedger(ledger_store)


@pytest.fixture
def reclamation(ledger, order_store):
    return ReclamationJobs(ledger, order_store)


async def grant(ledger: CreditLedger, user_id: str, amount) -> None:
    result = await ledger.add_credits(user_id, Decimal(str(amount)), "test grant")
    assert result.success, result.error


async def insert_order(sessionmaker, **fields) -> Order:
    values = dict(
        id=new_id(),
        user_id="user-1",
        order_status=OrderStatus.AWAITING_PAYMENT,
        financial_status="pending",
        total_price=Decimal("0"),
        subtotal_price=Decimal("0"),
        credits_applied=Decimal("0"),
        created_at=datetime.utcnow(),
    )
    values.update(fields)
    order = Order(**values)
    async with sessionmaker() as session:
        async with session.begin():
            session.add(order)
    return order


# ─── payment provider doubles ───

def checkout_session(
    session_id="cs_1",
    *,
    user_id="u1",
    total_cents=5000,
    subtotal_cents=4600,
    credits_applied=None,
    order_note=None,
    shipping_cents=800,
    shipping_name="UPS Ground",
    email="pat@example.com",
    intent="pi_1",
    items=None,
    cart=None,
):
    metadata = {"userId": user_id}
    if order_note:
        metadata["orderNote"] = order_note
    if credits_applied is not None:
        metadata["creditsApplied"] = str(credits_applied)
    if cart is not None:
        metadata["cartData"] = json.dumps(cart)
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": total_cents,
        "amount_subtotal": subtotal_cents,
        "currency": "usd",
        "payment_intent": intent,
        "metadata": metadata,
        "customer_details": {"email": email, "name": "Pat Doe", "phone": "555-0100"},
        "shipping_details": {
            "name": "Pat Q Doe",
            "address": {"line1": "1 Main St", "city": "Denver", "state": "CO", "postal_code": "80202", "country": "US"},
        },
        "shipping_cost": {"amount_total": shipping_cents, "shipping_rate": {"display_name": shipping_name}},
        "line_items": {"data": items if items is not None else [{"price": {"product": {"metadata": {}}}}]},
    }


def event(event_type, obj):
    return {"id": f"evt_{obj.get('id')}", "type": event_type, "data": {"object": obj}}


class FakeGateway:
    def __init__(self):
        self.sessions = {}
        self.calls = []

    def add(self, session):
        self.sessions[session["id"]] = session
        return session

    def verify_event(self, payload, signature):
        raise NotImplementedError

    async def retrieve_checkout_session(self, session_id):
        self.calls.append(session_id)
        return copy.deepcopy(self.sessions[session_id])


class RecordingNotifications:
    def __init__(self):
        self.paid = []
        self.failed = []
        self.alerts = []

    async def order_paid(self, order):
        self.paid.append(order.id)

    async def payment_failed(self, order):
        self.failed.append(order.id)

    async def critical_alert(self, alert):
        self.alerts.append(alert)


class RecordingDiscounts:
    def __init__(self):
        self.used = []

    async def record_usage(self, code, amount, order_id, user_id):
        self.used.append((code, amount, order_id, user_id))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def discounts():
    return RecordingDiscounts()


@pytest.fixture
def reconciler(ledger, order_store, gateway, notifications, discounts):
    return PaymentWebhookReconciler(
        ledger,
        order_store,
        gateway,
        notifications=notifications,
        discounts=discounts,
        session_retry_delay_seconds=0,
    )


# ─── HTTP app ───

class OfflineStripeGateway(StripeGateway):
    """Real signature checks, canned checkout sessions."""

    def __init__(self, secret_key, webhook_secret):
        super().__init__(secret_key, webhook_secret)
        self.sessions = {}

    def add(self, session):
        self.sessions[session["id"]] = session
        return session

    async def retrieve_checkout_session(self, session_id):
        return copy.deepcopy(self.sessions[session_id])


def stripe_signature(payload: str, secret: str, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def bearer(user_id: str, secret: str = "test-secret") -> dict:
    token = jwt.encode({"user_id": user_id}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api(settings, notifications):
    gateway = OfflineStripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)
    app = create_app(settings, gateway=gateway, notifications=notifications)
    with TestClient(app) as client:
        client.gateway = gateway
        yield client
