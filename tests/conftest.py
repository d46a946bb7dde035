import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from io import BytesIO

import pytest
from PIL import Image

from coloring_studio import create_app
from coloring_studio.billing import StripeGateway
from coloring_studio.ledger import MemoryAccountLedger
from coloring_studio.storage import LocalImageStore

WEBHOOK_SECRET = "whsec_test_secret"

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key",
    "STRIPE_SECRET_KEY": "sk_test_dummy",
    "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "GOOGLE_API_KEY": "test-google-key",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "LEDGER_BACKEND": "memory",
    "APP_ENV": "development",
    "APP_BASE_URL": "http://localhost:5000",
    "BASIC_PLAN_PRICE_ID": "price_basic",
    "PREMIUM_PLAN_PRICE_ID": "price_premium",
    "GENERATION_WORKERS": 8,
}


def png_bytes(size=(64, 48), color="white"):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type, obj, created=1735732800, event_id="evt_test"):
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def subscription_object(sub_id="sub_1", customer="cus_test_1", price_id="price_basic", status="active",
                        period_start=1735732800, period_end=1738411200):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": price_id}}]},
    }


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGenerator:
    def __init__(self, outputs=None, error=None, delay=0.0, barrier=None):
        self.outputs = outputs
        self.error = error
        self.delay = delay
        self.barrier = barrier
        self.calls = []

    def generate(self, prompt, images):
        self.calls.append((prompt, images))
        if self.barrier is not None:
            self.barrier.wait()
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.outputs is not None:
            return self.outputs
        return [png_bytes((512, 512))]


class FakePayments(StripeGateway):
    """Real webhook verification, canned customers and checkout sessions."""

    def __init__(self):
        super().__init__("sk_test_dummy", WEBHOOK_SECRET)
        self.customers = []
        self.sessions = []

    def create_customer(self, email, name=None):
        self.customers.append(email)
        return f"cus_test_{len(self.customers)}"

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, trial_days=7):
        self.sessions.append((customer_id, price_id, trial_days))
        session_id = f"cs_test_{len(self.sessions)}"
        return session_id, f"https://checkout.stripe.test/{session_id}"


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 1, 12, 0, 0))


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def store(tmp_path):
    return LocalImageStore(str(tmp_path / "images"), public_base_url="http://localhost:5000")


@pytest.fixture
def app(generator, payments, store, clock):
    return create_app(
        dict(TEST_CONFIG),
        ledger=MemoryAccountLedger(),
        generator=generator,
        payments=payments,
        store=store,
        clock=clock,
    )


@pytest.fixture
def services(app):
    return app.extensions["coloring_studio"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(params=["memory", "sql"])
def ledger(request, generator, payments, store, clock):
    if request.param == "memory":
        yield MemoryAccountLedger()
        return
    sql_app = create_app(
        dict(TEST_CONFIG, LEDGER_BACKEND="sql"),
        generator=generator,
        payments=payments,
        store=store,
        clock=clock,
    )
    with sql_app.app_context():
        yield sql_app.extensions["coloring_studio"].ledger


def signup(client, email="a@x.com", password="secret1", name=None):
    body = {"email": email, "password": password}
    if name:
        body["name"] = name
    return client.post("/api/auth/signup", json=body)


def post_event(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/api/stripe/webhook",
        data=payload,
        headers={"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
    )
