import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import copy
import json
from datetime import datetime, timedelta, timezone

import pytest
import stripe

from subsync import create_app
from subsync.billing.errors import ProviderError
from subsync.extensions import db
from subsync.models import User
from subsync.services.tokens import issue_session_token


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        APP_BASE_URL="http://example.test",
        STRIPE_SECRET_KEY="sk_test_x",
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
        STRIPE_PRICE_PRO_MONTHLY="price_pro_monthly",
        STRIPE_PRICE_PRO_ANNUAL="price_pro_annual",
        SYNC_SERVICE_KEY=None,
        TRIAL_DAYS=30,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


def ts(days_from_now=0):
    return int((datetime.now(timezone.utc) + timedelta(days=days_from_now)).timestamp())


def stripe_subscription(sub_id="sub_test", *, status="active", customer="cus_123", price="price_pro_monthly", metadata=None, **extra):
    obj = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "metadata": metadata or {},
        "current_period_start": ts(0),
        "current_period_end": ts(30),
        "trial_start": None,
        "trial_end": None,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "items": {"data": [{"quantity": 1, "price": {"id": price, "product": "prod_pro"}}]},
    }
    obj.update(extra)
    return obj


class FakeProvider:
    """Stands in for StripeProvider; keeps provider state in dicts."""

    def __init__(self):
        self.subscriptions = {}
        self.customers = {}
        self.payment_intents = {}
        self.checkout_sessions = []
        self.calls = []
        self.fail_with = None
        self.portal_error = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def fetch_subscription(self, subscription_id, *, expand_invoice=False):
        self.calls.append(("fetch_subscription", subscription_id))
        self._maybe_fail()
        if subscription_id not in self.subscriptions:
            raise ProviderError("No such subscription", operation="subscriptions.retrieve", retryable=False, code="resource_missing")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def fetch_payment_intent(self, payment_intent_id):
        self.calls.append(("fetch_payment_intent", payment_intent_id))
        return copy.deepcopy(self.payment_intents[payment_intent_id])

    def retrieve_customer(self, customer_id):
        self.calls.append(("retrieve_customer", customer_id))
        self._maybe_fail()
        if customer_id not in self.customers:
            raise ProviderError("No such customer", operation="customers.retrieve", retryable=False, code="resource_missing")
        return dict(self.customers[customer_id])

    def create_customer(self, *, user_id, email=None):
        self.calls.append(("create_customer", user_id))
        self._maybe_fail()
        customer = {"id": f"cus_new_{len(self.customers) + 1}", "email": email, "metadata": {"user_id": user_id}}
        self.customers[customer["id"]] = customer
        return dict(customer)

    def create_portal_session(self, *, customer_id, return_url):
        self.calls.append(("create_portal_session", customer_id, return_url))
        if self.portal_error is not None:
            raise self.portal_error
        return {"id": "bps_1", "url": f"https://billing.stripe.test/session/{customer_id}"}

    def create_checkout_session(self, *, customer_id, price_id, user_id, success_url, cancel_url):
        self.calls.append(("create_checkout_session", customer_id, price_id))
        self._maybe_fail()
        session = {
            "id": f"cs_test_{len(self.checkout_sessions) + 1}",
            "url": f"https://checkout.stripe.test/pay/{customer_id}",
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id},
            "subscription_data": {"metadata": {"user_id": user_id}},
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        self.checkout_sessions.append(session)
        return copy.deepcopy(session)


@pytest.fixture()
def provider(monkeypatch):
    fake = FakeProvider()
    factory = lambda *a, **kw: fake  # noqa: E731
    monkeypatch.setattr("subsync.blueprints.webhooks.routes.make_provider", factory)
    monkeypatch.setattr("subsync.blueprints.billing.routes.make_provider", factory)
    monkeypatch.setattr("subsync.cli.make_provider", factory)
    return fake


@pytest.fixture()
def trust_signatures(monkeypatch):
    # Monkeypatch Stripe signature verification to trust our payload
    def _fake_construct_event(payload, sig_header, secret):
        return json.loads(payload)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_fake_construct_event))


@pytest.fixture()
def post_event(client, trust_signatures):
    def _post(event):
        return client.post("/webhook", data=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=fake"})
    return _post


@pytest.fixture()
def make_user(app):
    def _make(user_id="user_1", email=None):
        with app.app_context():
            db.session.add(User(id=user_id, email=email or f"{user_id}@example.test", is_active=True))
            db.session.commit()
            return issue_session_token(user_id)
    return _make
