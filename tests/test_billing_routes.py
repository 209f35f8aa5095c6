from subsync.billing import provider as stripe_provider
from subsync.billing.errors import ProviderError
from subsync.extensions import db
from subsync.models import SubscriptionSyncStatus, UserSubscription

from conftest import stripe_subscription


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _seed(app, user_id="user_1", sub_id="sub_1", customer_id="cus_123", status="active"):
    with app.app_context():
        db.session.add(UserSubscription(
            user_id=user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=sub_id,
            plan_id="pro_monthly",
            status=status,
            meta={},
        ))
        db.session.commit()


# ----- /sync -----

def test_sync_requires_user_id(client, provider):
    resp = client.post("/sync", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "userId is required"


def test_sync_updates_drifted_row(app, client, provider):
    _seed(app)
    provider.subscriptions["sub_1"] = stripe_subscription("sub_1", status="past_due")

    resp = client.post("/sync", json={"userId": "user_1"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["result"] == "updated"
    assert body["userId"] == "user_1"
    assert body["enhancedStatus"]["subscription_status"] == "past_due"
    assert body["timestamp"]

    resp = client.post("/sync", json={"userId": "user_1"})
    assert resp.get_json()["result"] == "synchronized"


def test_sync_without_subscription(client, provider):
    resp = client.post("/sync", json={"userId": "user_new"})
    assert resp.status_code == 200
    assert resp.get_json()["result"] == "no_active_subscription"


def test_sync_provider_failure_returns_500(app, client, provider):
    _seed(app)
    provider.fail_with = ProviderError("timeout", operation="subscriptions.retrieve", retryable=True)

    resp = client.post("/sync", json={"userId": "user_1"})
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"] == "timeout"
    assert body["timestamp"]

    with app.app_context():
        enhanced = SubscriptionSyncStatus.query.filter_by(user_id="user_1").one()
        assert enhanced.sync_status == "retry_needed"
        assert enhanced.retry_count == 1


def test_sync_with_service_key_requires_caller_identity(app, client, provider, make_user, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_SERVICE_KEY", "svc_secret")
    token = make_user("user_1")
    other = make_user("user_2")

    assert client.post("/sync", json={"userId": "user_1"}).status_code == 401
    assert client.post("/sync", json={"userId": "user_1"}, headers=_auth("wrong")).status_code == 401
    assert client.post("/sync", json={"userId": "user_1"}, headers=_auth(other)).status_code == 401
    assert client.post("/sync", json={"userId": "user_1"}, headers=_auth(token)).status_code == 200
    assert client.post("/sync", json={"userId": "user_1"}, headers=_auth("svc_secret")).status_code == 200


# ----- /portal-session -----

def test_portal_requires_authorization_header(client, provider):
    resp = client.post("/portal-session", json={})
    assert resp.status_code == 400


def test_portal_rejects_invalid_token(client, provider):
    resp = client.post("/portal-session", json={}, headers=_auth("not-a-token"))
    assert resp.status_code == 401


def test_portal_creates_customer_when_missing(app, client, provider, make_user):
    token = make_user("user_1", email="ann@example.test")

    resp = client.post("/portal-session", json={}, headers=_auth(token))
    assert resp.status_code == 200
    assert resp.get_json()["portal_url"] == "https://billing.stripe.test/session/cus_new_1"
    assert ("create_customer", "user_1") in provider.calls
    assert ("create_portal_session", "cus_new_1", "http://example.test/settings") in provider.calls

    with app.app_context():
        sub = UserSubscription.query.filter_by(user_id="user_1").one()
        assert sub.stripe_customer_id == "cus_new_1"
        assert sub.status == "trialing"


def test_portal_reuses_existing_customer(app, client, provider, make_user):
    token = make_user("user_1")
    _seed(app, customer_id="cus_live")
    provider.customers["cus_live"] = {"id": "cus_live"}

    resp = client.post("/portal-session", json={"return_url": "https://app.test/back"}, headers=_auth(token))
    assert resp.status_code == 200
    assert resp.get_json()["portal_url"].endswith("/cus_live")
    assert ("create_portal_session", "cus_live", "https://app.test/back") in provider.calls
    assert not any(call[0] == "create_customer" for call in provider.calls)


def test_portal_replaces_deleted_customer(app, client, provider, make_user):
    token = make_user("user_1")
    _seed(app, customer_id="cus_gone")
    provider.customers["cus_gone"] = {"id": "cus_gone", "deleted": True}

    resp = client.post("/portal-session", json={}, headers=_auth(token))
    assert resp.status_code == 200

    with app.app_context():
        sub = UserSubscription.query.filter_by(user_id="user_1").one()
        assert sub.stripe_customer_id.startswith("cus_new_")
        assert sub.stripe_subscription_id == "sub_1"


def test_portal_not_enabled_message(app, client, provider, make_user):
    token = make_user("user_1")
    provider.portal_error = ProviderError(
        "No configuration provided and your test mode default configuration has not been created.",
        operation="billing_portal.sessions.create",
        retryable=False,
    )

    resp = client.post("/portal-session", json={}, headers=_auth(token))
    assert resp.status_code == 500
    assert "portal is not enabled" in resp.get_json()["error"]


# ----- /checkout-session -----

def test_checkout_requires_authorization_header(client, provider):
    resp = client.post("/checkout-session", json={"price_id": "price_pro_monthly"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing Authorization header"


def test_checkout_rejects_invalid_token(client, provider):
    resp = client.post("/checkout-session", json={"price_id": "price_pro_monthly"}, headers=_auth("not-a-token"))
    assert resp.status_code == 401


def test_checkout_requires_known_price_id(client, provider, make_user):
    token = make_user("user_1")

    missing = client.post("/checkout-session", json={}, headers=_auth(token))
    assert missing.status_code == 400
    assert missing.get_json()["error"] == "price_id is required"

    unknown = client.post("/checkout-session", json={"price_id": "price_other"}, headers=_auth(token))
    assert unknown.status_code == 400
    assert provider.checkout_sessions == []


def test_checkout_creates_customer_and_stamps_owner(app, client, provider, make_user):
    token = make_user("user_1", email="ann@example.test")

    resp = client.post("/checkout-session", json={"price_id": "price_pro_monthly"}, headers=_auth(token))
    assert resp.status_code == 200
    assert resp.get_json() == {
        "checkout_url": "https://checkout.stripe.test/pay/cus_new_1",
        "session_id": "cs_test_1",
    }

    session = provider.checkout_sessions[0]
    assert session["customer"] == "cus_new_1"
    assert session["client_reference_id"] == "user_1"
    assert session["metadata"] == {"user_id": "user_1"}
    assert session["subscription_data"]["metadata"] == {"user_id": "user_1"}
    assert session["success_url"] == "http://example.test/dashboard?success=true&session_id={CHECKOUT_SESSION_ID}"
    assert session["cancel_url"] == "http://example.test/pricing"
    assert provider.customers["cus_new_1"]["metadata"] == {"user_id": "user_1"}

    with app.app_context():
        assert UserSubscription.query.filter_by(user_id="user_1").one().stripe_customer_id == "cus_new_1"


def test_checkout_reuses_existing_customer_and_custom_urls(app, client, provider, make_user):
    token = make_user("user_1")
    _seed(app, customer_id="cus_live")
    provider.customers["cus_live"] = {"id": "cus_live"}

    resp = client.post(
        "/checkout-session",
        json={"price_id": "price_pro_annual", "success_url": "https://app.test/ok", "cancel_url": "https://app.test/no"},
        headers=_auth(token),
    )
    assert resp.status_code == 200
    assert ("create_checkout_session", "cus_live", "price_pro_annual") in provider.calls
    assert not any(call[0] == "create_customer" for call in provider.calls)
    session = provider.checkout_sessions[0]
    assert (session["success_url"], session["cancel_url"]) == ("https://app.test/ok", "https://app.test/no")


def test_checkout_provider_failure_returns_500(app, client, provider, make_user):
    token = make_user("user_1")
    provider.fail_with = ProviderError("card declined", operation="customers.create", retryable=False)

    resp = client.post("/checkout-session", json={"price_id": "price_pro_monthly"}, headers=_auth(token))
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "card declined"


def test_completed_checkout_from_this_endpoint_resolves_owner(app, client, provider, make_user, post_event):
    token = make_user("user_1")
    client.post("/checkout-session", json={"price_id": "price_pro_monthly"}, headers=_auth(token))
    session = provider.checkout_sessions[0]
    provider.subscriptions["sub_new"] = stripe_subscription(
        "sub_new", customer=session["customer"], metadata=session["subscription_data"]["metadata"],
    )

    resp = post_event({
        "id": "evt_checkout_done",
        "type": "checkout.session.completed",
        "data": {"object": {**session, "subscription": "sub_new"}},
    })
    assert resp.status_code == 200

    with app.app_context():
        sub = UserSubscription.query.filter_by(user_id="user_1").one()
        assert sub.status == "active"
        assert sub.plan_id == "pro_monthly"
        assert sub.stripe_subscription_id == "sub_new"


def test_stripe_provider_checkout_params():
    seen = {}

    class _Sessions:
        def create(self, params=None):
            seen.update(params)
            return {"id": "cs_sdk", "url": "https://checkout.stripe.test/cs_sdk"}

    class _Client:
        class checkout:
            sessions = _Sessions()

    result = stripe_provider.StripeProvider(_Client()).create_checkout_session(
        customer_id="cus_1",
        price_id="price_pro_monthly",
        user_id="user_1",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/no",
    )
    assert result["id"] == "cs_sdk"
    assert seen["mode"] == "subscription"
    assert seen["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]
    assert seen["client_reference_id"] == "user_1"
    assert seen["metadata"] == {"user_id": "user_1"}
    assert seen["subscription_data"] == {"metadata": {"user_id": "user_1"}}
    assert seen["allow_promotion_codes"] is True


def test_make_provider_pins_api_version(app, monkeypatch):
    seen = {}

    class _Client:
        def __init__(self, key, **kwargs):
            seen.update(kwargs, key=key)

    monkeypatch.setattr(stripe_provider, "StripeClient", _Client)
    with app.app_context():
        stripe_provider.make_provider()
    assert seen == {"key": "sk_test_x", "stripe_version": "2023-10-16"}
