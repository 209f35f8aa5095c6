import hmac

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from subsync.billing import store
from subsync.billing.errors import BillingError, ProviderError
from subsync.billing.plans import price_table
from subsync.billing.provider import make_provider
from subsync.billing.reconciler import reconcile
from subsync.extensions import db, limiter
from subsync.models.user import bearer_token
from subsync.utils.helpers import isoformat, utcnow

billing_bp = Blueprint("billing", __name__)

_PORTAL_DISABLED = "The customer portal is not enabled. Please contact support to enable this feature."


def _is_service_caller() -> bool:
    key = current_app.config.get("SYNC_SERVICE_KEY")
    token = bearer_token(request.headers.get("Authorization"))
    return bool(key and token and hmac.compare_digest(token, key))


def _may_sync(user_id: str) -> bool:
    # Without a service key configured the endpoint is open (trusted network)
    if not current_app.config.get("SYNC_SERVICE_KEY"):
        return True
    if _is_service_caller():
        return True
    return bool(getattr(current_user, "is_authenticated", False) and str(current_user.id) == user_id)


@billing_bp.post("/sync")
@limiter.limit("30/minute")
def sync():
    """Reconcile one user's subscription against the provider."""
    data = request.get_json(silent=True) or {}
    user_id = data.get("userId") if isinstance(data, dict) else None
    if not user_id:
        return jsonify({"error": "userId is required"}), 400
    user_id = str(user_id)

    if not _may_sync(user_id):
        return jsonify({"error": "unauthorized"}), 401

    try:
        result = reconcile(db.session, make_provider(), user_id)
    except (BillingError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.exception("sync.failed", extra={"user_id": user_id})
        return jsonify({"success": False, "error": str(exc), "timestamp": isoformat(utcnow())}), 500

    return jsonify({
        "success": True,
        "result": result.result,
        "userId": user_id,
        "enhancedStatus": result.enhanced_status.to_dict(),
        "timestamp": isoformat(utcnow()),
    })


def _portal_error_message(exc: ProviderError) -> str:
    message = str(exc)
    if "portal is not enabled" in message.lower() or "no configuration provided" in message.lower():
        return _PORTAL_DISABLED
    return message or "Failed to create customer portal session"


def _ensure_customer(provider, user_id: str) -> str:
    """Provider customer id for the user, created (and stored, uncommitted) when missing."""
    ctx = {"user_id": user_id}
    sub = store.get_or_create_subscription(db.session, user_id, current_app.config.get("TRIAL_DAYS", 30))
    customer_id = sub.stripe_customer_id
    if customer_id:
        # Verify the stored customer still exists at the provider
        customer = provider.retrieve_customer(customer_id)
        if customer.get("deleted"):
            current_app.logger.warning("billing.customer_deleted", extra={**ctx, "customer_id": customer_id})
            customer_id = None
    if not customer_id:
        customer = provider.create_customer(user_id=user_id, email=getattr(current_user, "email", None))
        customer_id = customer.get("id")
        store.apply_patch(db.session, sub, {"stripe_customer_id": customer_id})
        current_app.logger.info("billing.customer_created", extra={**ctx, "customer_id": customer_id})
    return customer_id


@billing_bp.post("/portal-session")
@limiter.limit("10/minute")
def portal_session():
    if not request.headers.get("Authorization"):
        return jsonify({"error": "Missing Authorization header"}), 400
    if not getattr(current_user, "is_authenticated", False):
        return jsonify({"error": "Unauthorized", "details": "invalid or expired token"}), 401

    data = request.get_json(silent=True) or {}
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    return_url = (data.get("return_url") if isinstance(data, dict) else None) or f"{base}/settings"
    user_id = str(current_user.id)
    ctx = {"user_id": user_id}

    try:
        provider = make_provider()
        customer_id = _ensure_customer(provider, user_id)
        db.session.commit()

        session = provider.create_portal_session(customer_id=customer_id, return_url=return_url)
    except ProviderError as exc:
        db.session.rollback()
        current_app.logger.exception("billing.portal.session_create_failed", extra=ctx)
        return jsonify({"error": _portal_error_message(exc), "details": exc.detail()}), 500
    except (BillingError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.exception("billing.portal.failed", extra=ctx)
        return jsonify({"error": "Could not create portal session", "details": str(exc)}), 500

    url = session.get("url")
    if not url:
        return jsonify({"error": "Could not create portal session"}), 500
    return jsonify({"portal_url": url})


@billing_bp.post("/checkout-session")
@limiter.limit("10/minute")
def checkout_session():
    """Start a subscription checkout whose session and subscription carry the user id."""
    if not request.headers.get("Authorization"):
        return jsonify({"error": "Missing Authorization header"}), 400
    if not getattr(current_user, "is_authenticated", False):
        return jsonify({"error": "Unauthorized", "details": "invalid or expired token"}), 401

    data = request.get_json(silent=True)
    data = data if isinstance(data, dict) else {}
    price_id = data.get("price_id")
    if not price_id:
        return jsonify({"error": "price_id is required"}), 400
    if price_id not in price_table(current_app.config):
        return jsonify({"error": "Unknown price_id"}), 400

    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    success_url = data.get("success_url") or f"{base}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = data.get("cancel_url") or f"{base}/pricing"
    user_id = str(current_user.id)
    ctx = {"user_id": user_id, "price_id": price_id}

    try:
        provider = make_provider()
        customer_id = _ensure_customer(provider, user_id)
        db.session.commit()

        session = provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            user_id=user_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except ProviderError as exc:
        db.session.rollback()
        current_app.logger.exception("billing.checkout.session_create_failed", extra=ctx)
        return jsonify({"error": str(exc) or "Failed to create checkout session", "details": exc.detail()}), 500
    except (BillingError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.exception("billing.checkout.failed", extra=ctx)
        return jsonify({"error": "Could not create checkout session", "details": str(exc)}), 500

    if not session.get("url"):
        return jsonify({"error": "Could not create checkout session"}), 500
    current_app.logger.info("billing.checkout.session_created", extra={**ctx, "session_id": session.get("id")})
    return jsonify({"checkout_url": session["url"], "session_id": session.get("id")})
