import json

import stripe
from flask import Response, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from . import bp
from subsync.billing import events
from subsync.billing.errors import ConfigurationError
from subsync.billing.plans import price_table
from subsync.billing.processor import EventProcessor
from subsync.billing.provider import make_provider
from subsync.extensions import db, limiter

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def _ok() -> Response:
    return Response("OK", status=200, mimetype="text/plain", headers=CORS_HEADERS)


def _error(status: int, error: str, details=None):
    body = {"error": error}
    if details is not None:
        body["details"] = details
    resp = jsonify(body)
    resp.headers.extend(CORS_HEADERS)
    return resp, status


def _provider_or_none():
    # Only checkout completion needs the provider; a missing key fails that event alone
    try:
        return make_provider()
    except ConfigurationError as exc:
        current_app.logger.error("webhook.provider_unconfigured", extra={"error": str(exc)})
        return None


# ----- Stripe webhook (subscription lifecycle) -----
@limiter.exempt
@bp.route("/webhook", methods=["POST", "OPTIONS"])
def stripe_webhook():
    """
    Verify, log once, process, record the outcome.

    Once the event is durably logged the response is 200 "OK" whatever the
    business outcome; only a failure to write the log itself asks the
    provider to redeliver.
    """
    if request.method == "OPTIONS":
        return Response("ok", status=200, mimetype="text/plain", headers=CORS_HEADERS)

    # 1) Verify signature
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        return _error(400, "missing_signature")

    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("webhook.secret_unconfigured")
        return _error(500, "webhook_not_configured", "STRIPE_WEBHOOK_SECRET is not configured")

    raw_bytes = request.get_data(cache=False, as_text=False)
    try:
        stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except stripe.SignatureVerificationError:
        current_app.logger.warning("webhook.signature_invalid")
        return _error(400, "invalid_signature")
    except ValueError:
        # Undecodable body or invalid JSON
        return _error(400, "invalid_payload")

    # 2) Envelope from the verified raw body (plain dicts, no SDK objects)
    try:
        envelope = json.loads(raw_bytes.decode("utf-8"))
    except ValueError:
        return _error(400, "invalid_payload")
    if not isinstance(envelope, dict):
        return _error(400, "invalid_payload")
    ev_id = envelope.get("id")
    ev_type = envelope.get("type")
    data = envelope.get("data")
    if not ev_id or not ev_type or not isinstance(data, dict):
        return _error(400, "malformed_event")
    ctx = {"stripe_event_id": ev_id, "event_type": ev_type}

    # 3) Idempotency: first write wins per provider event id
    try:
        recorded = events.record(db.session, ev_id, ev_type, envelope)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("webhook.log_write_failed", extra=ctx)
        return _error(500, "event_log_write_failed", str(exc))

    if recorded.is_duplicate and recorded.entry.processing_status != "pending":
        current_app.logger.info("webhook.duplicate", extra={**ctx, "status": recorded.entry.processing_status})
        return _ok()
    if recorded.is_duplicate:
        # Outcome never recorded (earlier outcome write failed); apply again
        current_app.logger.warning("webhook.redelivered_pending", extra=ctx)

    # 4) Reduce and apply; every failure comes back as an outcome
    cfg = current_app.config
    processor = EventProcessor(
        db.session,
        _provider_or_none(),
        price_table(cfg),
        trial_days=cfg.get("TRIAL_DAYS", 30),
    )
    outcome = processor.process(ev_type, data.get("object") or {})

    # 5) Record the outcome together with the business writes
    try:
        events.update_status(db.session, recorded.entry, outcome.status, outcome.detail, user_id=outcome.user_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("webhook.outcome_write_failed", extra=ctx)
        return _error(500, "event_log_write_failed", str(exc))

    current_app.logger.info("webhook.handled", extra={**ctx, "outcome": outcome.status})
    return _ok()
