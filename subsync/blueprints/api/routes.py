from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from . import bp
from subsync.billing import access, events, store
from subsync.extensions import db


def _subscription():
    # Lazily created on first read with trial defaults
    sub = store.get_or_create_subscription(db.session, str(current_user.id), current_app.config.get("TRIAL_DAYS", 30))
    db.session.commit()
    return sub


@bp.get("/subscription")
@login_required
def subscription():
    sub = _subscription()
    enhanced = store.get_sync_status(db.session, sub.user_id)
    return jsonify({
        "subscription": sub.to_dict(),
        "enhancedStatus": enhanced.to_dict() if enhanced is not None else None,
    })


@bp.get("/subscription/access")
@login_required
def subscription_access():
    return jsonify(access.check_access(_subscription()))


@bp.get("/subscription/inventory-limit")
@login_required
def inventory_limit():
    return jsonify(access.inventory_limit(db.session, _subscription()))


@bp.get("/events")
@login_required
def payment_events():
    limit = request.args.get("limit", default=50, type=int)
    limit = max(1, min(limit or 50, 200))
    rows = events.recent_events_for_user(db.session, str(current_user.id), limit=limit)
    return jsonify({"events": [row.to_dict() for row in rows]})
