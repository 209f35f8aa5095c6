from datetime import timedelta

from subsync.billing import events
from subsync.extensions import db
from subsync.models import PaymentEventLog, SubscriptionSyncStatus, User, UserSubscription
from subsync.services.tokens import verify_session_token
from subsync.utils.helpers import utcnow

from conftest import stripe_subscription


def test_users_create_and_token(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["users", "create", "--id", "user_cli", "--email", "cli@example.test"])
    assert result.exit_code == 0, result.output
    assert "User created id=user_cli" in result.output

    again = runner.invoke(args=["users", "create", "--id", "user_cli"])
    assert again.exit_code != 0
    assert "already exists" in again.output

    token = runner.invoke(args=["users", "token", "user_cli"])
    assert token.exit_code == 0
    with app.app_context():
        assert verify_session_token(token.output.strip()) == "user_cli"
        assert db.session.get(User, "user_cli").email == "cli@example.test"


def test_users_token_unknown_user(app):
    result = app.test_cli_runner().invoke(args=["users", "token", "nobody"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_events_stats(app):
    with app.app_context():
        entry = events.record(db.session, "evt_s1", "customer.created", {}).entry
        events.update_status(db.session, entry, "skipped", {"reason": "unhandled_event_type"})
        events.record(db.session, "evt_s2", "customer.created", {})
        db.session.commit()

    result = app.test_cli_runner().invoke(args=["events", "stats"])
    assert result.exit_code == 0, result.output
    assert "total: 2" in result.output
    assert "skipped: 1" in result.output
    assert "pending: 1" in result.output


def test_events_retry_reprocesses_failed_entries(app, provider):
    with app.app_context():
        db.session.add(UserSubscription(
            user_id="user_1",
            stripe_subscription_id="sub_r",
            plan_id="pro_monthly",
            status="active",
            meta={},
        ))
        payload = {
            "id": "evt_r",
            "type": "customer.subscription.updated",
            "data": {"object": stripe_subscription("sub_r", status="past_due")},
        }
        entry = events.record(db.session, "evt_r", "customer.subscription.updated", payload).entry
        events.update_status(db.session, entry, "failed", {"message": "db down"})
        db.session.commit()
        entry.updated_at = utcnow() - timedelta(minutes=10)
        db.session.commit()

    result = app.test_cli_runner().invoke(args=["events", "retry"])
    assert result.exit_code == 0, result.output
    assert "evt_r customer.subscription.updated -> processed" in result.output

    with app.app_context():
        row = PaymentEventLog.query.filter_by(stripe_event_id="evt_r").one()
        assert row.processing_status == "processed"
        assert row.user_id == "user_1"
        assert UserSubscription.query.filter_by(user_id="user_1").one().status == "past_due"


def test_events_retry_nothing_due(app):
    result = app.test_cli_runner().invoke(args=["events", "retry"])
    assert result.exit_code == 0
    assert "No events to retry" in result.output


def test_subscriptions_sync(app, provider):
    with app.app_context():
        db.session.add(UserSubscription(
            user_id="user_1",
            stripe_subscription_id="sub_c",
            plan_id="pro_monthly",
            status="active",
            meta={},
        ))
        db.session.commit()
    provider.subscriptions["sub_c"] = stripe_subscription("sub_c", status="unpaid")

    result = app.test_cli_runner().invoke(args=["subscriptions", "sync", "user_1"])
    assert result.exit_code == 0, result.output
    assert "user_1: updated (status=unpaid payment_method=valid)" in result.output


def test_subscriptions_retry_reconciles_due_rows_only(app, provider):
    old = utcnow() - timedelta(minutes=10)
    with app.app_context():
        for user_id, retries in (("user_due", 1), ("user_capped", 3)):
            db.session.add(UserSubscription(
                user_id=user_id,
                stripe_subscription_id=f"sub_{user_id}",
                plan_id="pro_monthly",
                status="active",
                meta={},
            ))
            db.session.add(SubscriptionSyncStatus(
                user_id=user_id,
                stripe_subscription_id=f"sub_{user_id}",
                subscription_status="active",
                subscription_metadata={},
                sync_status="retry_needed",
                payment_method_status="unknown",
                retry_count=retries,
                created_at=old,
                updated_at=old,
            ))
        db.session.commit()
    provider.subscriptions["sub_user_due"] = stripe_subscription("sub_user_due")

    result = app.test_cli_runner().invoke(args=["subscriptions", "retry"])
    assert result.exit_code == 0, result.output
    assert "user_due: synchronized" in result.output
    assert "user_capped" not in result.output

    with app.app_context():
        due = SubscriptionSyncStatus.query.filter_by(user_id="user_due").one()
        assert due.sync_status == "synced"
        assert due.retry_count == 0
        capped = SubscriptionSyncStatus.query.filter_by(user_id="user_capped").one()
        assert capped.sync_status == "retry_needed"


def test_subscriptions_retry_nothing_due(app):
    result = app.test_cli_runner().invoke(args=["subscriptions", "retry"])
    assert result.exit_code == 0
    assert "No subscriptions to retry" in result.output
