import click
from flask import current_app
from flask.cli import with_appcontext

from subsync.billing import events as event_log
from subsync.billing import store
from subsync.billing.errors import BillingError, ProviderError
from subsync.billing.plans import price_table
from subsync.billing.processor import EventProcessor
from subsync.billing.provider import make_provider
from subsync.billing.reconciler import reconcile
from subsync.extensions import db
from subsync.models.user import User
from subsync.services.tokens import issue_session_token

@click.group()
def events():
    """Payment event log operations."""

@events.command("retry")
@click.option("--max-retries", type=int, default=3, show_default=True)
@click.option("--delay-minutes", type=int, default=5, show_default=True)
@click.option("--limit", type=int, default=10, show_default=True)
@with_appcontext
def events_retry(max_retries, delay_minutes, limit):
    """Re-run failed events, and pending ones whose outcome was lost, once the delay has passed."""
    entries = event_log.events_for_retry(db.session, max_retries=max_retries, delay_minutes=delay_minutes, limit=limit)
    if not entries:
        click.echo("No events to retry")
        return

    try:
        provider = make_provider()
    except BillingError as exc:
        raise click.ClickException(str(exc))

    cfg = current_app.config
    processor = EventProcessor(db.session, provider, price_table(cfg), trial_days=cfg.get("TRIAL_DAYS", 30))
    tally = {"processed": 0, "failed": 0, "skipped": 0}
    for entry in entries:
        obj = ((entry.event_data or {}).get("data") or {}).get("object") or {}
        outcome = processor.process(entry.event_type, obj)
        event_log.update_status(db.session, entry, outcome.status, outcome.detail, user_id=outcome.user_id)
        db.session.commit()
        tally[outcome.status] += 1
        click.echo(f"{entry.stripe_event_id} {entry.event_type} -> {outcome.status} (retry_count={entry.retry_count})")

    click.echo(f"Retried {len(entries)}: processed={tally['processed']} failed={tally['failed']} skipped={tally['skipped']}")

@events.command("stats")
@with_appcontext
def events_stats():
    """Counts per processing status."""
    stats = event_log.event_stats(db.session)
    for key in ("total", "pending", "processed", "failed", "skipped"):
        click.echo(f"{key}: {stats[key]}")
    click.echo(f"success_rate: {stats['success_rate']}%")
    click.echo(f"failure_rate: {stats['failure_rate']}%")
    click.echo(f"average_retry_count: {stats['average_retry_count']}")

@click.group()
def subscriptions():
    """Subscription maintenance."""

@subscriptions.command("sync")
@click.argument("user_id")
@with_appcontext
def subscriptions_sync(user_id):
    try:
        result = reconcile(db.session, make_provider(), user_id)
    except BillingError as exc:
        raise click.ClickException(f"Sync failed: {exc}")
    status = result.enhanced_status
    click.echo(f"{user_id}: {result.result} (status={status.subscription_status} payment_method={status.payment_method_status})")

@subscriptions.command("retry")
@click.option("--max-retries", type=int, default=3, show_default=True)
@click.option("--delay-minutes", type=int, default=5, show_default=True)
@click.option("--limit", type=int, default=10, show_default=True)
@with_appcontext
def subscriptions_retry(max_retries, delay_minutes, limit):
    """Reconcile users whose last sync hit a transient provider failure."""
    rows = store.sync_statuses_for_retry(db.session, max_retries=max_retries, delay_minutes=delay_minutes, limit=limit)
    if not rows:
        click.echo("No subscriptions to retry")
        return

    try:
        provider = make_provider()
    except BillingError as exc:
        raise click.ClickException(str(exc))

    user_ids = [row.user_id for row in rows]
    failures = 0
    for user_id in user_ids:
        try:
            result = reconcile(db.session, provider, user_id)
        except ProviderError as exc:
            failures += 1
            click.echo(f"{user_id}: failed ({exc})")
            continue
        click.echo(f"{user_id}: {result.result}")

    click.echo(f"Retried {len(user_ids)}: failed={failures}")

@click.group()
def users():
    """User management."""

@users.command("create")
@click.option("--id", "user_id", required=True)
@click.option("--email", default=None)
@with_appcontext
def users_create(user_id, email):
    if db.session.get(User, user_id) is not None:
        raise click.ClickException("User already exists")
    user = User(id=user_id, email=email, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"User created id={user.id} email={user.email}")

@users.command("token")
@click.argument("user_id")
@with_appcontext
def users_token(user_id):
    """Print a bearer session token for a user."""
    if db.session.get(User, user_id) is None:
        raise click.ClickException(f"User id {user_id} not found")
    click.echo(issue_session_token(user_id))

def register_cli(app):
    app.cli.add_command(events)
    app.cli.add_command(subscriptions)
    app.cli.add_command(users)
