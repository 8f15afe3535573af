"""
Periodic billing jobs
"""
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select, func

from clockwork.config.settings import settings
from clockwork.models import (
    BillingEvent,
    Dependent,
    Invoice,
    ScheduledTask,
    TaskType,
    UsageRecord,
)
from clockwork.models.account import RestrictionReason, SubscriptionStatus
from clockwork.services.billing_jobs import BillingJobs
from clockwork.utils.database import utcnow


def add_invoice(db, account, number, status, days_past_due):
    invoice = Invoice(
        invoice_number=number,
        stripe_invoice_id=f"in_{number}",
        account_id=account.id,
        amount=Decimal("49.00"),
        status=status,
        due_date=(utcnow() - timedelta(days=days_past_due)).date(),
    )
    db.add(invoice)
    return invoice


async def test_overdue_invoices(db, session_factory, account, sent_emails):
    late = add_invoice(db, account, "CW-1", "pending", 5)
    ancient = add_invoice(db, account, "CW-2", "pending", 45)
    paid = add_invoice(db, account, "CW-3", "paid", 5)
    not_due = add_invoice(db, account, "CW-4", "pending", -3)
    await db.commit()

    marked = await BillingJobs(session_factory).check_overdue_invoices()

    assert marked == 1
    for invoice in (late, ancient, paid, not_due):
        await db.refresh(invoice)
    assert late.status == "overdue"
    assert ancient.status == "pending"
    assert paid.status == "paid"
    assert not_due.status == "pending"

    email = sent_emails.await_args.kwargs
    assert email["template"] == "invoice_overdue"
    assert email["context"]["invoice_number"] == "CW-1"
    assert email["context"]["amount"] == "49.00"


async def test_trial_ending_notices(db, session_factory, make_account, sent_emails):
    await make_account(
        email="soon@example.com",
        subscription_status=SubscriptionStatus.TRIALING.value,
        trial_ends_at=utcnow() + timedelta(days=2),
    )
    await make_account(
        email="later@example.com",
        subscription_status=SubscriptionStatus.TRIALING.value,
        trial_ends_at=utcnow() + timedelta(days=10),
    )
    await make_account(email="paying@example.com", trial_ends_at=utcnow() + timedelta(days=1))

    sent = await BillingJobs(session_factory).check_trial_ends()

    assert sent == 1
    assert sent_emails.await_args.kwargs["to_email"] == "soon@example.com"
    assert sent_emails.await_args.kwargs["template"] == "trial_ending"


async def test_smart_archive_job(db, session_factory, account, add_dependents, monkeypatch):
    await add_dependents(account, 12, last_activity=utcnow() - timedelta(days=120))
    account.is_restricted = True
    account.restriction_reason = RestrictionReason.CAPACITY_EXCEEDED.value
    await db.commit()
    jobs = BillingJobs(session_factory)

    assert await jobs.run_smart_archive() == 2
    tasks = await db.execute(
        select(func.count(ScheduledTask.id)).where(ScheduledTask.task_type == TaskType.ARCHIVE_DEPENDENT.value)
    )
    assert tasks.scalar_one() == 2

    monkeypatch.setattr(settings, "enable_smart_archive", False)
    assert await jobs.run_smart_archive() == 0


async def test_usage_rollup(db, session_factory, account, add_dependents):
    await add_dependents(account, 3)

    written = await BillingJobs(session_factory).rollup_usage_metrics()

    assert written >= 1
    result = await db.execute(
        select(UsageRecord.metric_value).where(
            UsageRecord.account_id == account.id, UsageRecord.metric_name == "active_dependents"
        )
    )
    assert result.scalar_one() == 3


async def test_cleanup_prunes_audit_but_only_marks_dependents(db, session_factory, make_account, add_dependents):
    now = utcnow()
    gone = await make_account(
        email="gone@example.com",
        subscription_status=SubscriptionStatus.CANCELED.value,
        cancellation_date=now - timedelta(days=120),
    )
    recent = await make_account(
        email="recent@example.com",
        subscription_status=SubscriptionStatus.CANCELED.value,
        cancellation_date=now - timedelta(days=10),
    )
    await add_dependents(gone, 2)
    await add_dependents(recent, 1)

    db.add_all([
        BillingEvent(event_type="invoice.paid", stripe_event_id="evt_old", created_at=now - timedelta(days=400)),
        BillingEvent(
            event_type="customer.subscription.deleted",
            stripe_event_id="evt_old_deleted",
            created_at=now - timedelta(days=400),
        ),
        BillingEvent(event_type="invoice.paid", stripe_event_id="evt_new"),
        ScheduledTask(
            task_type=TaskType.SEND_LIMIT_WARNING.value,
            execute_at=now - timedelta(days=100),
            executed_at=now - timedelta(days=100),
            status="completed",
        ),
        ScheduledTask(
            task_type=TaskType.SEND_LIMIT_WARNING.value,
            execute_at=now - timedelta(days=100),
            executed_at=now - timedelta(days=100),
            status="failed",
        ),
    ])
    await db.commit()

    summary = await BillingJobs(session_factory).cleanup()

    assert summary == {"billing_events_deleted": 1, "tasks_deleted": 1, "dependents_marked": 2}
    events = await db.execute(select(BillingEvent.stripe_event_id).order_by(BillingEvent.stripe_event_id))
    assert events.scalars().all() == ["evt_new", "evt_old_deleted"]

    dependents = (await db.execute(
        select(Dependent.account_id, Dependent.marked_for_cleanup).order_by(Dependent.name)
    )).all()
    assert len(dependents) == 3
    assert sum(1 for account_id, marked in dependents if marked) == 2
    assert all(marked for account_id, marked in dependents if account_id == gone.id)
    assert not any(marked for account_id, marked in dependents if account_id == recent.id)
