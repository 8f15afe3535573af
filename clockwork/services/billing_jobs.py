"""
Periodic Billing Jobs
Trial notices, smart archive, overdue invoices, usage roll-ups and retention cleanup
"""

import logging
from datetime import timedelta
from typing import Callable

from sqlalchemy import select, update, delete, and_, or_, not_
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.config.tiers import get_next_tier
from clockwork.models.account import Account, SubscriptionStatus, RestrictionReason
from clockwork.models.billing_event import BillingEvent
from clockwork.models.dependent import Dependent
from clockwork.models.invoice import Invoice, InvoiceStatus
from clockwork.models.scheduled_task import ScheduledTask, TaskStatus
from clockwork.services.archive_policy import archive_policy
from clockwork.services.usage_tracker import usage_tracker
from clockwork.utils.database import get_async_session, utcnow
from clockwork.utils.email_brevo import email_service

logger = logging.getLogger(__name__)

TRIAL_NOTICE_DAYS = 3
OVERDUE_WINDOW_DAYS = 30
EVENT_RETENTION_DAYS = 365
TASK_RETENTION_DAYS = 90
CANCELED_ACCOUNT_RETENTION_DAYS = 90

# Audit rows that are kept forever
PERMANENT_EVENT_TYPES = ("customer.subscription.created", "customer.subscription.deleted")


class BillingJobs:
    """Bodies of the periodic jobs; each opens its own session"""

    def __init__(self, session_factory: Callable[[], AsyncSession] = get_async_session):
        self.session_factory = session_factory

    async def check_trial_ends(self) -> int:
        """Email trialing accounts whose trial ends within three days"""
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Account).where(and_(
                    Account.subscription_status == SubscriptionStatus.TRIALING.value,
                    Account.trial_ends_at.is_not(None),
                    Account.trial_ends_at > now,
                    Account.trial_ends_at <= now + timedelta(days=TRIAL_NOTICE_DAYS),
                ))
            )
            accounts = result.scalars().all()

            for account in accounts:
                await email_service.send_template_email(
                    to_email=account.email,
                    to_name=account.name,
                    template="trial_ending",
                    context={
                        "name": account.first_name,
                        "trial_ends_date": account.trial_ends_at.strftime("%B %d, %Y"),
                        "next_tier": get_next_tier(account.tier_id),
                    },
                    db=db,
                    account_id=account.id,
                )
            await db.commit()

        logger.info(f"Trial-ending notices sent to {len(accounts)} accounts")
        return len(accounts)

    async def run_smart_archive(self) -> int:
        """Plan archival for every account restricted for capacity"""
        if not settings.enable_smart_archive:
            logger.info("Smart archive disabled")
            return 0

        scheduled = 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(Account.id).where(and_(
                    Account.is_restricted.is_(True),
                    Account.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value,
                ))
            )
            for account_id in result.scalars().all():
                try:
                    account = await db.get(Account, account_id)
                    candidates = await archive_policy.plan_archive(db, account)
                    await db.commit()
                    scheduled += len(candidates)
                except Exception as e:
                    logger.error(f"Smart archive failed for account {account_id}: {e}", exc_info=True)
                    await db.rollback()

        logger.info(f"Smart archive scheduled {scheduled} dependents")
        return scheduled

    async def check_overdue_invoices(self) -> int:
        """Flag pending invoices past due (at most 30 days) as overdue and notify"""
        today = utcnow().date()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Invoice, Account)
                .join(Account, Account.id == Invoice.account_id)
                .where(and_(
                    Invoice.status == InvoiceStatus.PENDING.value,
                    Invoice.due_date < today,
                    Invoice.due_date >= today - timedelta(days=OVERDUE_WINDOW_DAYS),
                ))
            )
            rows = result.all()

            for invoice, account in rows:
                invoice.status = InvoiceStatus.OVERDUE.value
                await email_service.send_template_email(
                    to_email=account.email,
                    to_name=account.name,
                    template="invoice_overdue",
                    context={
                        "name": account.first_name,
                        "invoice_number": invoice.invoice_number,
                        "amount": f"{invoice.amount:.2f}",
                        "currency": invoice.currency,
                        "due_date": invoice.due_date.strftime("%B %d, %Y"),
                        "pay_url": f"{settings.app_url}/billing/invoices",
                    },
                    db=db,
                    account_id=account.id,
                )
            await db.commit()

        logger.info(f"Marked {len(rows)} invoices overdue")
        return len(rows)

    async def rollup_usage_metrics(self) -> int:
        if not settings.enable_usage_tracking:
            logger.info("Usage tracking disabled")
            return 0
        async with self.session_factory() as db:
            written = await usage_tracker.rollup_usage_metrics(db)
            await db.commit()
        return written

    async def cleanup(self) -> dict:
        """
        Monthly retention pass. Old audit rows and finished tasks are pruned;
        dependents of long-canceled accounts are only flagged, never removed.
        """
        now = utcnow()
        async with self.session_factory() as db:
            events = await db.execute(
                delete(BillingEvent).where(and_(
                    BillingEvent.created_at < now - timedelta(days=EVENT_RETENTION_DAYS),
                    not_(BillingEvent.event_type.in_(PERMANENT_EVENT_TYPES)),
                )).execution_options(synchronize_session=False)
            )
            tasks = await db.execute(
                delete(ScheduledTask).where(and_(
                    ScheduledTask.status == TaskStatus.COMPLETED.value,
                    or_(
                        ScheduledTask.executed_at < now - timedelta(days=TASK_RETENTION_DAYS),
                        and_(
                            ScheduledTask.executed_at.is_(None),
                            ScheduledTask.created_at < now - timedelta(days=TASK_RETENTION_DAYS),
                        ),
                    ),
                )).execution_options(synchronize_session=False)
            )
            canceled_accounts = (
                select(Account.id)
                .where(and_(
                    Account.subscription_status == SubscriptionStatus.CANCELED.value,
                    Account.cancellation_date < now - timedelta(days=CANCELED_ACCOUNT_RETENTION_DAYS),
                ))
            )
            marked = await db.execute(
                update(Dependent)
                .where(and_(
                    Dependent.account_id.in_(canceled_accounts),
                    Dependent.marked_for_cleanup.is_(False),
                ))
                .values(marked_for_cleanup=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        summary = {
            "billing_events_deleted": events.rowcount,
            "tasks_deleted": tasks.rowcount,
            "dependents_marked": marked.rowcount,
        }
        logger.info(f"Cleanup finished: {summary}")
        return summary
