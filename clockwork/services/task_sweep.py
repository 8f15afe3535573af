"""
Scheduled Task Sweep
Claims due deferred tasks and runs them one by one, each in its own session
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.config.tiers import calculate_usage_percentage, is_near_limit, get_next_tier
from clockwork.errors import BillingError
from clockwork.models.account import Account, SubscriptionStatus
from clockwork.models.dependent import Dependent
from clockwork.models.scheduled_task import ScheduledTask, TaskType, TaskStatus
from clockwork.services.billing import billing_service
from clockwork.services.dependents import dependent_service
from clockwork.services.usage_tracker import usage_tracker, resolve_tier
from clockwork.utils.database import get_async_session, utcnow
from clockwork.utils.email_brevo import email_service

logger = logging.getLogger(__name__)


class TaskSweeper:
    """Executes due ScheduledTask rows: pending -> processing -> completed | failed"""

    def __init__(self, session_factory: Callable[[], AsyncSession] = get_async_session, batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.sweep_batch_size
        self.handlers = {
            TaskType.ARCHIVE_DEPENDENT.value: self.archive_dependent,
            TaskType.SEND_LIMIT_WARNING.value: self.send_limit_warning,
            TaskType.RETRY_PAYMENT.value: self.retry_payment,
            TaskType.SEND_RETENTION_EMAIL.value: self.send_retention_email,
        }

    async def release_stale_claims(self) -> int:
        """Put tasks whose worker died mid-run (claimed too long ago) back to pending"""
        cutoff = utcnow() - timedelta(minutes=settings.task_claim_timeout_minutes)
        async with self.session_factory() as db:
            result = await db.execute(
                update(ScheduledTask)
                .where(and_(
                    ScheduledTask.status == TaskStatus.PROCESSING.value,
                    ScheduledTask.claimed_at < cutoff,
                ))
                .values(status=TaskStatus.PENDING.value, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount
            await db.commit()

        if released:
            logger.warning(f"Released {released} stale task claims older than {cutoff.isoformat()}")
        return released

    async def run_pending_tasks(self) -> Dict[str, int]:
        """Process one batch of due tasks. Returns counts per outcome."""
        await self.release_stale_claims()

        async with self.session_factory() as db:
            result = await db.execute(
                select(ScheduledTask.id)
                .where(and_(
                    ScheduledTask.status == TaskStatus.PENDING.value,
                    ScheduledTask.execute_at <= utcnow(),
                ))
                .order_by(ScheduledTask.execute_at.asc())
                .limit(self.batch_size)
            )
            task_ids = [row[0] for row in result.all()]

        summary = {"claimed": 0, "skipped": 0, "completed": 0, "failed": 0}
        for task_id in task_ids:
            if not await self.claim_task(task_id):
                summary["skipped"] += 1
                continue
            summary["claimed"] += 1
            status = await self.execute_task(task_id)
            summary[status] += 1

        if task_ids:
            logger.info(f"Task sweep finished: {summary}")
        return summary

    async def claim_task(self, task_id: int) -> bool:
        """Atomic pending -> processing transition. False if another sweep got it first."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ScheduledTask)
                .where(and_(ScheduledTask.id == task_id, ScheduledTask.status == TaskStatus.PENDING.value))
                .values(status=TaskStatus.PROCESSING.value, claimed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def execute_task(self, task_id: int) -> str:
        """Run a claimed task and record its outcome"""
        async with self.session_factory() as db:
            task = await db.get(ScheduledTask, task_id)
            task_type = task.task_type
            handler = self.handlers.get(task_type)

            try:
                if handler is None:
                    outcome = {"success": False, "error": f"Unknown task type: {task_type}"}
                else:
                    outcome = await handler(db, task)
            except Exception as e:
                logger.error(f"Task {task_id} ({task_type}) failed: {e}", exc_info=True)
                await db.rollback()
                outcome = {"success": False, "error": str(e)}

            status = TaskStatus.COMPLETED if outcome.get("success") else TaskStatus.FAILED
            await db.execute(
                update(ScheduledTask)
                .where(ScheduledTask.id == task_id)
                .values(status=status.value, result=outcome, executed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(f"Task {task_id} ({task_type}) {status.value}")
        return status.value

    async def _load_account(self, db: AsyncSession, account_id) -> Optional[Account]:
        if account_id is None:
            return None
        return await db.get(Account, account_id)

    async def archive_dependent(self, db: AsyncSession, task: ScheduledTask) -> Dict[str, Any]:
        """
        Archive one dependent scheduled by the smart archive policy.
        Running it again for an archived dependent is a no-op, and nothing is
        archived once the account is back within its tier limit.
        """
        dependent = await db.get(Dependent, task.dependent_id) if task.dependent_id else None
        if dependent is None:
            return {"success": False, "error": "Dependent not found"}
        if not dependent.is_active:
            return {"success": True, "already_archived": True, "dependent_id": str(dependent.id)}

        account = await self._load_account(db, dependent.account_id)
        tier = resolve_tier(account)
        count = await usage_tracker.recompute_dependent_count(db, account)
        if tier.is_unlimited or count <= tier.dependent_limit:
            # Upgraded or archived by hand during the notice window
            return {
                "success": True,
                "skipped": "no longer over capacity",
                "dependent_id": str(dependent.id),
                "active_dependents": count,
            }

        reason = (task.payload or {}).get("reason")
        archived = await dependent_service.archive_dependents(db, account, [dependent.id], reason=reason)
        return {
            "success": True,
            "already_archived": not archived,
            "dependent_id": str(dependent.id),
            "active_dependents": account.active_dependent_count,
        }

    async def send_limit_warning(self, db: AsyncSession, task: ScheduledTask) -> Dict[str, Any]:
        account = await self._load_account(db, task.account_id)
        if account is None:
            return {"success": False, "error": "Account not found"}

        tier = resolve_tier(account)
        count = account.active_dependent_count or 0
        if not is_near_limit(count, tier):
            return {"success": True, "skipped": "no longer near limit"}

        sent = await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="approaching_limit",
            context={
                "name": account.first_name,
                "current_clients": count,
                "limit": tier.dependent_limit,
                "remaining": max(tier.dependent_limit - count, 0),
                "percent_used": round(calculate_usage_percentage(count, tier.dependent_limit)),
                "next_tier": get_next_tier(tier.id),
            },
            db=db,
            account_id=account.id,
        )
        return {"success": sent, "email_sent": sent}

    async def retry_payment(self, db: AsyncSession, task: ScheduledTask) -> Dict[str, Any]:
        stripe_invoice_id = (task.payload or {}).get("stripe_invoice_id")
        if not stripe_invoice_id:
            return {"success": False, "error": "No invoice to retry"}
        try:
            outcome = await billing_service.retry_invoice_payment(stripe_invoice_id)
        except BillingError as e:
            return {"success": False, "error": e.message}
        # Restriction is lifted by the invoice.payment_succeeded webhook
        return {"success": outcome["paid"], **outcome}

    async def send_retention_email(self, db: AsyncSession, task: ScheduledTask) -> Dict[str, Any]:
        account = await self._load_account(db, task.account_id)
        if account is None:
            return {"success": False, "error": "Account not found"}
        if account.subscription_status != SubscriptionStatus.CANCELING.value:
            return {"success": True, "skipped": f"subscription is {account.subscription_status}"}

        cancel_date = account.cancellation_date
        sent = await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="cancellation",
            context={
                "name": account.first_name,
                "cancel_date": cancel_date.strftime("%B %d, %Y") if cancel_date else "the end of your billing period",
            },
            db=db,
            account_id=account.id,
        )
        return {"success": sent, "email_sent": sent}

