"""
Smart Archive Policy
Picks the least recently active dependents of an over-capacity account and
schedules their archival after a notice period
"""

import logging
from datetime import timedelta
from typing import List

from sqlalchemy import select, and_, or_, exists, func
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.models.account import Account, RestrictionReason
from clockwork.models.dependent import Dependent
from clockwork.models.scheduled_task import ScheduledTask, TaskType, TaskStatus
from clockwork.services.usage_tracker import usage_tracker, resolve_tier
from clockwork.utils.database import utcnow
from clockwork.utils.email_brevo import email_service

logger = logging.getLogger(__name__)

SMART_ARCHIVE_REASON = "smart_archive_inactive"


class ArchivePolicy:

    async def select_candidates(self, db: AsyncSession, account: Account, limit: int) -> List[Dependent]:
        """
        Active dependents inactive for ARCHIVE_INACTIVITY_DAYS or never
        active, oldest activity first (never-active first of all), skipping
        any that already have a pending archive task.
        """
        if limit <= 0:
            return []

        cutoff = utcnow() - timedelta(days=settings.archive_inactivity_days)
        already_scheduled = exists().where(and_(
            ScheduledTask.dependent_id == Dependent.id,
            ScheduledTask.task_type == TaskType.ARCHIVE_DEPENDENT.value,
            ScheduledTask.status == TaskStatus.PENDING.value,
        ))

        result = await db.execute(
            select(Dependent)
            .where(and_(
                Dependent.account_id == account.id,
                Dependent.is_active.is_(True),
                or_(Dependent.last_activity.is_(None), Dependent.last_activity <= cutoff),
                ~already_scheduled,
            ))
            .order_by(Dependent.last_activity.asc().nulls_first(), Dependent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _pending_archive_count(self, db: AsyncSession, account: Account) -> int:
        result = await db.execute(
            select(func.count(ScheduledTask.id)).where(and_(
                ScheduledTask.account_id == account.id,
                ScheduledTask.task_type == TaskType.ARCHIVE_DEPENDENT.value,
                ScheduledTask.status == TaskStatus.PENDING.value,
            ))
        )
        return result.scalar_one()

    async def plan_archive(self, db: AsyncSession, account: Account) -> List[Dependent]:
        """
        Schedule archival of the overage for a capacity-restricted account,
        less dependents already pending archive, and email the holder the
        list. Does nothing for other accounts.
        """
        if not (account.is_restricted and account.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value):
            return []

        tier = resolve_tier(account)
        if tier.is_unlimited:
            return []

        count = await usage_tracker.recompute_dependent_count(db, account)
        overage = count - tier.dependent_limit - await self._pending_archive_count(db, account)
        if overage <= 0:
            return []

        candidates = await self.select_candidates(db, account, overage)
        if not candidates:
            logger.info(f"Smart archive: account {account.id} is {overage} over but has no inactive dependents")
            return []

        archive_at = utcnow() + timedelta(days=settings.archive_delay_days)
        for dependent in candidates:
            db.add(ScheduledTask(
                task_type=TaskType.ARCHIVE_DEPENDENT.value,
                account_id=account.id,
                dependent_id=dependent.id,
                execute_at=archive_at,
                payload={"reason": SMART_ARCHIVE_REASON},
            ))

        await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="pending_archive",
            context={
                "name": account.first_name,
                "clients": [
                    {
                        "name": d.name,
                        "email": d.email,
                        "last_activity": d.last_activity.strftime("%B %d, %Y") if d.last_activity else "Never",
                    }
                    for d in candidates
                ],
                "archive_date": archive_at.strftime("%B %d, %Y"),
                "limit": tier.dependent_limit,
                "current_clients": count,
            },
            db=db,
            account_id=account.id,
        )

        logger.info(f"Smart archive: scheduled {len(candidates)} dependents of account {account.id} for {archive_at.date()}")
        return candidates


# Global instance
archive_policy = ArchivePolicy()
