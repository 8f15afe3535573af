"""
Restriction Engine
Compares active dependents with tier capacity and persists the restriction flag
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.config.settings import settings
from clockwork.config.tiers import (
    TierDefinition,
    get_next_tier,
    get_upgrade_message,
    is_at_limit,
    is_near_limit,
)
from clockwork.models.account import Account, RestrictionReason
from clockwork.models.scheduled_task import ScheduledTask, TaskType
from clockwork.services.usage_tracker import usage_tracker, resolve_tier
from clockwork.utils.database import utcnow
from clockwork.utils.email_brevo import email_service

logger = logging.getLogger(__name__)

# At most one approaching-limit warning per account in this window
WARNING_COOLDOWN_DAYS = 7


@dataclass
class CapacityCheck:
    restricted: bool
    reason: Optional[str]
    client_count: int
    limit: int
    tier: TierDefinition


class RestrictionEngine:
    """Sets and clears account restrictions"""

    async def check_capacity(self, db: AsyncSession, account: Account, notify: bool = True) -> CapacityCheck:
        """
        Recompute usage and compare it to the tier limit.

        At or over the limit the account is restricted with
        ``capacity_exceeded``. Under the limit a ``capacity_exceeded``
        restriction is lifted; payment and cancellation restrictions are left
        alone. Changes are staged on the session, the caller commits.
        """
        tier = resolve_tier(account)
        count = await usage_tracker.recompute_dependent_count(db, account)
        account.last_limit_check = utcnow()

        if is_at_limit(count, tier):
            if not account.is_restricted:
                await self.apply_restriction(db, account, RestrictionReason.CAPACITY_EXCEEDED)
                if notify:
                    await self.notify_limit_reached(db, account, count, tier)
        else:
            if account.is_restricted and account.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value:
                await self.clear_restrictions(db, account)
            if notify and is_near_limit(count, tier):
                await self.schedule_limit_warning(db, account, count, tier)

        return CapacityCheck(
            restricted=account.is_restricted,
            reason=account.restriction_reason,
            client_count=count,
            limit=tier.dependent_limit,
            tier=tier,
        )

    async def apply_restriction(self, db: AsyncSession, account: Account, reason: RestrictionReason):
        account.is_restricted = True
        account.restriction_reason = RestrictionReason(reason).value
        account.restricted_at = utcnow()
        logger.warning(f"Account restricted: account={account.id}, reason={account.restriction_reason}")

    async def clear_restrictions(self, db: AsyncSession, account: Account):
        if account.is_restricted:
            logger.info(f"Clearing restriction for account {account.id} (was {account.restriction_reason})")
        account.is_restricted = False
        account.restriction_reason = None
        account.restricted_at = None

    async def notify_limit_reached(self, db: AsyncSession, account: Account, count: int, tier: TierDefinition):
        await email_service.send_template_email(
            to_email=account.email,
            to_name=account.name,
            template="limit_reached",
            context={
                "name": account.first_name,
                "current_clients": count,
                "limit": tier.dependent_limit,
                "next_tier": get_next_tier(tier.id),
            },
            db=db,
            account_id=account.id,
        )

    async def schedule_limit_warning(self, db: AsyncSession, account: Account, count: int, tier: TierDefinition):
        """Queue an approaching-limit email unless one went out recently"""
        since = utcnow() - timedelta(days=WARNING_COOLDOWN_DAYS)
        result = await db.execute(
            select(ScheduledTask.id).where(and_(
                ScheduledTask.account_id == account.id,
                ScheduledTask.task_type == TaskType.SEND_LIMIT_WARNING.value,
                ScheduledTask.execute_at >= since,
            )).limit(1)
        )
        if result.scalar_one_or_none() is not None:
            return

        db.add(ScheduledTask(
            task_type=TaskType.SEND_LIMIT_WARNING.value,
            account_id=account.id,
            execute_at=utcnow(),
            payload={"client_count": count, "limit": tier.dependent_limit},
        ))
        logger.info(f"Scheduled limit warning: account={account.id}, usage={count}/{tier.dependent_limit}")

    def build_restriction_payload(self, account: Account) -> Dict[str, Any]:
        """Structured 403 body with upgrade prompts"""
        tier = resolve_tier(account)
        return {
            "error": "Account restricted",
            "reason": account.restriction_reason,
            "message": get_upgrade_message(tier.id),
            "current_plan": tier.name,
            "current_clients": account.active_dependent_count or 0,
            "client_limit": tier.dependent_limit,
            "upgrade_url": settings.upgrade_url,
            "actions": {
                "upgrade": {
                    "url": "/api/v1/billing/upgrade",
                    "method": "POST",
                    "description": "Upgrade to a higher tier",
                },
                "archive_clients": {
                    "url": "/api/v1/billing/archive-clients",
                    "method": "POST",
                    "description": "Archive inactive clients to free up space",
                },
            },
        }


# Global instance
restriction_engine = RestrictionEngine()
