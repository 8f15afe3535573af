"""
Usage Tracker Service
Keeps the active-dependent counter exact and records usage metrics
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm.attributes import set_committed_value
from clockwork.models.account import Account
from clockwork.models.dependent import Dependent
from clockwork.models.usage import UsageRecord
from clockwork.config.tiers import (
    TierDefinition,
    get_tier,
    default_tier_for,
    calculate_usage_percentage,
    is_at_limit,
    is_near_limit,
)

logger = logging.getLogger(__name__)


def resolve_tier(account: Account) -> TierDefinition:
    """Tier of an account, falling back to its category default"""
    return get_tier(account.tier_id) or default_tier_for(account.category)


class UsageTracker:
    """Service for dependent counts and usage metrics"""

    def _active_count_query(self, account_id):
        return (
            select(func.count(Dependent.id))
            .where(and_(Dependent.account_id == account_id, Dependent.is_active.is_(True)))
            .scalar_subquery()
        )

    async def recompute_dependent_count(self, db: AsyncSession, account: Account) -> int:
        """
        Reset the stored counter to the true number of active dependents.
        Must run after every dependent state change, in the same transaction.
        """
        account_id = account.id
        await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(active_dependent_count=self._active_count_query(account_id))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            select(Account.active_dependent_count).where(Account.id == account_id)
        )
        count = result.scalar_one()
        set_committed_value(account, "active_dependent_count", count)
        logger.debug(f"Recomputed dependent count: account={account_id}, count={count}")
        return count

    async def reserve_dependent_slots(
        self,
        db: AsyncSession,
        account: Account,
        amount: int = 1
    ) -> bool:
        """
        Atomically claim capacity for new active dependents.

        A single conditional UPDATE; on PostgreSQL the row lock serializes
        concurrent reservations so two requests at the boundary cannot both pass.

        Returns:
            True when the slots were reserved
        """
        tier = resolve_tier(account)
        conditions = [Account.id == account.id]
        if not tier.is_unlimited:
            conditions.append(Account.active_dependent_count + amount <= tier.dependent_limit)

        result = await db.execute(
            update(Account)
            .where(and_(*conditions))
            .values(active_dependent_count=Account.active_dependent_count + amount)
            .execution_options(synchronize_session=False)
        )
        reserved = result.rowcount == 1

        if not reserved:
            logger.warning(
                f"Capacity reservation refused: account={account.id}, amount={amount}, "
                f"limit={tier.dependent_limit}, tier={tier.id}"
            )
        return reserved

    def _upsert(self, db: AsyncSession, values: Dict[str, Any], set_: Dict[str, Any]):
        """INSERT ... ON CONFLICT on the (account, metric, period) key"""
        dialect = db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        return insert(UsageRecord).values(**values).on_conflict_do_update(
            index_elements=["account_id", "metric_name", "period_start"],
            set_=set_,
        )

    async def track_metric(
        self,
        db: AsyncSession,
        account_id,
        metric: str,
        amount: int = 1,
        day: Optional[date] = None
    ):
        """Increment a daily metric (e.g. api_calls)"""
        day = day or datetime.now(timezone.utc).date()
        await db.execute(self._upsert(
            db,
            values={
                "account_id": account_id,
                "metric_name": metric,
                "metric_value": amount,
                "period_start": day,
                "period_end": day,
            },
            set_={"metric_value": UsageRecord.metric_value + amount},
        ))

    async def set_metric(
        self,
        db: AsyncSession,
        account_id,
        metric: str,
        value: int,
        period_start: date,
        period_end: date
    ):
        """Overwrite a metric value for a period (roll-ups)"""
        await db.execute(self._upsert(
            db,
            values={
                "account_id": account_id,
                "metric_name": metric,
                "metric_value": value,
                "period_start": period_start,
                "period_end": period_end,
            },
            set_={"metric_value": value, "period_end": period_end},
        ))

    async def get_usage_stats(self, db: AsyncSession, account: Account) -> Dict[str, Any]:
        """Get current usage statistics for an account"""
        tier = resolve_tier(account)
        count = account.active_dependent_count or 0

        today = datetime.now(timezone.utc).date()
        result = await db.execute(
            select(UsageRecord.metric_name, UsageRecord.metric_value)
            .where(and_(UsageRecord.account_id == account.id, UsageRecord.period_start == today))
        )
        today_metrics = {name: value for name, value in result.all()}

        return {
            "dependents": {
                "current": count,
                "limit": tier.dependent_limit,
                "percentage": round(calculate_usage_percentage(count, tier.dependent_limit)),
                "is_at_limit": is_at_limit(count, tier),
                "is_near_limit": is_near_limit(count, tier),
            },
            "today": today_metrics,
            "tier": tier.id,
        }

    async def rollup_usage_metrics(self, db: AsyncSession) -> int:
        """
        Daily roll-up: active dependents, dependents created in the last
        30 days, and dependents active today, per account.
        """
        today = datetime.now(timezone.utc).date()
        day_start = datetime.combine(today, time.min, tzinfo=timezone.utc)
        window_start = today - timedelta(days=30)

        active = await db.execute(
            select(Dependent.account_id, func.count(Dependent.id))
            .where(Dependent.is_active.is_(True))
            .group_by(Dependent.account_id)
        )
        new_30d = await db.execute(
            select(Dependent.account_id, func.count(Dependent.id))
            .where(Dependent.created_at >= datetime.combine(window_start, time.min, tzinfo=timezone.utc))
            .group_by(Dependent.account_id)
        )
        daily_active = await db.execute(
            select(Dependent.account_id, func.count(Dependent.id))
            .where(and_(Dependent.is_active.is_(True), Dependent.last_activity >= day_start))
            .group_by(Dependent.account_id)
        )

        written = 0
        for account_id, value in active.all():
            await self.set_metric(db, account_id, "active_dependents", value, today, today)
            written += 1
        for account_id, value in new_30d.all():
            await self.set_metric(db, account_id, "new_dependents_30d", value, window_start, today)
            written += 1
        for account_id, value in daily_active.all():
            await self.set_metric(db, account_id, "daily_active_dependents", value, today, today)
            written += 1

        logger.info(f"Usage roll-up wrote {written} metric rows")
        return written


# Global instance
usage_tracker = UsageTracker()
