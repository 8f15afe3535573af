"""
Dependent Service
Create, import, archive and reactivate clients/members under capacity rules
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from clockwork.errors import RestrictionError
from clockwork.models.account import Account, RestrictionReason
from clockwork.models.dependent import Dependent
from clockwork.services.restrictions import restriction_engine
from clockwork.services.usage_tracker import usage_tracker
from clockwork.utils.database import utcnow

logger = logging.getLogger(__name__)

MANUAL_ARCHIVE_REASON = "manual_archive"


class DependentService:
    """Every state change ends with a count recompute in the same transaction"""

    async def _reserve_or_reject(self, db: AsyncSession, account: Account, amount: int):
        if account.is_restricted:
            raise RestrictionError(restriction_engine.build_restriction_payload(account))

        if not await usage_tracker.reserve_dependent_slots(db, account, amount):
            # Persist the restriction when the account sits at its limit
            await restriction_engine.check_capacity(db, account)
            await db.commit()
            payload = restriction_engine.build_restriction_payload(account)
            payload["reason"] = RestrictionReason.CAPACITY_EXCEEDED.value
            payload["requested"] = amount
            raise RestrictionError(payload)

    async def list_dependents(
        self,
        db: AsyncSession,
        account: Account,
        include_archived: bool = False,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dependent]:
        query = select(Dependent).where(Dependent.account_id == account.id)
        if not include_archived:
            query = query.where(Dependent.is_archived.is_(False))
        query = query.order_by(Dependent.created_at.desc()).limit(limit).offset(offset)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_dependent(self, db: AsyncSession, account: Account, dependent_id) -> Dependent:
        result = await db.execute(
            select(Dependent).where(and_(Dependent.id == dependent_id, Dependent.account_id == account.id))
        )
        dependent = result.scalar_one_or_none()
        if not dependent:
            raise HTTPException(status_code=404, detail="Client not found")
        return dependent

    async def create_dependent(self, db: AsyncSession, account: Account, data: Dict[str, Any]) -> Dependent:
        """Create one active dependent if capacity allows"""
        created = await self.import_dependents(db, account, [data])
        return created[0]

    async def import_dependents(
        self,
        db: AsyncSession,
        account: Account,
        items: Sequence[Dict[str, Any]]
    ) -> List[Dependent]:
        """Create several active dependents in one transaction (all or nothing)"""
        if not items:
            return []

        await self._reserve_or_reject(db, account, len(items))

        created = []
        for item in items:
            dependent = Dependent(account_id=account.id, last_activity=utcnow(), **item)
            db.add(dependent)
            created.append(dependent)

        await usage_tracker.recompute_dependent_count(db, account)
        await restriction_engine.check_capacity(db, account)
        await db.commit()

        for dependent in created:
            await db.refresh(dependent)

        logger.info(f"Created {len(created)} dependents for account {account.id} (now {account.active_dependent_count})")
        return created

    async def reactivate_dependent(self, db: AsyncSession, account: Account, dependent_id) -> Dependent:
        """Bring an archived dependent back if capacity allows"""
        dependent = await self.get_dependent(db, account, dependent_id)
        if dependent.is_active:
            return dependent

        await self._reserve_or_reject(db, account, 1)

        dependent.is_active = True
        dependent.is_archived = False
        dependent.archived_at = None
        dependent.archived_reason = None
        dependent.marked_for_cleanup = False
        dependent.last_activity = utcnow()

        await usage_tracker.recompute_dependent_count(db, account)
        await restriction_engine.check_capacity(db, account)
        await db.commit()
        await db.refresh(dependent)

        logger.info(f"Reactivated dependent {dependent.id} for account {account.id}")
        return dependent

    async def archive_dependents(
        self,
        db: AsyncSession,
        account: Account,
        dependent_ids: Sequence,
        reason: Optional[str] = None
    ) -> List[Dependent]:
        """
        Soft-archive dependents. Only the active/archived flags, timestamp
        and reason change; rows are never removed. Already archived
        dependents are skipped.
        """
        if not dependent_ids:
            return []

        result = await db.execute(
            update(Dependent)
            .where(and_(
                Dependent.id.in_(list(dependent_ids)),
                Dependent.account_id == account.id,
                Dependent.is_active.is_(True),
            ))
            .values(
                is_active=False,
                is_archived=True,
                archived_at=utcnow(),
                archived_reason=reason or MANUAL_ARCHIVE_REASON,
            )
            .returning(Dependent.id)
            .execution_options(synchronize_session=False)
        )
        archived_ids = [row[0] for row in result.all()]

        await restriction_engine.check_capacity(db, account)
        await db.commit()

        if not archived_ids:
            return []
        archived = await db.execute(select(Dependent).where(Dependent.id.in_(archived_ids)))
        dependents = list(archived.scalars().all())
        for dependent in dependents:
            await db.refresh(dependent)

        logger.info(f"Archived {len(archived_ids)} dependents for account {account.id}")
        return dependents


# Global instance
dependent_service = DependentService()
